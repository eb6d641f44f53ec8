"""Resource ledger.

Every system resource the installer creates (wiped disk, LUKS mapping, ZFS
pool, mount point) is recorded here the moment it is confirmed present.
Teardown walks the ledger newest to oldest so dependents are always released
before what they depend on: a mount before its pool, a pool before the
mapping under it, a mapping before its disk.
"""

from __future__ import annotations

import logging
import shutil
import signal
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import InstallCancelled

logger = logging.getLogger(__name__)

ReleaseAction = Callable[[], None]


class ResourceKind(str, Enum):
    BLOCK_DEVICE = "block_device"
    MAPPING = "mapping"
    POOL = "pool"
    MOUNT_POINT = "mount_point"


@dataclass
class ResourceHandle:
    kind: ResourceKind
    identifier: str
    release_action: ReleaseAction = field(repr=False)
    acquired_at: int = 0
    released: bool = False

    def describe(self) -> str:
        return f"{self.kind.value}:{self.identifier}"


@dataclass
class ReleaseReport:
    released: List[str] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ResourceLedger:
    def __init__(self) -> None:
        self._handles: List[ResourceHandle] = []
        self._seq = 0
        self._lock = threading.RLock()

    @property
    def handles(self) -> List[ResourceHandle]:
        with self._lock:
            return list(self._handles)

    def pending(self) -> List[ResourceHandle]:
        with self._lock:
            return [h for h in self._handles if not h.released]

    def acquire(self, kind: ResourceKind, identifier: str, release_action: ReleaseAction) -> ResourceHandle:
        """Record a resource that now exists on the system."""

        if not identifier:
            raise ValueError("Resource identifier must not be empty")
        with self._lock:
            self._seq += 1
            handle = ResourceHandle(
                kind=ResourceKind(kind),
                identifier=identifier,
                release_action=release_action,
                acquired_at=self._seq,
            )
            self._handles.append(handle)
        logger.info("Acquired %s (#%d)", handle.describe(), handle.acquired_at)
        return handle

    def _release_one(self, handle: ResourceHandle, report: ReleaseReport) -> Optional[InstallCancelled]:
        # Marked before the action runs so a failing action is never retried.
        handle.released = True
        try:
            handle.release_action()
        except InstallCancelled as e:
            logger.error("Cancelled while releasing %s: %s", handle.describe(), e)
            report.errors.append((handle.describe(), str(e)))
            return e
        except Exception as e:
            logger.error("Failed to release %s: %s", handle.describe(), e)
            report.errors.append((handle.describe(), str(e)))
        else:
            logger.info("Released %s", handle.describe())
            report.released.append(handle.describe())
        return None

    def release(self, handle: ResourceHandle) -> ReleaseReport:
        """Release a single handle ahead of the final teardown."""

        report = ReleaseReport()
        with self._lock:
            if handle.released:
                return report
            cancelled = self._release_one(handle, report)
        if cancelled is not None:
            raise cancelled
        return report

    def release_all(self) -> ReleaseReport:
        """Release every unreleased handle, newest first.

        Failures are logged and collected; they never stop the walk. A
        cancellation that arrives mid-walk is re-raised once the walk is done.
        """

        report = ReleaseReport()
        cancelled: Optional[InstallCancelled] = None
        with self._lock:
            todo = [h for h in reversed(self._handles) if not h.released]
            if todo:
                logger.info("Releasing %d resource(s)", len(todo))
            for handle in todo:
                exc = self._release_one(handle, report)
                if exc is not None and cancelled is None:
                    cancelled = exc
        if cancelled is not None:
            raise cancelled
        return report


class ResourceGuard:
    """Scope that guarantees the ledger is drained exactly once.

    Entered before the first resource is acquired. While active, SIGTERM and
    SIGHUP raise InstallCancelled in the main thread so the normal unwinding
    path runs the teardown.
    """

    SIGNALS = tuple(s for s in (getattr(signal, "SIGTERM", None), getattr(signal, "SIGHUP", None)) if s is not None)

    def __init__(self, ledger: ResourceLedger, *, workdir: Optional[str] = None) -> None:
        self.ledger = ledger
        self.workdir = workdir
        self.report: Optional[ReleaseReport] = None
        self._previous: Dict[int, Any] = {}
        self._tearing_down = False
        self._done = False

    def _on_signal(self, signum: int, frame: Any) -> None:
        if self._tearing_down:
            logger.warning("Ignoring signal %d during cleanup", signum)
            return
        raise InstallCancelled(f"received signal {signum}", signum=signum)

    def _install_handlers(self) -> None:
        for sig in self.SIGNALS:
            try:
                self._previous[sig] = signal.signal(sig, self._on_signal)
            except ValueError:
                # Not the main thread; signals stay with their current owner.
                logger.debug("Cannot install handler for signal %d outside main thread", sig)

    def _restore_handlers(self) -> None:
        for sig, prev in self._previous.items():
            try:
                signal.signal(sig, prev)
            except ValueError:
                pass
        self._previous.clear()

    def __enter__(self) -> "ResourceGuard":
        self._install_handlers()
        return self

    def teardown(self) -> ReleaseReport:
        if self._done and self.report is not None:
            return self.report
        self._tearing_down = True
        try:
            self.report = self.ledger.release_all()
            if self.workdir:
                shutil.rmtree(self.workdir, ignore_errors=True)
                logger.debug("Removed working directory %s", self.workdir)
        finally:
            self._done = True
            self._tearing_down = False
        if self.report.errors:
            logger.warning("Cleanup finished with %d error(s)", len(self.report.errors))
        else:
            logger.info("Cleanup finished (%d released)", len(self.report.released))
        return self.report

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.teardown()
        finally:
            self._restore_handlers()
        return False
