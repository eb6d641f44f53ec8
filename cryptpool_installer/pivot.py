"""Environment pivot.

The installer may be running from the very disk it is about to wipe, so
before any stage runs it copies the live root filesystem into a tmpfs,
starts a fresh instance of itself inside it, and hands over the
installation context through a file. The child confirms it took ownership
by writing an acknowledgement file next to the context.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from .context import InstallContext
from .errors import InstallCancelled, PivotError
from .ledger import ResourceKind, ResourceLedger
from .lib.chroot import mount_chroot_binds
from .lib.command import run_cmd
from .lib.env import PATHS
from .lib.net import ensure_connectivity
from .lib.storage import make_unmounter, mount

logger = logging.getLogger(__name__)

CONTEXT_FILE = "context.json"
ACK_SUFFIX = ".ack"

RSYNC_EXCLUDES = ("/proc/*", "/sys/*", "/dev/*", "/run/*", "/tmp/*", "/mnt/*", "/media/*", "/lost+found")


def ack_path(context_path: str) -> str:
    return context_path + ACK_SUFFIX


def acknowledge(context_path: str) -> None:
    """Called by the relocated instance once it loaded the context."""

    Path(ack_path(context_path)).write_text(f"{os.getpid()}\n", encoding="utf-8")
    logger.info("Acknowledged context handover (%s)", context_path)


class EnvironmentPivot:
    def __init__(
        self,
        *,
        root: str = "/",
        ramdisk_mnt: str = PATHS.ramdisk_mnt,
        ramdisk_size: str = PATHS.ramdisk_size,
        installer_dir: str = PATHS.installer_dir,
        marker: str = PATHS.ramdisk_marker,
        python: Optional[str] = None,
    ) -> None:
        self.root = root
        self.ramdisk_mnt = ramdisk_mnt
        self.ramdisk_size = ramdisk_size
        self.installer_dir = installer_dir
        self.marker = marker
        self.python = python or sys.executable or "python3"
        self.ledger = ResourceLedger()

    @classmethod
    def from_context(cls, ctx: InstallContext) -> "EnvironmentPivot":
        return cls(
            ramdisk_mnt=ctx.get("RAMDISK_MNT") or PATHS.ramdisk_mnt,
            ramdisk_size=ctx.get("RAMDISK_SIZE") or PATHS.ramdisk_size,
        )

    def is_relocated(self) -> bool:
        return (Path(self.root) / self.marker).exists()

    # Paths as seen from the parent, outside the ramdisk.
    def _staged(self, inner: str) -> Path:
        return Path(self.ramdisk_mnt) / inner.lstrip("/")

    @property
    def context_path(self) -> str:
        """Context file path as seen by the relocated instance."""

        return f"{self.installer_dir.rstrip('/')}/{CONTEXT_FILE}"

    def _mount_ramdisk(self) -> None:
        mount("tmpfs", self.ramdisk_mnt, fstype="tmpfs", options=f"size={self.ramdisk_size}")
        self.ledger.acquire(ResourceKind.MOUNT_POINT, self.ramdisk_mnt, make_unmounter(self.ramdisk_mnt))

    def _copy_root(self) -> None:
        argv = ["rsync", "-aAXx", "--delete"]
        for pattern in (*RSYNC_EXCLUDES, self.ramdisk_mnt.rstrip("/") + "/*"):
            argv += ["--exclude", pattern]
        argv += ["/", self.ramdisk_mnt.rstrip("/") + "/"]
        logger.info("Copying live system into %s", self.ramdisk_mnt)
        run_cmd(argv)

    def _stage_installer(self, ctx: InstallContext) -> None:
        package_dir = Path(__file__).resolve().parent
        dest = self._staged(self.installer_dir) / package_dir.name
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(package_dir, dest, dirs_exist_ok=True, ignore=shutil.ignore_patterns("__pycache__"))

        context_file = self._staged(self.context_path)
        ctx.save(str(context_file), mode=0o600)
        stale_ack = Path(ack_path(str(context_file)))
        if stale_ack.exists():
            stale_ack.unlink()

        (Path(self.ramdisk_mnt) / self.marker).write_text("relocated by cryptpool-installer\n", encoding="utf-8")

    def _bind(self) -> None:
        mount_chroot_binds(self.ramdisk_mnt, self.ledger, recursive=True)

    def _verify(self) -> None:
        expected = [
            self._staged(self.installer_dir) / "cryptpool_installer" / "__main__.py",
            self._staged(self.context_path),
            Path(self.ramdisk_mnt) / self.marker,
        ]
        missing: List[str] = [str(p) for p in expected if not p.exists()]
        if missing:
            raise PivotError(f"Relocation incomplete, missing: {', '.join(missing)}")

    def _child_argv(self, ctx: InstallContext) -> List[str]:
        argv = [
            "chroot", self.ramdisk_mnt,
            "/usr/bin/env", f"PYTHONPATH={self.installer_dir}",
            self.python, "-m", "cryptpool_installer",
            "--resume-context", self.context_path,
        ]
        if ctx.get("LOG_FILE"):
            argv += ["--log", ctx["LOG_FILE"]]
        return argv

    def _launch_child(self, ctx: InstallContext) -> int:
        """Run the relocated installer in the foreground and wait for it.

        The child owns every resource it acquires. A termination request in
        this process is forwarded to it, and we keep waiting until its own
        cleanup has finished before giving up the ramdisk.
        """

        argv = self._child_argv(ctx)
        logger.info("Handing over to relocated installer")
        logger.info("CMD %s", " ".join(shlex.quote(a) for a in argv))
        proc = subprocess.Popen(argv)
        try:
            return proc.wait()
        except (InstallCancelled, KeyboardInterrupt):
            logger.warning("Forwarding termination to relocated installer (pid %d)", proc.pid)
            proc.send_signal(signal.SIGTERM)
            while proc.returncode is None:
                try:
                    proc.wait()
                except (InstallCancelled, KeyboardInterrupt):
                    logger.warning("Still waiting for relocated installer to clean up")
            logger.info("Relocated installer stopped with exit code %d", proc.returncode)
            raise

    def relocate(self, ctx: InstallContext) -> int:
        """Run the whole installation from a RAM-backed copy of the live system.

        Returns the relocated instance's exit code. Staging mounts are
        released before returning, whatever happened.
        """

        try:
            if not ensure_connectivity(ctx.get("NET_IFACE") or None):
                logger.warning("Continuing relocation without network")
            self._mount_ramdisk()
            self._copy_root()
            self._stage_installer(ctx)
            self._bind()
            self._verify()
            code = self._launch_child(ctx)
            if not Path(ack_path(str(self._staged(self.context_path)))).exists():
                raise PivotError(f"Relocated installer exited ({code}) without taking over the installation")
            logger.info("Relocated installer finished with exit code %d", code)
            return code
        except (PivotError, InstallCancelled, KeyboardInterrupt):
            raise
        except Exception as e:
            raise PivotError(f"Relocation failed: {e}") from e
        finally:
            report = self.ledger.release_all()
            for ident, err in report.errors:
                logger.error("Could not release pivot resource %s: %s", ident, err)
