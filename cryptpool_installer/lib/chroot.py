from __future__ import annotations

import logging
from typing import List, Sequence

from ..ledger import ResourceHandle, ResourceKind, ResourceLedger
from .command import CmdResult, run_cmd
from .storage import make_unmounter

logger = logging.getLogger(__name__)

BIND_SOURCES = ("/dev", "/proc", "/sys")
# Only for the relocated installer, which needs udev state and cryptsetup locks.
RELOCATION_BIND_SOURCES = BIND_SOURCES + ("/run",)


def chroot_cmd(target_root: str, argv: Sequence[str], *, input_text: str | None = None, dry_run: bool = False) -> CmdResult:
    """Run a command inside target root."""

    return run_cmd(["chroot", target_root, *argv], input_text=input_text, dry_run=dry_run)


def mount_chroot_binds(
    target_root: str,
    ledger: ResourceLedger,
    *,
    recursive: bool = False,
    dry_run: bool = False,
) -> List[ResourceHandle]:
    """Bind /dev, /proc and /sys into target root, each recorded in the ledger.

    recursive=True uses --rbind and adds /run (needed when the chroot runs the
    installer itself and must see nested mounts such as /dev/pts).
    """

    flag = "--rbind" if recursive else "--bind"
    handles = []
    for src in RELOCATION_BIND_SOURCES if recursive else BIND_SOURCES:
        dst = f"{target_root.rstrip('/')}{src}"
        run_cmd(["mkdir", "-p", dst], dry_run=dry_run)
        run_cmd(["mount", flag, src, dst], dry_run=dry_run)
        if recursive:
            run_cmd(["mount", "--make-rslave", dst], check=False, dry_run=dry_run)
        handles.append(ledger.acquire(ResourceKind.MOUNT_POINT, dst, make_unmounter(dst, dry_run=dry_run)))
    return handles


def release_chroot_binds(ledger: ResourceLedger, handles: Sequence[ResourceHandle]) -> None:
    for h in reversed(list(handles)):
        ledger.release(h)
