from __future__ import annotations

import logging
import os
import shutil
from typing import Dict, Iterable, List

from .context import InstallContext
from .errors import NotPrivilegedError, PreconditionError

logger = logging.getLogger(__name__)

# Debian package that provides each external command.
CMD_TO_PKG: Dict[str, str] = {
    "sgdisk": "gdisk",
    "partprobe": "parted",
    "wipefs": "util-linux",
    "blkid": "util-linux",
    "findmnt": "util-linux",
    "mkfs.vfat": "dosfstools",
    "mkfs.ext4": "e2fsprogs",
    "cryptsetup": "cryptsetup-bin",
    "zpool": "zfsutils-linux",
    "zfs": "zfsutils-linux",
    "debootstrap": "debootstrap",
    "rsync": "rsync",
    "chroot": "coreutils",
    "dhclient": "isc-dhcp-client",
    "smartctl": "smartmontools",
    "efibootmgr": "efibootmgr",
    "wget": "wget",
}

REQUIRED_COMMANDS = (
    "sgdisk", "partprobe", "wipefs", "blkid", "findmnt", "mkfs.vfat", "mkfs.ext4",
    "cryptsetup", "zpool", "zfs", "debootstrap", "chroot",
)
PIVOT_COMMANDS = ("rsync",)
REQUIRED_KEYS = ("TARGET_DISKS", "HOSTNAME", "ZFS_POOL_NAME", "ZFS_RAID_LEVEL", "LUKS_MAPPER_NAME")


def is_privileged() -> bool:
    return os.geteuid() == 0


def require_root() -> None:
    if not is_privileged():
        raise NotPrivilegedError("The installer must run as root")


def missing_commands(commands: Iterable[str]) -> List[str]:
    return [c for c in commands if shutil.which(c) is None]


def package_hint(commands: Iterable[str]) -> str:
    pkgs = sorted({CMD_TO_PKG.get(c, c) for c in commands})
    return "apt-get install " + " ".join(pkgs)


def required_commands(ctx: InstallContext, *, pivot: bool) -> List[str]:
    cmds = [c for c in REQUIRED_COMMANDS if ctx.uses_luks or c != "cryptsetup"]
    if pivot:
        cmds += PIVOT_COMMANDS
    if ctx.get("GRUB_MODE", "").upper() == "UEFI" or ctx.get_bool("USE_CLOVER"):
        cmds.append("efibootmgr")
    if ctx.get_bool("PROXMOX_VE"):
        cmds.append("wget")
    return cmds


def run_preflight(ctx: InstallContext, *, pivot: bool) -> None:
    """Fail early on missing settings or tools, before anything is touched."""

    ctx.require(*REQUIRED_KEYS)
    if ctx.dry_run:
        logger.info("Dry run: skipping external command check")
        return
    missing = missing_commands(required_commands(ctx, pivot=pivot))
    if missing:
        raise PreconditionError(f"Missing commands: {', '.join(missing)} (try: {package_hint(missing)})")
    logger.info("Preflight checks passed")
