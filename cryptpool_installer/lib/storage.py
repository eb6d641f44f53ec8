from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..errors import CommandError
from .block import is_mountpoint, part_path
from .command import run_cmd

logger = logging.getLogger(__name__)

EFI_SIZE_MIB = 512
BOOT_SIZE_MIB = 1024
HEADER_LABEL = "LUKS_HEADERS"


@dataclass(frozen=True)
class DiskLayout:
    """GPT layout of the target disks.

    The first disk carries EFI, /boot and a LUKS partition; every other disk
    is one LUKS partition that joins the pool.
    """

    disks: List[str]
    efi_size_mib: int = EFI_SIZE_MIB
    boot_size_mib: int = BOOT_SIZE_MIB


@dataclass
class PartitionResult:
    efi_part: str
    boot_part: str
    luks_parts: List[str] = field(default_factory=list)


def _sgdisk_new(disk: str, n: int, start: str, end: str, typecode: str, name: str, *, dry_run: bool) -> None:
    run_cmd(
        [
            "sgdisk",
            f"--new={n}:{start}:{end}",
            f"--typecode={n}:{typecode}",
            f"--change-name={n}:{name}",
            disk,
        ],
        dry_run=dry_run,
    )


def wipe_disk(disk: str, *, dry_run: bool = False) -> None:
    logger.info("Wiping %s", disk)
    run_cmd(["wipefs", "-a", disk], dry_run=dry_run)
    run_cmd(["sgdisk", "--zap-all", disk], dry_run=dry_run)
    run_cmd(["sgdisk", "--clear", disk], dry_run=dry_run)


def partition_target_disks(layout: DiskLayout, *, dry_run: bool = False) -> PartitionResult:
    if not layout.disks:
        raise ValueError("No target disks")

    primary = layout.disks[0]
    logger.info("Partitioning primary disk %s", primary)
    _sgdisk_new(primary, 1, "1M", f"+{layout.efi_size_mib}M", "EF00", "EFI", dry_run=dry_run)
    _sgdisk_new(primary, 2, "0", f"+{layout.boot_size_mib}M", "8300", "BOOT", dry_run=dry_run)
    _sgdisk_new(primary, 3, "0", "0", "BF01", "LUKS", dry_run=dry_run)
    run_cmd(["partprobe", primary], dry_run=dry_run)

    result = PartitionResult(
        efi_part=part_path(primary, 1),
        boot_part=part_path(primary, 2),
        luks_parts=[part_path(primary, 3)],
    )

    for disk in layout.disks[1:]:
        logger.info("Partitioning pool member %s", disk)
        _sgdisk_new(disk, 1, "0", "0", "BF01", "LUKS", dry_run=dry_run)
        run_cmd(["partprobe", disk], dry_run=dry_run)
        result.luks_parts.append(part_path(disk, 1))

    run_cmd(["udevadm", "settle"], check=False, dry_run=dry_run)

    run_cmd(["mkfs.vfat", "-F", "32", "-n", "EFI", result.efi_part], dry_run=dry_run)
    run_cmd(["mkfs.ext4", "-F", "-L", "boot", result.boot_part], dry_run=dry_run)
    return result


def prepare_header_disk(disk: str, *, dry_run: bool = False) -> str:
    """Single ext4 partition that stores detached LUKS headers."""

    _sgdisk_new(disk, 1, "0", "0", "8300", HEADER_LABEL, dry_run=dry_run)
    run_cmd(["partprobe", disk], dry_run=dry_run)
    run_cmd(["udevadm", "settle"], check=False, dry_run=dry_run)
    part = part_path(disk, 1)
    run_cmd(["mkfs.ext4", "-F", "-L", HEADER_LABEL, part], dry_run=dry_run)
    return part


def partition_clover_disk(disk: str, *, dry_run: bool = False) -> str:
    _sgdisk_new(disk, 1, "1M", f"+{EFI_SIZE_MIB}M", "EF00", "CLOVER", dry_run=dry_run)
    run_cmd(["partprobe", disk], dry_run=dry_run)
    run_cmd(["udevadm", "settle"], check=False, dry_run=dry_run)
    return part_path(disk, 1)


def mount(source: str, target: str, *, fstype: Optional[str] = None, options: Optional[str] = None, dry_run: bool = False) -> None:
    if not dry_run:
        Path(target).mkdir(parents=True, exist_ok=True)
    argv = ["mount"]
    if fstype:
        argv += ["-t", fstype]
    if options:
        argv += ["-o", options]
    argv += [source, target]
    run_cmd(argv, dry_run=dry_run)


def unmount(target: str, *, dry_run: bool = False) -> None:
    """Unmount if mounted: plain, then forced, then lazy.

    A no-op for a path that is not (or no longer) a mount point.
    """

    if not dry_run and not is_mountpoint(target):
        logger.debug("%s is not mounted", target)
        return
    for flags in ([], ["-f"]):
        try:
            run_cmd(["umount", *flags, target], dry_run=dry_run)
            return
        except CommandError as e:
            logger.warning("umount %s %s failed: %s", " ".join(flags), target, e.stderr.strip())
    # Last resort; its error propagates to the caller.
    run_cmd(["umount", "-lf", target], dry_run=dry_run)


def make_unmounter(target: str, *, dry_run: bool = False):
    def _release() -> None:
        unmount(target, dry_run=dry_run)

    return _release
