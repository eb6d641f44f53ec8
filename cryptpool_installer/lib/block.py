from __future__ import annotations

import logging
import os
import re
import stat
import time
from typing import List, Optional

from .command import run_cmd

logger = logging.getLogger(__name__)

PROC_MOUNTS = "/proc/mounts"


def part_path(disk: str, n: int) -> str:
    # nvme/mmcblk/loop devices use p suffix
    if disk.endswith(tuple("0123456789")):
        return f"{disk}p{n}"
    return f"{disk}{n}"


def parent_disk(partition: str) -> str:
    """/dev/nvme0n1p2 -> /dev/nvme0n1, /dev/sda3 -> /dev/sda."""

    m = re.match(r"^(.*\d)p\d+$", partition)
    if m:
        return m.group(1)
    return re.sub(r"\d+$", "", partition)


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def mounted_sources(proc_mounts: str = PROC_MOUNTS) -> List[tuple[str, str]]:
    """(source, mountpoint) pairs from /proc/mounts."""

    try:
        with open(proc_mounts, encoding="utf-8") as f:
            lines = f.read().splitlines()
    except OSError:
        return []
    out = []
    for line in lines:
        parts = line.split()
        if len(parts) >= 2:
            out.append((parts[0], parts[1].replace("\\040", " ")))
    return out


def is_mountpoint(path: str, proc_mounts: str = PROC_MOUNTS) -> bool:
    target = os.path.normpath(path)
    return any(mp == target for _src, mp in mounted_sources(proc_mounts))


def disk_in_use(disk: str, proc_mounts: str = PROC_MOUNTS) -> bool:
    """True if the disk or any of its partitions is mounted."""

    return any(src == disk or (src.startswith(disk) and parent_disk(src) == disk) for src, _mp in mounted_sources(proc_mounts))


def detect_installer_device(*, dry_run: bool = False) -> Optional[str]:
    """Disk holding the running root filesystem (never a valid target)."""

    r = run_cmd(["findmnt", "-n", "-o", "SOURCE", "--target", "/"], check=False, dry_run=dry_run)
    source = (r.stdout or "").strip()
    if not source.startswith("/dev/"):
        return None
    return parent_disk(source)


def device_size_bytes(dev: str, *, dry_run: bool = False) -> int:
    r = run_cmd(["blockdev", "--getsize64", dev], check=False, dry_run=dry_run)
    try:
        return int((r.stdout or "0").strip() or 0)
    except ValueError:
        return 0


def get_uuid(dev: str, *, tag: str = "UUID", retries: int = 3, delay: float = 1.0, dry_run: bool = False) -> str:
    """Return the UUID (or another blkid tag such as PARTUUID) of a device.

    udev may not have caught up right after formatting, so a few retries.
    """

    uuid = ""
    for attempt in range(retries):
        r = run_cmd(["blkid", "-s", tag, "-o", "value", dev], check=False, dry_run=dry_run)
        uuid = (r.stdout or "").strip()
        if uuid or dry_run:
            return uuid
        if attempt + 1 < retries:
            time.sleep(delay)
    raise RuntimeError(f"Unable to determine {tag} for {dev}")


def has_signatures(dev: str, *, dry_run: bool = False) -> bool:
    """True if wipefs finds any filesystem/partition-table signature."""

    r = run_cmd(["wipefs", "-n", dev], check=False, dry_run=dry_run)
    return bool((r.stdout or "").strip())


def flush_buffers(dev: str, *, dry_run: bool = False) -> None:
    if not dry_run and not is_block_device(dev):
        return
    run_cmd(["blockdev", "--flushbufs", dev], check=False, dry_run=dry_run)
