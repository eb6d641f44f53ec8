from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from .command import run_cmd

logger = logging.getLogger(__name__)

RAID_LEVELS = ("single", "stripe", "mirror", "raidz1", "raidz2")
MIN_DISKS = {"single": 1, "stripe": 1, "mirror": 2, "raidz1": 3, "raidz2": 4}
NATIVE_ENCRYPTION_OPTS = [
    "-O", "encryption=aes-256-gcm",
    "-O", "keyformat=passphrase",
    "-O", "keylocation=prompt",
]
# zfs refuses shorter passphrases.
MIN_PASSPHRASE_LEN = 8


def vdev_spec(raid_level: str, devices: Sequence[str]) -> List[str]:
    if raid_level not in RAID_LEVELS:
        raise ValueError(f"Unsupported ZFS raid level: {raid_level}")
    if len(devices) < MIN_DISKS[raid_level]:
        raise ValueError(f"{raid_level} needs at least {MIN_DISKS[raid_level]} device(s), got {len(devices)}")
    if raid_level in {"single", "stripe"}:
        return list(devices)
    return [raid_level, *devices]


def pool_exists(pool: str, *, dry_run: bool = False) -> bool:
    if dry_run:
        return False
    return run_cmd(["zpool", "list", "-H", "-o", "name", pool], check=False).ok


def create_pool(
    pool: str,
    raid_level: str,
    devices: Sequence[str],
    *,
    altroot: str,
    ashift: str = "12",
    compression: str = "lz4",
    recordsize: str = "128K",
    passphrase: Optional[str] = None,
    dry_run: bool = False,
) -> None:
    """Create the pool. With a passphrase every dataset is natively encrypted."""

    argv = [
        "zpool", "create", "-f",
        "-o", f"ashift={ashift}",
        "-O", "acltype=posixacl",
        "-O", f"compression={compression}",
        "-O", f"recordsize={recordsize}",
        "-O", "dnodesize=auto",
        "-O", "normalization=formD",
        "-O", "relatime=on",
        "-O", "xattr=sa",
        "-O", "mountpoint=none",
    ]
    if passphrase is not None:
        argv += NATIVE_ENCRYPTION_OPTS
    argv += [
        "-R", altroot,
        pool,
        *vdev_spec(raid_level, devices),
    ]
    # keylocation=prompt reads the passphrase from stdin when it is not a tty.
    run_cmd(argv, input_text=passphrase, dry_run=dry_run)
    logger.info(
        "Created pool %s (%s over %d device(s)%s)",
        pool, raid_level, len(devices), ", encrypted" if passphrase is not None else "",
    )


def destroy_pool(pool: str, *, dry_run: bool = False) -> None:
    run_cmd(["zpool", "destroy", "-f", pool], dry_run=dry_run)


def export_pool(pool: str, *, dry_run: bool = False) -> None:
    """Export a pool; a no-op once it is gone."""

    if not dry_run and not pool_exists(pool):
        logger.debug("Pool %s not imported", pool)
        return
    run_cmd(["zpool", "export", pool], dry_run=dry_run)


def make_exporter(pool: str, *, dry_run: bool = False):
    def _release() -> None:
        export_pool(pool, dry_run=dry_run)

    return _release


def create_dataset(name: str, props: Dict[str, str] | None = None, *, dry_run: bool = False) -> None:
    argv = ["zfs", "create"]
    for k, v in (props or {}).items():
        argv += ["-o", f"{k}={v}"]
    argv.append(name)
    run_cmd(argv, dry_run=dry_run)


def set_bootfs(pool: str, dataset: str, *, dry_run: bool = False) -> None:
    run_cmd(["zpool", "set", f"bootfs={dataset}", pool], dry_run=dry_run)


def pool_healthy(pool: str, *, dry_run: bool = False) -> tuple[bool, str]:
    r = run_cmd(["zpool", "status", "-x", pool], check=False, dry_run=dry_run)
    out = (r.stdout or "").strip()
    if dry_run:
        return True, "dry-run"
    return r.ok and "healthy" in out, out


def mount_dataset(name: str, *, dry_run: bool = False) -> None:
    run_cmd(["zfs", "mount", name], dry_run=dry_run)


def encryption_of(dataset: str) -> str:
    r = run_cmd(["zfs", "get", "-H", "-o", "value", "encryption", dataset], check=False)
    return (r.stdout or "").strip() if r.ok else ""
