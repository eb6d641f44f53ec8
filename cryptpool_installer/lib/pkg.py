from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence

from .chroot import chroot_cmd
from .command import run_cmd

logger = logging.getLogger(__name__)

NONINTERACTIVE = {"DEBIAN_FRONTEND": "noninteractive"}


def debootstrap_rootfs(
    *,
    target_root: str,
    suite: str = "trixie",
    mirror: str = "http://deb.debian.org/debian",
    include: Sequence[str] = (),
    dry_run: bool = False,
) -> None:
    argv = ["debootstrap", "--arch", "amd64"]
    if include:
        argv.append("--include=" + ",".join(include))
    argv += [suite, target_root, mirror]
    run_cmd(argv, dry_run=dry_run)


def write_sources_list(target_root: str, *, suite: str, mirror: str, dry_run: bool = False) -> None:
    p = Path(target_root) / "etc/apt/sources.list"
    contents = (
        f"deb {mirror} {suite} main contrib non-free-firmware\n"
        f"deb {mirror} {suite}-updates main contrib non-free-firmware\n"
        f"deb http://security.debian.org/debian-security {suite}-security main contrib non-free-firmware\n"
    )
    if dry_run:
        logger.info("Would write %s", p)
        return
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(contents, encoding="utf-8")


def apt_update(target_root: str, *, dry_run: bool = False) -> None:
    chroot_cmd(target_root, ["apt-get", "update"], dry_run=dry_run)


def apt_install(target_root: str, packages: Sequence[str], *, dry_run: bool = False) -> None:
    if not packages:
        return
    run_cmd(
        ["chroot", target_root, "apt-get", "install", "-y", "--no-install-recommends", *packages],
        env=NONINTERACTIVE,
        dry_run=dry_run,
    )


def local_debs(directory: str) -> List[Path]:
    if not directory:
        return []
    d = Path(directory)
    if not d.is_dir():
        return []
    return sorted(d.glob("*.deb"))


def install_local_debs(target_root: str, directory: str, *, dry_run: bool = False) -> int:
    """Copy .deb files from the installer media into the target and install them."""

    debs = local_debs(directory)
    if not debs:
        return 0
    staging = Path(target_root) / "tmp/local-debs"
    if not dry_run:
        staging.mkdir(parents=True, exist_ok=True)
        for deb in debs:
            (staging / deb.name).write_bytes(deb.read_bytes())
    run_cmd(
        ["chroot", target_root, "apt-get", "install", "-y", *[f"/tmp/local-debs/{d.name}" for d in debs]],
        env=NONINTERACTIVE,
        dry_run=dry_run,
    )
    logger.info("Installed %d local package(s) from %s", len(debs), directory)
    return len(debs)


PROXMOX_REPO = "http://download.proxmox.com/debian/pve"
PROXMOX_KEYS = {
    "bookworm": "https://enterprise.proxmox.com/debian/proxmox-release-bookworm.gpg",
    "trixie": "https://enterprise.proxmox.com/debian/proxmox-archive-keyring-trixie.gpg",
}
PROXMOX_PACKAGES = ["proxmox-ve", "postfix", "open-iscsi", "ifupdown2"]
# Shipped by proxmox-ve; unusable without a subscription.
ENTERPRISE_LISTS = ("pve-enterprise.list", "pve-enterprise.sources")


def write_proxmox_repo(target_root: str, *, suite: str, dry_run: bool = False) -> None:
    """Add the Proxmox VE no-subscription repository and its signing key."""

    key_url = PROXMOX_KEYS.get(suite)
    if key_url is None:
        raise ValueError(f"No Proxmox VE repository for suite {suite!r}")
    keyring = Path(target_root) / "etc/apt/trusted.gpg.d" / f"proxmox-release-{suite}.gpg"
    list_file = Path(target_root) / "etc/apt/sources.list.d/pve-install-repo.list"
    if not dry_run:
        keyring.parent.mkdir(parents=True, exist_ok=True)
    run_cmd(["wget", "-q", "-O", str(keyring), key_url], dry_run=dry_run)
    if dry_run:
        logger.info("Would write %s", list_file)
        return
    list_file.parent.mkdir(parents=True, exist_ok=True)
    list_file.write_text(f"deb {PROXMOX_REPO} {suite} pve-no-subscription\n", encoding="utf-8")


def remove_enterprise_repo(target_root: str, *, dry_run: bool = False) -> None:
    for name in ENTERPRISE_LISTS:
        p = Path(target_root) / "etc/apt/sources.list.d" / name
        if dry_run:
            logger.info("Would remove %s", p)
        elif p.exists():
            p.unlink()
            logger.info("Removed %s", p)
