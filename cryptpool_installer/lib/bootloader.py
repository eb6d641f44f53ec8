from __future__ import annotations

import logging
import plistlib
import re
import zipfile
from pathlib import Path

from .block import parent_disk
from .chroot import chroot_cmd
from .command import run_cmd

logger = logging.getLogger(__name__)

EFI_VARS = "/sys/firmware/efi"


def detect_grub_mode(efi_vars: str = EFI_VARS) -> str:
    return "UEFI" if Path(efi_vars).is_dir() else "BIOS"


def write_grub_defaults(target_root: str, *, root_dataset: str, dry_run: bool = False) -> None:
    p = Path(target_root) / "etc/default/grub"
    contents = (
        "GRUB_DEFAULT=0\n"
        "GRUB_TIMEOUT=5\n"
        'GRUB_DISTRIBUTOR="Debian"\n'
        'GRUB_CMDLINE_LINUX_DEFAULT="quiet"\n'
        f'GRUB_CMDLINE_LINUX="root=ZFS={root_dataset} boot=zfs"\n'
        "GRUB_ENABLE_CRYPTODISK=y\n"
    )
    if dry_run:
        logger.info("Would write %s", p)
        return
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(contents, encoding="utf-8")


def update_initramfs(target_root: str, *, dry_run: bool = False) -> None:
    chroot_cmd(target_root, ["update-initramfs", "-u", "-k", "all"], dry_run=dry_run)


def install_grub_efi(*, target_root: str, bootloader_id: str, dry_run: bool = False) -> None:
    """Install GRUB for x86_64 UEFI targets (expects /boot/efi mounted)."""

    chroot_cmd(
        target_root,
        [
            "grub-install",
            "--target=x86_64-efi",
            "--efi-directory=/boot/efi",
            f"--bootloader-id={bootloader_id}",
            "--recheck",
        ],
        dry_run=dry_run,
    )
    chroot_cmd(target_root, ["update-grub"], dry_run=dry_run)
    logger.info("GRUB UEFI installed (id=%s)", bootloader_id)


def install_grub_bios(*, target_root: str, disk: str, dry_run: bool = False) -> None:
    chroot_cmd(target_root, ["grub-install", "--target=i386-pc", "--recheck", disk], dry_run=dry_run)
    chroot_cmd(target_root, ["update-grub"], dry_run=dry_run)
    logger.info("GRUB BIOS installed on %s", disk)


def clover_config(*, bootloader_id: str, timeout: int = 3) -> dict:
    """Minimal Clover config.plist chain-loading the GRUB EFI binary."""

    return {
        "Boot": {
            "DefaultVolume": "LastBootedVolume",
            "Timeout": timeout,
            "Fast": False,
        },
        "GUI": {
            "Custom": {
                "Entries": [
                    {
                        "Title": "Debian (encrypted ZFS)",
                        "Type": "Linux",
                        "Path": f"\\EFI\\{bootloader_id}\\grubx64.efi",
                        "Hidden": False,
                        "Disabled": False,
                    }
                ]
            },
            "Scan": {"Legacy": False, "Linux": True},
        },
    }


def extract_clover(archive: str, dest: str) -> int:
    """Extract the EFI tree from a Clover zip; returns the number of files."""

    count = 0
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            # Archives either ship EFI/ at the root or wrapped in one directory.
            m = re.search(r"(^|/)(EFI/.*)$", info.filename)
            if not m or info.is_dir():
                continue
            out = Path(dest) / m.group(2)
            out.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as src:
                out.write_bytes(src.read())
            count += 1
    if count == 0:
        raise RuntimeError(f"No EFI/ tree found in {archive}")
    return count


def write_clover_config(esp_mount: str, *, bootloader_id: str, dry_run: bool = False) -> Path:
    p = Path(esp_mount) / "EFI/CLOVER/config.plist"
    if dry_run:
        logger.info("Would write %s", p)
        return p
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("wb") as f:
        plistlib.dump(clover_config(bootloader_id=bootloader_id), f)
    return p


def add_efi_boot_entry(partition: str, *, label: str, loader: str, dry_run: bool = False) -> None:
    disk = parent_disk(partition)
    m = re.search(r"(\d+)$", partition)
    part_num = m.group(1) if m else "1"
    run_cmd(
        ["efibootmgr", "--create", "--disk", disk, "--part", part_num, "--label", label, "--loader", loader],
        dry_run=dry_run,
    )


def grub_efi_dir(target_root: str, bootloader_id: str) -> Path:
    return Path(target_root) / "boot/efi/EFI" / bootloader_id


def kernel_present(target_root: str) -> bool:
    return any((Path(target_root) / "boot").glob("vmlinuz-*"))


def initrd_present(target_root: str) -> bool:
    return any((Path(target_root) / "boot").glob("initrd.img-*"))
