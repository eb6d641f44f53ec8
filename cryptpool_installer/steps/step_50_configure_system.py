from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from ..context import InstallContext
from ..ledger import ResourceLedger
from ..lib.block import get_uuid
from ..lib.chroot import chroot_cmd, mount_chroot_binds, release_chroot_binds
from ..lib.fstab import CrypttabEntry, FstabEntry, crypttab_options, render_crypttab, render_fstab
from ..lib.pkg import (
    PROXMOX_PACKAGES,
    apt_install,
    apt_update,
    install_local_debs,
    remove_enterprise_repo,
    write_proxmox_repo,
    write_sources_list,
)
from ..lib.prompt import Prompter
from ..pipeline import Criticality, StageOutcome

logger = logging.getLogger(__name__)

BASE_PACKAGES = [
    "linux-image-amd64",
    "linux-headers-amd64",
    "zfs-initramfs",
    "zfsutils-linux",
    "cryptsetup",
    "cryptsetup-initramfs",
    "openssh-server",
    "ifupdown",
    "bridge-utils",
    "isc-dhcp-client",
]

GRUB_PACKAGES = {
    "UEFI": ["grub-efi-amd64", "efibootmgr"],
    "BIOS": ["grub-pc"],
}


def _write(path: Path, contents: str, *, dry_run: bool) -> None:
    if dry_run:
        logger.info("Would write %s", path)
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")


def package_list(ctx: InstallContext) -> List[str]:
    packages = list(BASE_PACKAGES)
    if not ctx.uses_luks:
        packages = [p for p in packages if not p.startswith("cryptsetup")]
    if ctx.get_bool("PROXMOX_VE"):
        # ifupdown2 replaces ifupdown on Proxmox VE.
        packages = [p for p in packages if p != "ifupdown"] + PROXMOX_PACKAGES
    packages += GRUB_PACKAGES.get(ctx.get("GRUB_MODE", "").upper(), GRUB_PACKAGES["UEFI"])
    return packages + ctx.get_list("EXTRA_PACKAGES")


def build_fstab(ctx: InstallContext) -> str:
    dry_run = ctx.dry_run
    entries = [
        FstabEntry(f"UUID={get_uuid(ctx['BOOT_PART'], dry_run=dry_run)}", "/boot", "ext4", "defaults", 0, 2),
        FstabEntry(f"UUID={get_uuid(ctx['EFI_PART'], dry_run=dry_run)}", "/boot/efi", "vfat", "umask=0077", 0, 1),
    ]
    return render_fstab(entries)


def build_crypttab(ctx: InstallContext) -> str:
    if not ctx.uses_luks:
        return render_crypttab([])
    dry_run = ctx.dry_run
    detached = ctx.detached_headers
    header_files = ctx.get_list("HEADER_FILENAMES")
    entries: List[CrypttabEntry] = []
    for i, part in enumerate(ctx.get_list("LUKS_PARTITIONS")):
        name = f"{ctx['LUKS_MAPPER_NAME']}_{i}"
        if detached:
            # No LUKS header on the payload, so no filesystem UUID either.
            source = f"PARTUUID={get_uuid(part, tag='PARTUUID', dry_run=dry_run)}"
            opts = crypttab_options(header_part_uuid=ctx["HEADER_PART_UUID"], header_file=header_files[i])
        else:
            source = f"UUID={get_uuid(part, dry_run=dry_run)}"
            opts = crypttab_options()
        entries.append(CrypttabEntry(name=name, source=source, options=opts))
    return render_crypttab(entries)


class ConfigureSystemStep:
    name = "configure_system"
    criticality = Criticality.FATAL
    health_check = "system"

    def __init__(self, prompter: Prompter) -> None:
        self.prompter = prompter

    def precondition(self, ctx: InstallContext) -> bool:
        return True

    def _write_identity(self, ctx: InstallContext) -> None:
        root = Path(ctx.target_root)
        hostname = ctx["HOSTNAME"]
        _write(root / "etc/hostname", hostname + "\n", dry_run=ctx.dry_run)
        _write(
            root / "etc/hosts",
            f"127.0.0.1\tlocalhost\n127.0.1.1\t{hostname}\n\n::1\tlocalhost ip6-localhost ip6-loopback\n",
            dry_run=ctx.dry_run,
        )
        _write(root / "etc/locale.gen", "en_US.UTF-8 UTF-8\n", dry_run=ctx.dry_run)
        _write(root / "etc/default/locale", "LANG=en_US.UTF-8\n", dry_run=ctx.dry_run)

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        ctx.require("HOSTNAME", "BOOT_PART", "EFI_PART", "LUKS_PARTITIONS")
        if ctx.detached_headers:
            ctx.require("HEADER_PART_UUID", "HEADER_FILENAMES")
        dry_run = ctx.dry_run
        root = ctx.target_root

        self._write_identity(ctx)
        write_sources_list(root, suite=ctx["DEBIAN_RELEASE"], mirror=ctx["DEBIAN_MIRROR"], dry_run=dry_run)
        _write(Path(root) / "etc/fstab", build_fstab(ctx), dry_run=dry_run)
        _write(Path(root) / "etc/crypttab", build_crypttab(ctx), dry_run=dry_run)

        root_password = ctx.get("ROOT_PASSWORD", "")
        if not root_password:
            root_password = self.prompter.password("Root password for the new system", key="ROOT_PASSWORD")
            ctx["ROOT_PASSWORD"] = root_password

        packages = package_list(ctx)
        proxmox = ctx.get_bool("PROXMOX_VE")
        if proxmox:
            write_proxmox_repo(root, suite=ctx.get("PROXMOX_SUITE") or ctx["DEBIAN_RELEASE"], dry_run=dry_run)

        binds = mount_chroot_binds(root, ledger, dry_run=dry_run)
        try:
            chroot_cmd(root, ["locale-gen"], dry_run=dry_run)
            apt_update(root, dry_run=dry_run)
            apt_install(root, packages, dry_run=dry_run)
            install_local_debs(root, ctx.get("LOCAL_DEBS_DIR", ""), dry_run=dry_run)
            if proxmox:
                remove_enterprise_repo(root, dry_run=dry_run)
            chroot_cmd(root, ["chpasswd"], input_text=f"root:{root_password}\n", dry_run=dry_run)
            chroot_cmd(root, ["systemctl", "enable", "ssh"], dry_run=dry_run)
            chroot_cmd(root, ["systemctl", "enable", "zfs-import-cache", "zfs-mount", "zfs.target"], dry_run=dry_run)
        finally:
            release_chroot_binds(ledger, binds)

        logger.info("Configured target system %s", ctx["HOSTNAME"])
        return StageOutcome.success()
