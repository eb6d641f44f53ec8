from __future__ import annotations

import logging

from ..context import InstallContext
from ..ledger import ResourceLedger
from ..lib.bootloader import detect_grub_mode, install_grub_bios, install_grub_efi, update_initramfs, write_grub_defaults
from ..lib.chroot import mount_chroot_binds, release_chroot_binds
from ..pipeline import Criticality, StageOutcome

logger = logging.getLogger(__name__)


class InstallBootloaderStep:
    name = "install_bootloader"
    criticality = Criticality.FATAL
    health_check = "bootloader"

    def precondition(self, ctx: InstallContext) -> bool:
        return True

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        ctx.require("TARGET_DISKS")
        dry_run = ctx.dry_run
        root = ctx.target_root
        mode = (ctx.get("GRUB_MODE") or detect_grub_mode()).upper()
        if mode not in {"UEFI", "BIOS"}:
            return StageOutcome.failure(f"GRUB_MODE must be UEFI or BIOS, got {mode}")
        ctx["GRUB_MODE"] = mode

        write_grub_defaults(root, root_dataset=f"{ctx.pool_name}/{ctx['ZFS_ROOT_DATASET']}", dry_run=dry_run)

        binds = mount_chroot_binds(root, ledger, dry_run=dry_run)
        try:
            update_initramfs(root, dry_run=dry_run)
            if mode == "UEFI":
                install_grub_efi(target_root=root, bootloader_id=ctx.get("BOOTLOADER_ID") or "debian", dry_run=dry_run)
            else:
                install_grub_bios(target_root=root, disk=ctx.target_disks[0], dry_run=dry_run)
        finally:
            release_chroot_binds(ledger, binds)

        logger.info("Bootloader configured (mode=%s)", mode)
        return StageOutcome.success(mode)
