from __future__ import annotations

import logging
import os

from ..context import InstallContext
from ..ledger import ResourceKind, ResourceLedger
from ..lib.bootloader import add_efi_boot_entry, extract_clover, write_clover_config
from ..lib.command import run_cmd
from ..lib.storage import make_unmounter, mount
from ..pipeline import Criticality, StageOutcome

logger = logging.getLogger(__name__)

CLOVER_LOADER = "\\EFI\\CLOVER\\CLOVERX64.efi"


class InstallCloverStep:
    """Clover on a separate EFI disk, for firmware that cannot boot NVMe directly."""

    name = "install_clover"
    criticality = Criticality.RECOVERABLE
    health_check = None

    def precondition(self, ctx: InstallContext) -> bool:
        return ctx.get_bool("USE_CLOVER")

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        ctx.require("CLOVER_EFI_PART", "CLOVER_ARCHIVE", "TEMP_DIR")
        dry_run = ctx.dry_run
        part = ctx["CLOVER_EFI_PART"]
        archive = ctx["CLOVER_ARCHIVE"]
        if not dry_run and not os.path.isfile(archive):
            return StageOutcome.failure(f"Clover archive {archive} not found")

        run_cmd(["mkfs.vfat", "-F", "32", "-n", "CLOVER", part], dry_run=dry_run)

        esp = os.path.join(ctx.temp_dir, "clover-esp")
        mount(part, esp, dry_run=dry_run)
        handle = ledger.acquire(ResourceKind.MOUNT_POINT, esp, make_unmounter(esp, dry_run=dry_run))
        try:
            if not dry_run:
                n = extract_clover(archive, esp)
                logger.info("Extracted %d Clover file(s)", n)
            write_clover_config(esp, bootloader_id=ctx.get("BOOTLOADER_ID") or "debian", dry_run=dry_run)
        finally:
            ledger.release(handle)

        add_efi_boot_entry(part, label="Clover", loader=CLOVER_LOADER, dry_run=dry_run)
        return StageOutcome.success()
