from __future__ import annotations

import logging
from typing import List

from ..context import InstallContext
from ..errors import InstallCancelled, PreconditionError
from ..ledger import ResourceKind, ResourceLedger
from ..lib.block import detect_installer_device, disk_in_use, flush_buffers, get_uuid, has_signatures, is_block_device
from ..lib.prompt import Prompter
from ..lib.storage import DiskLayout, partition_clover_disk, partition_target_disks, prepare_header_disk, wipe_disk
from ..pipeline import Criticality, StageOutcome

logger = logging.getLogger(__name__)


class PartitionDisksStep:
    name = "partition_disks"
    criticality = Criticality.FATAL
    health_check = "disks"

    def __init__(self, prompter: Prompter) -> None:
        self.prompter = prompter

    def precondition(self, ctx: InstallContext) -> bool:
        return True

    def _all_disks(self, ctx: InstallContext) -> List[str]:
        disks = list(ctx.target_disks)
        if ctx.detached_headers:
            disks.append(ctx["HEADER_DISK"])
        if ctx.get_bool("USE_CLOVER"):
            disks.append(ctx["CLOVER_DISK"])
        return disks

    def _safety_checks(self, ctx: InstallContext, disks: List[str]) -> None:
        dry_run = ctx.dry_run
        if len(set(disks)) != len(disks):
            raise PreconditionError(f"A disk is listed for more than one role: {' '.join(disks)}")

        installer = ctx.get("INSTALLER_DEVICE") or detect_installer_device(dry_run=dry_run) or ""
        if installer:
            ctx["INSTALLER_DEVICE"] = installer
        for disk in disks:
            if installer and disk == installer:
                raise PreconditionError(f"{disk} holds the running installer and cannot be a target")
            if dry_run:
                continue
            if not is_block_device(disk):
                raise PreconditionError(f"{disk} is not a block device")
            if disk_in_use(disk):
                raise PreconditionError(f"{disk} (or one of its partitions) is mounted")

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        ctx.require("TARGET_DISKS")
        if ctx.detached_headers:
            ctx.require("HEADER_DISK")
        if ctx.get_bool("USE_CLOVER"):
            ctx.require("CLOVER_DISK")
        dry_run = ctx.dry_run

        disks = self._all_disks(ctx)
        self._safety_checks(ctx, disks)

        with_data = [d for d in disks if has_signatures(d, dry_run=dry_run)]
        question = f"ALL DATA on {', '.join(disks)} will be destroyed."
        if with_data:
            question += f" Existing data detected on {', '.join(with_data)}."
        if not self.prompter.confirm(question + " Continue?", default=False):
            raise InstallCancelled("disk wipe declined")

        for disk in disks:
            wipe_disk(disk, dry_run=dry_run)
            ledger.acquire(ResourceKind.BLOCK_DEVICE, disk, lambda d=disk: flush_buffers(d, dry_run=dry_run))

        result = partition_target_disks(DiskLayout(disks=ctx.target_disks), dry_run=dry_run)
        ctx["EFI_PART"] = result.efi_part
        ctx["BOOT_PART"] = result.boot_part
        ctx["LUKS_PARTITIONS"] = result.luks_parts

        if ctx.detached_headers:
            header_part = prepare_header_disk(ctx["HEADER_DISK"], dry_run=dry_run)
            ctx["HEADER_PART"] = header_part
            ctx["HEADER_PART_UUID"] = get_uuid(header_part, dry_run=dry_run)

        if ctx.get_bool("USE_CLOVER"):
            ctx["CLOVER_EFI_PART"] = partition_clover_disk(ctx["CLOVER_DISK"], dry_run=dry_run)

        logger.info("Partitioned %d disk(s); LUKS partitions: %s", len(disks), ctx["LUKS_PARTITIONS"])
        return StageOutcome.success()
