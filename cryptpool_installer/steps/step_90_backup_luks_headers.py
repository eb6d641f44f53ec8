from __future__ import annotations

import logging
import os

from ..context import InstallContext
from ..ledger import ResourceKind, ResourceLedger
from ..lib import crypt
from ..lib.storage import make_unmounter, mount
from ..pipeline import Criticality, StageOutcome

logger = logging.getLogger(__name__)


class BackupLuksHeadersStep:
    name = "backup_luks_headers"
    criticality = Criticality.RECOVERABLE
    health_check = None

    def precondition(self, ctx: InstallContext) -> bool:
        return ctx.uses_luks and bool(ctx.get("HEADER_BACKUP_DEVICE", "").strip())

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        ctx.require("LUKS_PARTITIONS", "TEMP_DIR")
        dry_run = ctx.dry_run
        hostname = ctx.get("HOSTNAME", "host")
        detached = ctx.detached_headers

        handles = []
        try:
            dest_dir = os.path.join(ctx.temp_dir, "header-backup")
            mount(ctx["HEADER_BACKUP_DEVICE"], dest_dir, dry_run=dry_run)
            handles.append(ledger.acquire(ResourceKind.MOUNT_POINT, dest_dir, make_unmounter(dest_dir, dry_run=dry_run)))

            header_dir = ""
            header_files = ctx.get_list("HEADER_FILENAMES")
            if detached:
                header_dir = os.path.join(ctx.temp_dir, "luks-headers")
                mount(ctx["HEADER_PART"], header_dir, options="ro", dry_run=dry_run)
                handles.append(ledger.acquire(ResourceKind.MOUNT_POINT, header_dir, make_unmounter(header_dir, dry_run=dry_run)))

            for i, part in enumerate(ctx.get_list("LUKS_PARTITIONS")):
                header = os.path.join(header_dir, header_files[i]) if detached else None
                dest = os.path.join(dest_dir, f"luks-header-{hostname}-disk{i}.img")
                crypt.backup_header(part, dest, header=header, dry_run=dry_run)
                logger.info("Backed up LUKS header of %s to %s", part, dest)
        finally:
            for h in reversed(handles):
                ledger.release(h)

        return StageOutcome.success()
