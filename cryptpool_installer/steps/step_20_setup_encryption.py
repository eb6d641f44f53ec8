from __future__ import annotations

import logging
import os
from typing import List, Optional

from ..context import InstallContext
from ..ledger import ResourceHandle, ResourceKind, ResourceLedger
from ..lib import crypt
from ..lib.prompt import Prompter, encryption_passphrase
from ..lib.storage import make_unmounter, mount
from ..pipeline import Criticality, StageOutcome

logger = logging.getLogger(__name__)


class SetupEncryptionStep:
    name = "setup_encryption"
    criticality = Criticality.FATAL
    health_check = "luks"

    def __init__(self, prompter: Prompter) -> None:
        self.prompter = prompter

    def precondition(self, ctx: InstallContext) -> bool:
        return ctx.uses_luks

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        ctx.require("LUKS_PARTITIONS", "LUKS_MAPPER_NAME")
        dry_run = ctx.dry_run
        partitions = ctx.get_list("LUKS_PARTITIONS")
        passphrase = encryption_passphrase(ctx, self.prompter)
        detached = ctx.detached_headers

        header_mount: Optional[ResourceHandle] = None
        header_dir = ""
        if detached:
            ctx.require("HEADER_PART", "TEMP_DIR")
            header_dir = os.path.join(ctx.temp_dir, "luks-headers")
            mount(ctx["HEADER_PART"], header_dir, dry_run=dry_run)
            header_mount = ledger.acquire(ResourceKind.MOUNT_POINT, header_dir, make_unmounter(header_dir, dry_run=dry_run))

        mappers: List[str] = []
        header_files: List[str] = []
        try:
            for i, part in enumerate(partitions):
                name = f"{ctx['LUKS_MAPPER_NAME']}_{i}"
                header = None
                if detached:
                    filename = crypt.header_filename(ctx.get("HOSTNAME", "host"), i)
                    header = os.path.join(header_dir, filename)
                    header_files.append(filename)

                logger.info("Formatting %s as LUKS2%s", part, " (detached header)" if header else "")
                crypt.luks_format(part, passphrase, header=header, dry_run=dry_run)
                mapper = crypt.luks_open(part, name, passphrase, header=header, dry_run=dry_run)
                ledger.acquire(ResourceKind.MAPPING, name, crypt.make_closer(name, dry_run=dry_run))
                mappers.append(mapper)
        finally:
            # Headers are only needed while opening; the running mappings keep working.
            if header_mount is not None:
                ledger.release(header_mount)

        ctx["LUKS_MAPPERS"] = mappers
        if detached:
            ctx["HEADER_FILENAMES"] = header_files
        return StageOutcome.success(f"{len(mappers)} mapping(s) open")
