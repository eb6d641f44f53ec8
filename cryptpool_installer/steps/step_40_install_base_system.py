from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from ..context import InstallContext
from ..ledger import ResourceKind, ResourceLedger
from ..lib.pkg import debootstrap_rootfs
from ..lib.storage import make_unmounter, mount
from ..pipeline import Criticality, StageOutcome

logger = logging.getLogger(__name__)

BOOTSTRAP_INCLUDE = ("locales", "ca-certificates", "console-setup")


class InstallBaseSystemStep:
    name = "install_base_system"
    criticality = Criticality.FATAL
    health_check = "base_system"

    def precondition(self, ctx: InstallContext) -> bool:
        return True

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        ctx.require("BOOT_PART", "EFI_PART", "DEBIAN_RELEASE", "DEBIAN_MIRROR")
        dry_run = ctx.dry_run
        root = ctx.target_root

        boot = os.path.join(root, "boot")
        mount(ctx["BOOT_PART"], boot, dry_run=dry_run)
        ledger.acquire(ResourceKind.MOUNT_POINT, boot, make_unmounter(boot, dry_run=dry_run))

        efi = os.path.join(boot, "efi")
        mount(ctx["EFI_PART"], efi, dry_run=dry_run)
        ledger.acquire(ResourceKind.MOUNT_POINT, efi, make_unmounter(efi, dry_run=dry_run))

        debootstrap_rootfs(
            target_root=root,
            suite=ctx["DEBIAN_RELEASE"],
            mirror=ctx["DEBIAN_MIRROR"],
            include=BOOTSTRAP_INCLUDE,
            dry_run=dry_run,
        )

        log_file = ctx.get("LOG_FILE", "")
        if log_file and os.path.exists(log_file) and not dry_run:
            dest = Path(root) / "var/log/cryptpool-installer.log"
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(log_file, dest)

        logger.info("Base system %s installed into %s", ctx["DEBIAN_RELEASE"], root)
        return StageOutcome.success()
