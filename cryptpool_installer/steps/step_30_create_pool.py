from __future__ import annotations

import logging
from typing import Optional

from ..context import InstallContext
from ..ledger import ResourceKind, ResourceLedger
from ..lib import zfs
from ..lib.prompt import Prompter, encryption_passphrase
from ..pipeline import Criticality, StageOutcome

logger = logging.getLogger(__name__)


class CreatePoolStep:
    name = "create_pool"
    criticality = Criticality.FATAL
    health_check = "zfs"

    def __init__(self, prompter: Optional[Prompter] = None) -> None:
        self.prompter = prompter

    def _native_passphrase(self, ctx: InstallContext) -> Optional[str]:
        if ctx.uses_luks:
            return None
        if self.prompter is None:
            ctx.require(ctx.passphrase_key)
            return ctx[ctx.passphrase_key]
        return encryption_passphrase(ctx, self.prompter)

    def precondition(self, ctx: InstallContext) -> bool:
        return True

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        ctx.require("LUKS_MAPPERS" if ctx.uses_luks else "LUKS_PARTITIONS", "ZFS_POOL_NAME", "ZFS_RAID_LEVEL")
        dry_run = ctx.dry_run
        pool = ctx.pool_name

        if zfs.pool_exists(pool, dry_run=dry_run):
            logger.warning("Pool %s already imported; destroying it", pool)
            zfs.destroy_pool(pool, dry_run=dry_run)

        zfs.create_pool(
            pool,
            ctx["ZFS_RAID_LEVEL"],
            ctx.pool_devices,
            altroot=ctx.target_root,
            ashift=ctx["ZFS_ASHIFT"],
            compression=ctx["ZFS_COMPRESSION"],
            recordsize=ctx["ZFS_RECORDSIZE"],
            passphrase=self._native_passphrase(ctx),
            dry_run=dry_run,
        )
        ledger.acquire(ResourceKind.POOL, pool, zfs.make_exporter(pool, dry_run=dry_run))

        root_ds = ctx["ZFS_ROOT_DATASET"]
        container = root_ds.rsplit("/", 1)[0] if "/" in root_ds else ""
        if container:
            zfs.create_dataset(f"{pool}/{container}", {"canmount": "off", "mountpoint": "none"}, dry_run=dry_run)
        zfs.create_dataset(f"{pool}/{root_ds}", {"canmount": "noauto", "mountpoint": "/"}, dry_run=dry_run)
        # canmount=noauto datasets are mounted explicitly under the altroot.
        zfs.mount_dataset(f"{pool}/{root_ds}", dry_run=dry_run)
        zfs.create_dataset(f"{pool}/data", {"mountpoint": ctx["ZFS_DATA_MOUNTPOINT"]}, dry_run=dry_run)
        zfs.set_bootfs(pool, f"{pool}/{root_ds}", dry_run=dry_run)
        return StageOutcome.success(f"pool {pool} created")
