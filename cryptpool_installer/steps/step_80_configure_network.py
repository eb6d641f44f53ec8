from __future__ import annotations

import logging
from pathlib import Path

from ..context import InstallContext
from ..ledger import ResourceLedger
from ..lib import net
from ..lib.fstab import render_interfaces
from ..pipeline import Criticality, StageOutcome

logger = logging.getLogger(__name__)


class ConfigureNetworkStep:
    name = "configure_network"
    criticality = Criticality.RECOVERABLE
    health_check = "network"

    def precondition(self, ctx: InstallContext) -> bool:
        return True

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        dry_run = ctx.dry_run
        iface = ctx.get("NET_IFACE", "")
        if not iface:
            found = net.interfaces()
            if not found:
                return StageOutcome.failure("no network interface found")
            iface = found[0]
            ctx["NET_IFACE"] = iface

        dhcp = ctx.get_bool("NET_USE_DHCP", default=True)
        if not dhcp:
            ctx.require("NET_IP_CIDR", "NET_GATEWAY")
        contents = render_interfaces(
            iface,
            dhcp=dhcp,
            address=ctx.get("NET_IP_CIDR", ""),
            gateway=ctx.get("NET_GATEWAY", ""),
        )
        resolv = "".join(f"nameserver {ns}\n" for ns in ctx.get_list("NET_DNS"))

        root = Path(ctx.target_root)
        if dry_run:
            logger.info("Would write network configuration for %s", iface)
        else:
            (root / "etc/network").mkdir(parents=True, exist_ok=True)
            (root / "etc/network/interfaces").write_text(contents, encoding="utf-8")
            if resolv:
                (root / "etc/resolv.conf").write_text(resolv, encoding="utf-8")

        logger.info("Network configured on %s (%s)", iface, "dhcp" if dhcp else "static bridge")
        return StageOutcome.success()
