from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .command import run_cmd

logger = logging.getLogger(__name__)

SYS_CLASS_NET = "/sys/class/net"
PROBE_HOST = "8.8.8.8"


def is_online(*, host: str = PROBE_HOST, dry_run: bool = False) -> bool:
    """Best-effort online check."""

    r = run_cmd(["ping", "-c", "1", "-W", "2", host], check=False, dry_run=dry_run)
    return r.ok


def interfaces(sys_class_net: str = SYS_CLASS_NET) -> List[str]:
    p = Path(sys_class_net)
    if not p.is_dir():
        return []
    return sorted(i.name for i in p.iterdir() if i.name != "lo")


def link_is_up(iface: str, sys_class_net: str = SYS_CLASS_NET) -> bool:
    state = Path(sys_class_net) / iface / "operstate"
    try:
        return state.read_text(encoding="utf-8").strip() in {"up", "unknown"}
    except OSError:
        return False


def ensure_connectivity(iface: Optional[str] = None, *, dry_run: bool = False) -> bool:
    """Bring up networking via DHCP if the live system is offline.

    Returns whether the probe host is reachable afterwards; callers decide
    whether that matters.
    """

    if is_online(dry_run=dry_run):
        return True
    candidates = [iface] if iface else interfaces()
    for name in candidates:
        logger.info("Requesting DHCP lease on %s", name)
        run_cmd(["ip", "link", "set", name, "up"], check=False, dry_run=dry_run)
        run_cmd(["dhclient", "-1", name], check=False, dry_run=dry_run)
        if is_online(dry_run=dry_run):
            return True
    logger.warning("No network connectivity")
    return False
