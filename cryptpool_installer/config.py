"""Installer configuration files.

Three formats, chosen by extension:

- ``.yaml`` / ``.yml``: a flat mapping (lists are joined with spaces)
- ``.json``: the same, as JSON
- anything else: shell-style ``KEY='value'`` lines, one per setting
"""

from __future__ import annotations

import logging
import re
import shlex
from pathlib import Path
from typing import Any, Dict, Optional

from .context import InstallContext
from .errors import ConfigError
from .lib.prompt import Prompter, encryption_passphrase
from .state_store import load_mapping, save_mapping

logger = logging.getLogger(__name__)

_KEY = re.compile(r"^[A-Z_][A-Z0-9_]*$")


def _format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"yaml", "yml", "json"}:
        return "mapping"
    return "shell"


def parse_shell_config(text: str, *, source: str = "<config>") -> Dict[str, str]:
    values: Dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, rest = line.partition("=")
        key = key.strip()
        if not sep or not _KEY.match(key):
            raise ConfigError(f"{source}:{lineno}: expected KEY='value', got {raw!r}")
        try:
            tokens = shlex.split(rest, comments=True)
        except ValueError as e:
            raise ConfigError(f"{source}:{lineno}: {e}") from e
        values[key] = " ".join(tokens)
    return values


def load_config(path: str) -> InstallContext:
    p = Path(path)
    if not p.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        if _format(p) == "mapping":
            data: Dict[str, Any] = load_mapping(path)
        else:
            data = parse_shell_config(p.read_text(encoding="utf-8"), source=path)
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    for key, value in data.items():
        if isinstance(value, dict):
            raise ConfigError(f"{path}: {key} must be a scalar or a list")

    ctx = InstallContext({str(k).upper(): v for k, v in data.items()})
    logger.info("Loaded %d setting(s) from %s", len(ctx), path)
    return ctx


def save_config(path: str, ctx: InstallContext) -> None:
    """Write the reusable part of the context (secrets are left out)."""

    values = ctx.to_dict(include_secrets=False)
    p = Path(path)
    if _format(p) == "mapping":
        save_mapping(path, values)
    else:
        p.parent.mkdir(parents=True, exist_ok=True)
        lines = ["# cryptpool-installer configuration"]
        lines += [f"{k}={shlex.quote(v)}" for k, v in sorted(values.items())]
        p.write_text("\n".join(lines) + "\n", encoding="utf-8")
    logger.info("Saved configuration to %s", path)


def gather_options(ctx: InstallContext, prompter: Prompter, *, installer_device: Optional[str] = None) -> InstallContext:
    """Ask the operator for every setting an install cannot do without."""

    if not ctx.target_disks:
        note = f" (installer runs from {installer_device})" if installer_device else ""
        ctx["TARGET_DISKS"] = prompter.ask(f"Target disks, space separated{note}", key="TARGET_DISKS")
    ctx["HOSTNAME"] = prompter.ask("Hostname", key="HOSTNAME", default=ctx.get("HOSTNAME", "cryptpool"))
    n = len(ctx.target_disks)
    if n > 1 and not ctx.get("ZFS_RAID_LEVEL"):
        ctx["ZFS_RAID_LEVEL"] = prompter.ask(
            "ZFS layout (stripe, mirror, raidz1, raidz2)",
            key="ZFS_RAID_LEVEL",
            default="mirror" if n == 2 else "raidz1",
        )

    if not ctx.get_bool("NET_USE_DHCP", default=True) or not prompter.confirm("Use DHCP for the installed system?", default=True):
        ctx["NET_USE_DHCP"] = "no"
        ctx["NET_IFACE"] = prompter.ask("Network interface", key="NET_IFACE", default=ctx.get("NET_IFACE", ""))
        ctx["NET_IP_CIDR"] = prompter.ask("Address (CIDR, e.g. 192.168.1.10/24)", key="NET_IP_CIDR", default=ctx.get("NET_IP_CIDR", ""))
        ctx["NET_GATEWAY"] = prompter.ask("Gateway", key="NET_GATEWAY", default=ctx.get("NET_GATEWAY", ""))

    ctx["ENCRYPTION_MODE"] = prompter.ask(
        "Encryption (luks, zfs-native)", key="ENCRYPTION_MODE", default=ctx.encryption_mode
    )
    encryption_passphrase(ctx, prompter)
    ctx["PROXMOX_VE"] = prompter.ask("Install Proxmox VE (yes, no)", key="PROXMOX_VE", default=ctx.get("PROXMOX_VE") or "no")
    if not ctx.get("ROOT_PASSWORD"):
        ctx["ROOT_PASSWORD"] = prompter.password("Root password for the new system", key="ROOT_PASSWORD")
    return ctx
