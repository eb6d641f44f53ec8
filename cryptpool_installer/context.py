"""Installation context: the named settings every stage reads and writes.

Values are always strings, as they are when read from the configuration file
or handed across the environment pivot.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterator, List, Mapping, MutableMapping, Optional

from .errors import ConfigError
from .lib.env import PATHS
from .state_store import load_mapping, save_mapping

_TRUE = {"yes", "y", "true", "1", "on"}
_LIST_SPLIT = re.compile(r"[\s,]+")

DEFAULTS: Dict[str, str] = {
    "ZFS_POOL_NAME": "rpool",
    "ZFS_RAID_LEVEL": "",
    "ZFS_ASHIFT": "12",
    "ZFS_RECORDSIZE": "128K",
    "ZFS_COMPRESSION": "lz4",
    "ZFS_ROOT_DATASET": "ROOT/debian",
    "ZFS_DATA_MOUNTPOINT": "/var/lib/data",
    "ENCRYPTION_MODE": "luks",
    "LUKS_MAPPER_NAME": "luks",
    "USE_DETACHED_HEADERS": "no",
    "HOSTNAME": "cryptpool",
    "NET_USE_DHCP": "yes",
    "NET_IFACE": "",
    "NET_DNS": "1.1.1.1",
    "BOOTLOADER_ID": "debian",
    "GRUB_MODE": "",
    "USE_CLOVER": "no",
    "DEBIAN_RELEASE": "trixie",
    "DEBIAN_MIRROR": "http://deb.debian.org/debian",
    "EXTRA_PACKAGES": "",
    "PROXMOX_VE": "no",
    "PROXMOX_SUITE": "",
    "LOCAL_DEBS_DIR": "",
    "RAMDISK_MNT": PATHS.ramdisk_mnt,
    "RAMDISK_SIZE": PATHS.ramdisk_size,
    "TARGET_ROOT": PATHS.target_root,
    "UI_MODE": "console",
    "ASSUME_YES": "yes",
    "DRY_RUN": "no",
}

# Never written to a saved configuration file.
SECRET_KEYS = frozenset({"LUKS_PASSPHRASE", "ZFS_PASSPHRASE", "ROOT_PASSWORD"})

# luks: every pool member is a LUKS2 mapping. zfs-native: the pool sits on
# the raw partitions and ZFS encrypts the datasets itself.
ENCRYPTION_MODES = ("luks", "zfs-native")


class InstallContext(MutableMapping[str, str]):
    """String-to-string mapping passed by reference to every stage."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None) -> None:
        self._values: Dict[str, str] = {}
        for k, v in (values or {}).items():
            self[k] = v

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if isinstance(value, (list, tuple)):
            value = " ".join(str(v) for v in value)
        elif isinstance(value, bool):
            value = "yes" if value else "no"
        elif value is None:
            value = ""
        self._values[str(key)] = str(value)

    def __delitem__(self, key: str) -> None:
        del self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        shown = {k: ("***" if k in SECRET_KEYS else v) for k, v in self._values.items()}
        return f"InstallContext({shown!r})"

    def get_list(self, key: str) -> List[str]:
        raw = self.get(key, "").strip()
        return [v for v in _LIST_SPLIT.split(raw) if v] if raw else []

    def get_bool(self, key: str, default: bool = False) -> bool:
        raw = self.get(key, "").strip().lower()
        if not raw:
            return default
        return raw in _TRUE

    def require(self, *keys: str) -> None:
        missing = [k for k in keys if not self.get(k, "").strip()]
        if missing:
            raise ConfigError(f"Missing required setting(s): {', '.join(missing)}")

    @property
    def dry_run(self) -> bool:
        return self.get_bool("DRY_RUN")

    @property
    def target_root(self) -> str:
        return self.get("TARGET_ROOT") or PATHS.target_root

    @property
    def temp_dir(self) -> str:
        return self.get("TEMP_DIR", "")

    @property
    def pool_name(self) -> str:
        return self.get("ZFS_POOL_NAME") or DEFAULTS["ZFS_POOL_NAME"]

    @property
    def target_disks(self) -> List[str]:
        return self.get_list("TARGET_DISKS")

    @property
    def luks_mappers(self) -> List[str]:
        return self.get_list("LUKS_MAPPERS")

    @property
    def encryption_mode(self) -> str:
        return (self.get("ENCRYPTION_MODE") or DEFAULTS["ENCRYPTION_MODE"]).strip().lower()

    @property
    def uses_luks(self) -> bool:
        return self.encryption_mode == "luks"

    @property
    def passphrase_key(self) -> str:
        return "LUKS_PASSPHRASE" if self.uses_luks else "ZFS_PASSPHRASE"

    @property
    def detached_headers(self) -> bool:
        return self.uses_luks and self.get_bool("USE_DETACHED_HEADERS")

    @property
    def pool_devices(self) -> List[str]:
        """Block devices the pool is built on."""

        return self.luks_mappers if self.uses_luks else self.get_list("LUKS_PARTITIONS")

    def to_dict(self, *, include_secrets: bool = True) -> Dict[str, str]:
        if include_secrets:
            return dict(self._values)
        return {k: v for k, v in self._values.items() if k not in SECRET_KEYS}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InstallContext":
        return cls(data)

    def save(self, path: str, *, mode: Optional[int] = None) -> None:
        save_mapping(path, self.to_dict(), mode=mode)

    @classmethod
    def load(cls, path: str) -> "InstallContext":
        return cls(load_mapping(path))


def ensure_defaults(ctx: InstallContext) -> InstallContext:
    """Fill missing keys with defaults (without overriding user values)."""

    for key, value in DEFAULTS.items():
        if not ctx.get(key, "").strip():
            ctx[key] = value
    if not ctx["ZFS_RAID_LEVEL"]:
        n = len(ctx.target_disks)
        ctx["ZFS_RAID_LEVEL"] = "mirror" if n == 2 else "raidz1" if n >= 3 else "single"
    return ctx
