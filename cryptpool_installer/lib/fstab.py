from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class FstabEntry:
    spec: str
    mountpoint: str
    fstype: str
    options: str = "defaults"
    dump: int = 0
    passno: int = 0


@dataclass(frozen=True)
class CrypttabEntry:
    name: str
    source: str
    keyfile: str = "none"
    options: str = "luks,discard"


def render_fstab(entries: Iterable[FstabEntry]) -> str:
    lines = ["# /etc/fstab: generated by cryptpool-installer", "# root (/) is mounted by ZFS"]
    for e in entries:
        lines.append(f"{e.spec}\t{e.mountpoint}\t{e.fstype}\t{e.options}\t{e.dump}\t{e.passno}")
    return "\n".join(lines) + "\n"


def render_crypttab(entries: Iterable[CrypttabEntry]) -> str:
    lines = ["# <target name>\t<source device>\t<key file>\t<options>"]
    for e in entries:
        lines.append(f"{e.name}\t{e.source}\t{e.keyfile}\t{e.options}")
    return "\n".join(lines) + "\n"


def crypttab_options(*, header_part_uuid: Optional[str] = None, header_file: Optional[str] = None) -> str:
    opts = "luks,discard"
    if header_part_uuid and header_file:
        opts += f",header=UUID={header_part_uuid}:{header_file}"
    return opts


def render_interfaces(
    iface: str,
    *,
    dhcp: bool,
    address: str = "",
    gateway: str = "",
    bridge: str = "vmbr0",
) -> str:
    """/etc/network/interfaces; static mode puts the NIC behind a bridge."""

    head = "auto lo\niface lo inet loopback\n\n"
    if dhcp:
        return head + f"auto {iface}\niface {iface} inet dhcp\n"
    return head + (
        f"iface {iface} inet manual\n\n"
        f"auto {bridge}\n"
        f"iface {bridge} inet static\n"
        f"    address {address}\n"
        f"    gateway {gateway}\n"
        f"    bridge-ports {iface}\n"
        "    bridge-stp off\n"
        "    bridge-fd 0\n"
    )
