"""Validation-only mode.

Checks the configuration and the machine without touching any disk, and
writes a text report. Never acquires resources.
"""

from __future__ import annotations

import datetime as _dt
import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .context import ENCRYPTION_MODES, InstallContext
from .health import HealthStatus
from .lib import crypt, pkg, zfs
from .lib.block import detect_installer_device, device_size_bytes, disk_in_use, is_block_device
from .lib.bootloader import detect_grub_mode
from .lib.env import PATHS
from .preflight import missing_commands, package_hint, required_commands

logger = logging.getLogger(__name__)

MIN_RAM_MB = 4096
MIN_DISK_GB = 8
PROC_MEMINFO = "/proc/meminfo"
PROC_CPUINFO = "/proc/cpuinfo"


@dataclass
class ValidationItem:
    section: str
    status: HealthStatus
    message: str


@dataclass
class ValidationReport:
    items: List[ValidationItem] = field(default_factory=list)

    def add(self, section: str, status: HealthStatus, message: str) -> None:
        self.items.append(ValidationItem(section, status, message))
        log = {HealthStatus.PASS: logger.info, HealthStatus.WARN: logger.warning}.get(status, logger.error)
        log("[%s] %s: %s", section, status.value.upper(), message)

    def ok(self, section: str, message: str) -> None:
        self.add(section, HealthStatus.PASS, message)

    def warn(self, section: str, message: str) -> None:
        self.add(section, HealthStatus.WARN, message)

    def fail(self, section: str, message: str) -> None:
        self.add(section, HealthStatus.FAIL, message)

    @property
    def passed(self) -> bool:
        return all(i.status is not HealthStatus.FAIL for i in self.items)

    @property
    def warnings(self) -> List[str]:
        return [f"{i.section}: {i.message}" for i in self.items if i.status is HealthStatus.WARN]

    def render(self) -> str:
        lines = [
            "cryptpool-installer validation report",
            f"Generated: {_dt.datetime.now().isoformat(timespec='seconds')}",
            f"Result: {'PASSED' if self.passed else 'FAILED'}",
            "",
        ]
        section = None
        for item in self.items:
            if item.section != section:
                section = item.section
                lines.append(f"== {section} ==")
            lines.append(f"  [{item.status.value.upper():4}] {item.message}")
        return "\n".join(lines) + "\n"


def _meminfo_mb(path: str = PROC_MEMINFO) -> Optional[int]:
    try:
        for line in Path(path).read_text(encoding="utf-8").splitlines():
            if line.startswith("MemTotal:"):
                return int(line.split()[1]) // 1024
    except (OSError, ValueError, IndexError):
        return None
    return None


def _has_virtualization(path: str = PROC_CPUINFO) -> bool:
    try:
        flags = Path(path).read_text(encoding="utf-8")
    except OSError:
        return False
    return " vmx" in flags or " svm" in flags


def validate_system(ctx: InstallContext, report: ValidationReport) -> None:
    section = "system"
    mem = _meminfo_mb()
    if mem is None:
        report.warn(section, "cannot read total memory")
    elif mem < MIN_RAM_MB:
        report.fail(section, f"{mem} MB RAM, at least {MIN_RAM_MB} MB required")
    else:
        report.ok(section, f"{mem} MB RAM")

    if _has_virtualization():
        report.ok(section, "CPU virtualization extensions present")
    else:
        report.warn(section, "CPU virtualization extensions (vmx/svm) not detected")

    missing = missing_commands(required_commands(ctx, pivot=True))
    if missing:
        report.fail(section, f"missing commands: {', '.join(missing)} (try: {package_hint(missing)})")
    else:
        report.ok(section, "all required commands available")

    if ctx.get_bool("PROXMOX_VE"):
        suite = ctx.get("PROXMOX_SUITE") or ctx.get("DEBIAN_RELEASE", "")
        if suite in pkg.PROXMOX_KEYS:
            report.ok(section, f"Proxmox VE from the {suite} pve-no-subscription repository")
        else:
            report.fail(section, f"no Proxmox VE repository for {suite!r}")


def validate_disks(ctx: InstallContext, report: ValidationReport) -> None:
    section = "disks"
    disks = ctx.target_disks
    if not disks:
        report.fail(section, "TARGET_DISKS is empty")
        return
    if len(set(disks)) != len(disks):
        report.fail(section, "TARGET_DISKS lists a disk twice")
    installer = ctx.get("INSTALLER_DEVICE") or detect_installer_device()
    for disk in disks:
        if not is_block_device(disk):
            report.fail(section, f"{disk} does not exist or is not a block device")
            continue
        if installer and disk == installer:
            report.fail(section, f"{disk} holds the running installer")
        size_gb = device_size_bytes(disk) // (1024 ** 3)
        if size_gb < MIN_DISK_GB:
            report.fail(section, f"{disk} is {size_gb} GB, at least {MIN_DISK_GB} GB required")
        else:
            report.ok(section, f"{disk}: {size_gb} GB")
        if disk_in_use(disk):
            report.fail(section, f"{disk} is mounted")


def validate_zfs(ctx: InstallContext, report: ValidationReport) -> None:
    section = "zfs"
    pool = ctx.get("ZFS_POOL_NAME", "")
    if not pool or not pool[0].isalpha():
        report.fail(section, f"invalid pool name {pool!r}")
    level = ctx.get("ZFS_RAID_LEVEL", "")
    try:
        zfs.vdev_spec(level, ctx.target_disks)
    except ValueError as e:
        report.fail(section, str(e))
    else:
        report.ok(section, f"{level} over {len(ctx.target_disks)} disk(s)")


def validate_network(ctx: InstallContext, report: ValidationReport) -> None:
    section = "network"
    if ctx.get_bool("NET_USE_DHCP", default=True):
        report.ok(section, "DHCP")
        return
    if not ctx.get("NET_IFACE"):
        report.fail(section, "NET_IFACE is required for a static address")
    try:
        iface = ipaddress.ip_interface(ctx.get("NET_IP_CIDR", ""))
        if "/" not in ctx.get("NET_IP_CIDR", ""):
            raise ValueError("prefix length missing")
    except ValueError as e:
        report.fail(section, f"invalid NET_IP_CIDR {ctx.get('NET_IP_CIDR', '')!r}: {e}")
        return
    try:
        gw = ipaddress.ip_address(ctx.get("NET_GATEWAY", ""))
    except ValueError:
        report.fail(section, f"invalid NET_GATEWAY {ctx.get('NET_GATEWAY', '')!r}")
        return
    if gw not in iface.network:
        report.warn(section, f"gateway {gw} is outside {iface.network}")
    else:
        report.ok(section, f"static {iface} via {gw}")


def validate_luks(ctx: InstallContext, report: ValidationReport) -> None:
    section = "encryption"
    mode = ctx.encryption_mode
    if mode not in ENCRYPTION_MODES:
        report.fail(section, f"ENCRYPTION_MODE must be one of {', '.join(ENCRYPTION_MODES)}, got {mode!r}")
        return

    if not ctx.uses_luks:
        report.ok(section, "ZFS native encryption (aes-256-gcm)")
        passphrase = ctx.get("ZFS_PASSPHRASE", "")
        if passphrase and len(passphrase) < zfs.MIN_PASSPHRASE_LEN:
            report.fail(section, f"ZFS_PASSPHRASE must be at least {zfs.MIN_PASSPHRASE_LEN} characters")
        if ctx.get_bool("USE_DETACHED_HEADERS"):
            report.warn(section, "USE_DETACHED_HEADERS is ignored with ZFS native encryption")
        return

    version = crypt.cryptsetup_version()
    if version is None:
        report.fail(section, "cryptsetup not available")
    elif version < (2, 0):
        report.fail(section, f"cryptsetup {version[0]}.{version[1]} lacks LUKS2 support")
    else:
        report.ok(section, f"cryptsetup {version[0]}.{version[1]}")

    if ctx.get_bool("USE_DETACHED_HEADERS"):
        header_disk = ctx.get("HEADER_DISK", "")
        if not header_disk:
            report.fail(section, "HEADER_DISK is required for detached headers")
        elif header_disk in ctx.target_disks:
            report.fail(section, "HEADER_DISK must not be one of TARGET_DISKS")
        elif not is_block_device(header_disk):
            report.fail(section, f"{header_disk} is not a block device")
        else:
            report.ok(section, f"detached headers on {header_disk}")


def validate_boot(ctx: InstallContext, report: ValidationReport) -> None:
    section = "boot"
    mode = (ctx.get("GRUB_MODE") or detect_grub_mode()).upper()
    if mode == "UEFI":
        report.ok(section, "UEFI firmware")
    else:
        report.warn(section, "booted in BIOS mode; GRUB will be installed for BIOS")
    if ctx.get_bool("USE_CLOVER"):
        disk = ctx.get("CLOVER_DISK", "")
        if not disk or not is_block_device(disk):
            report.fail(section, f"CLOVER_DISK {disk!r} is not a block device")
        elif disk in ctx.target_disks:
            report.fail(section, "CLOVER_DISK must not be one of TARGET_DISKS")
        archive = ctx.get("CLOVER_ARCHIVE", "")
        if not archive or not os.path.isfile(archive):
            report.fail(section, f"CLOVER_ARCHIVE {archive!r} not found")


VALIDATORS = (validate_system, validate_disks, validate_zfs, validate_network, validate_luks, validate_boot)


def run_validation(ctx: InstallContext, *, report_path: Optional[str] = None) -> ValidationReport:
    report = ValidationReport()
    for validator in VALIDATORS:
        try:
            validator(ctx, report)
        except Exception as e:
            logger.exception("Validator %s raised", validator.__name__)
            report.fail(validator.__name__.replace("validate_", ""), str(e))

    path = Path(report_path or PATHS.validation_report)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(report.render(), encoding="utf-8")
        logger.info("Validation report written to %s", path)
    except OSError as e:
        logger.warning("Cannot write validation report %s: %s", path, e)
    return report
