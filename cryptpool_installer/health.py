"""Health gate: named, read-only verifications run after each stage."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .context import InstallContext
from .errors import InstallCancelled
from .lib import bootloader, crypt, net, zfs
from .lib.block import is_block_device
from .lib.command import run_cmd

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


_RANK = {HealthStatus.PASS: 0, HealthStatus.WARN: 1, HealthStatus.FAIL: 2}


@dataclass(frozen=True)
class HealthResult:
    status: HealthStatus
    details: List[str] = field(default_factory=list)

    @classmethod
    def passed(cls, *details: str) -> "HealthResult":
        return cls(HealthStatus.PASS, list(details))

    @classmethod
    def warn(cls, *details: str) -> "HealthResult":
        return cls(HealthStatus.WARN, list(details))

    @classmethod
    def fail(cls, *details: str) -> "HealthResult":
        return cls(HealthStatus.FAIL, list(details))

    @classmethod
    def combine(cls, results: Iterable["HealthResult"]) -> "HealthResult":
        status = HealthStatus.PASS
        details: List[str] = []
        for r in results:
            if _RANK[r.status] > _RANK[status]:
                status = r.status
            details.extend(r.details)
        return cls(status, details)

    @property
    def ok(self) -> bool:
        return self.status is not HealthStatus.FAIL


HealthCheck = Callable[[InstallContext], HealthResult]


def _from_findings(failures: List[str], warnings: List[str]) -> HealthResult:
    if failures:
        return HealthResult.fail(*failures, *warnings)
    if warnings:
        return HealthResult.warn(*warnings)
    return HealthResult.passed()


def check_disks(ctx: InstallContext) -> HealthResult:
    dry_run = ctx.dry_run
    failures: List[str] = []
    warnings: List[str] = []
    disks = ctx.target_disks
    if not disks:
        return HealthResult.fail("no target disks configured")
    for disk in disks:
        if not dry_run and not is_block_device(disk):
            failures.append(f"{disk} is not a block device")
            continue
        argv = ["smartctl", "-H", disk]
        if "nvme" in disk:
            argv[1:1] = ["-d", "nvme"]
        r = run_cmd(argv, check=False, dry_run=dry_run)
        if r.returncode == 127:
            warnings.append("smartctl not available; SMART status unknown")
        elif dry_run:
            continue
        elif "PASSED" in r.stdout or "Health Status: OK" in r.stdout:
            logger.debug("SMART ok for %s", disk)
        else:
            warnings.append(f"SMART health for {disk} not reported as PASSED")
    return _from_findings(failures, sorted(set(warnings)))


def check_luks(ctx: InstallContext) -> HealthResult:
    dry_run = ctx.dry_run
    failures: List[str] = []
    if not ctx.uses_luks:
        return HealthResult.passed("LUKS not used with ZFS native encryption")
    mappers = ctx.luks_mappers
    if not mappers:
        return HealthResult.fail("no LUKS mappings recorded")
    if not ctx.detached_headers:
        for part in ctx.get_list("LUKS_PARTITIONS"):
            if not crypt.is_luks(part, dry_run=dry_run):
                failures.append(f"{part} has no LUKS header")
    for mapper in mappers:
        name = Path(mapper).name
        if not crypt.is_active(name, dry_run=dry_run):
            failures.append(f"mapping {name} is not active")
    return _from_findings(failures, [])


def check_zfs(ctx: InstallContext) -> HealthResult:
    pool = ctx.pool_name
    if ctx.dry_run:
        return HealthResult.passed()
    if not zfs.pool_exists(pool):
        return HealthResult.fail(f"pool {pool} is not imported")
    healthy, out = zfs.pool_healthy(pool)
    if not healthy:
        return HealthResult.fail(f"pool {pool} is not healthy: {out}")
    if not ctx.uses_luks and zfs.encryption_of(pool) in ("", "off"):
        return HealthResult.fail(f"pool {pool} is not natively encrypted")
    return HealthResult.passed()


BASE_DIRS = ("etc", "usr", "bin", "sbin", "lib", "var")


def _missing(root: Path, rel: Iterable[str]) -> List[str]:
    return [f"/{r} missing in target" for r in rel if not (root / r).exists()]


def check_base_system(ctx: InstallContext) -> HealthResult:
    if ctx.dry_run:
        return HealthResult.passed()
    return _from_findings(_missing(Path(ctx.target_root), BASE_DIRS), [])


def check_system(ctx: InstallContext) -> HealthResult:
    if ctx.dry_run:
        return HealthResult.passed()
    root = Path(ctx.target_root)
    failures = _missing(root, (*BASE_DIRS, "boot", "etc/fstab", "etc/crypttab", "etc/hostname"))
    if not bootloader.kernel_present(ctx.target_root):
        failures.append("no kernel (vmlinuz-*) in /boot")
    return _from_findings(failures, [])


def check_bootloader(ctx: InstallContext) -> HealthResult:
    if ctx.dry_run:
        return HealthResult.passed()
    root = Path(ctx.target_root)
    failures = _missing(root, ("boot/grub/grub.cfg",))
    if not bootloader.initrd_present(ctx.target_root):
        failures.append("no initramfs (initrd.img-*) in /boot")
    if ctx.get("GRUB_MODE", "").upper() == "UEFI":
        efi_dir = bootloader.grub_efi_dir(ctx.target_root, ctx.get("BOOTLOADER_ID") or "debian")
        if not efi_dir.is_dir():
            failures.append(f"EFI loader directory {efi_dir} missing")
    return _from_findings(failures, [])


def check_network(ctx: InstallContext) -> HealthResult:
    failures: List[str] = []
    warnings: List[str] = []
    if ctx.dry_run:
        return HealthResult.passed()
    iface = ctx.get("NET_IFACE", "")
    if iface:
        if iface not in net.interfaces():
            failures.append(f"interface {iface} not present")
        elif not net.link_is_up(iface):
            warnings.append(f"interface {iface} link is down")
    if not (Path(ctx.target_root) / "etc/network/interfaces").exists():
        failures.append("/etc/network/interfaces missing in target")
    if not net.is_online():
        warnings.append("internet not reachable")
    return _from_findings(failures, warnings)


class HealthGate:
    """Registry of named checks."""

    def __init__(self, checks: Optional[Dict[str, HealthCheck]] = None) -> None:
        self.checks: Dict[str, HealthCheck] = dict(checks) if checks is not None else {
            "disks": check_disks,
            "luks": check_luks,
            "zfs": check_zfs,
            "base_system": check_base_system,
            "system": check_system,
            "bootloader": check_bootloader,
            "network": check_network,
        }

    def _run(self, name: str, ctx: InstallContext) -> HealthResult:
        fn = self.checks.get(name)
        if fn is None:
            return HealthResult.fail(f"unknown health check: {name}")
        try:
            return fn(ctx)
        except InstallCancelled:
            raise
        except Exception as e:
            logger.exception("Health check %s raised", name)
            return HealthResult.fail(f"{name}: {e}")

    def check(self, name: str, ctx: InstallContext) -> HealthResult:
        if name == "all" and "all" not in self.checks:
            names = [n for n in self.checks if n != "luks" or (ctx.uses_luks and ctx.luks_mappers)]
            result = HealthResult.combine(self._run(n, ctx) for n in names)
        else:
            result = self._run(name, ctx)
        log = logger.info if result.status is HealthStatus.PASS else logger.warning
        log("Health check %s: %s %s", name, result.status.value.upper(), "; ".join(result.details))
        return result
