from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Paths:
    target_root: str = "/mnt"
    ramdisk_mnt: str = "/mnt/ramdisk"
    ramdisk_size: str = "5G"
    # Inside the ramdisk root.
    installer_dir: str = "/root/installer"
    ramdisk_marker: str = ".cryptpool-installer-ramdisk"
    log_default: str = "/var/log/cryptpool-installer.log"
    validation_report: str = "cryptpool-validation-report.txt"


PATHS = Paths()
