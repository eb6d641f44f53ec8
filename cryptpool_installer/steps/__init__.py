from ..lib.prompt import Prompter
from .step_10_partition_disks import PartitionDisksStep
from .step_20_setup_encryption import SetupEncryptionStep
from .step_30_create_pool import CreatePoolStep
from .step_40_install_base_system import InstallBaseSystemStep
from .step_50_configure_system import ConfigureSystemStep
from .step_60_install_bootloader import InstallBootloaderStep
from .step_70_install_clover import InstallCloverStep
from .step_80_configure_network import ConfigureNetworkStep
from .step_90_backup_luks_headers import BackupLuksHeadersStep


def build_stages(prompter: Prompter):
    return [
        PartitionDisksStep(prompter),
        SetupEncryptionStep(prompter),
        CreatePoolStep(prompter),
        InstallBaseSystemStep(),
        ConfigureSystemStep(prompter),
        InstallBootloaderStep(),
        InstallCloverStep(),
        ConfigureNetworkStep(),
        BackupLuksHeadersStep(),
    ]


__all__ = [
    "build_stages",
    "PartitionDisksStep",
    "SetupEncryptionStep",
    "CreatePoolStep",
    "InstallBaseSystemStep",
    "ConfigureSystemStep",
    "InstallBootloaderStep",
    "InstallCloverStep",
    "ConfigureNetworkStep",
    "BackupLuksHeadersStep",
]
