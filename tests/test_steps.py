import logging

import pytest

from conftest import RecordingPrompter
from cryptpool_installer.context import InstallContext, ensure_defaults
from cryptpool_installer.errors import EXIT_OK, InstallCancelled, PreconditionError
from cryptpool_installer.ledger import ResourceKind, ResourceLedger
from cryptpool_installer.orchestrator import Orchestrator, RunOptions, RunStatus
from cryptpool_installer.steps import step_50_configure_system as configure_system
from cryptpool_installer.steps import (
    BackupLuksHeadersStep,
    ConfigureSystemStep,
    CreatePoolStep,
    InstallCloverStep,
    PartitionDisksStep,
    SetupEncryptionStep,
    build_stages,
)


@pytest.fixture
def dry_ctx(tmp_path):
    return ensure_defaults(InstallContext({
        'DRY_RUN': 'yes',
        'TARGET_DISKS': '/dev/sdx /dev/nvme0n1',
        'INSTALLER_DEVICE': '/dev/sdz',
        'HOSTNAME': 'pve',
        'LUKS_PASSPHRASE': 'hunter2',
        'TEMP_DIR': str(tmp_path),
    }))


def test_partition_registers_disks(dry_ctx):
    ledger = ResourceLedger()
    outcome = PartitionDisksStep(RecordingPrompter()).run(dry_ctx, ledger)

    assert outcome.ok
    assert [(h.kind, h.identifier) for h in ledger.handles] == [
        (ResourceKind.BLOCK_DEVICE, '/dev/sdx'),
        (ResourceKind.BLOCK_DEVICE, '/dev/nvme0n1'),
    ]
    assert dry_ctx['EFI_PART'] == '/dev/sdx1'
    assert dry_ctx['BOOT_PART'] == '/dev/sdx2'
    assert dry_ctx.get_list('LUKS_PARTITIONS') == ['/dev/sdx3', '/dev/nvme0n1p1']


def test_partition_refuses_installer_device(dry_ctx):
    dry_ctx['INSTALLER_DEVICE'] = '/dev/sdx'
    ledger = ResourceLedger()
    with pytest.raises(PreconditionError):
        PartitionDisksStep(RecordingPrompter()).run(dry_ctx, ledger)
    assert ledger.handles == []


def test_partition_declined_wipe_cancels(dry_ctx):
    ledger = ResourceLedger()
    with pytest.raises(InstallCancelled):
        PartitionDisksStep(RecordingPrompter(answer=False)).run(dry_ctx, ledger)
    assert ledger.handles == []


def test_encryption_registers_mappings(dry_ctx):
    dry_ctx['LUKS_PARTITIONS'] = '/dev/sdx3 /dev/nvme0n1p1'
    ledger = ResourceLedger()

    outcome = SetupEncryptionStep(RecordingPrompter()).run(dry_ctx, ledger)

    assert outcome.ok
    assert [h.identifier for h in ledger.handles] == ['luks_0', 'luks_1']
    assert dry_ctx.luks_mappers == ['/dev/mapper/luks_0', '/dev/mapper/luks_1']


def test_detached_headers_release_header_mount_early(dry_ctx):
    dry_ctx['LUKS_PARTITIONS'] = '/dev/sdx3'
    dry_ctx['USE_DETACHED_HEADERS'] = 'yes'
    dry_ctx['HEADER_PART'] = '/dev/sdw1'
    ledger = ResourceLedger()

    SetupEncryptionStep(RecordingPrompter()).run(dry_ctx, ledger)

    kinds = [(h.kind, h.released) for h in ledger.handles]
    assert kinds == [(ResourceKind.MOUNT_POINT, True), (ResourceKind.MAPPING, False)]
    assert dry_ctx.get_list('HEADER_FILENAMES') == ['header_pve_disk0.img']


def test_create_pool_registers_pool(dry_ctx):
    dry_ctx['LUKS_MAPPERS'] = '/dev/mapper/luks_0 /dev/mapper/luks_1'
    ledger = ResourceLedger()
    assert CreatePoolStep().run(dry_ctx, ledger).ok
    assert [(h.kind, h.identifier) for h in ledger.handles] == [(ResourceKind.POOL, 'rpool')]


def test_optional_stage_preconditions(dry_ctx):
    assert not InstallCloverStep().precondition(dry_ctx)
    assert not BackupLuksHeadersStep().precondition(dry_ctx)
    dry_ctx['USE_CLOVER'] = 'yes'
    dry_ctx['HEADER_BACKUP_DEVICE'] = '/dev/sdu1'
    assert InstallCloverStep().precondition(dry_ctx)
    assert BackupLuksHeadersStep().precondition(dry_ctx)


def test_stage_order():
    names = [s.name for s in build_stages(RecordingPrompter())]
    assert names == [
        'partition_disks',
        'setup_encryption',
        'create_pool',
        'install_base_system',
        'configure_system',
        'install_bootloader',
        'install_clover',
        'configure_network',
        'backup_luks_headers',
    ]


def test_dry_run_install_end_to_end(config_file, tmp_path, caplog):
    caplog.set_level(logging.INFO, logger='cryptpool_installer.ledger')
    options = RunOptions(config_path=str(config_file), dry_run=True, log_path=str(tmp_path / 'install.log'))
    orch = Orchestrator(options)

    result = orch.run()

    assert result.exit_code == EXIT_OK
    assert result.status in (RunStatus.DONE, RunStatus.DONE_WITH_WARNINGS)
    assert orch.ledger.pending() == []
    released = [r.getMessage() for r in caplog.records if r.getMessage().startswith('Released')]
    final = released[-7:]
    assert final == [
        'Released mount_point:/mnt/boot/efi',
        'Released mount_point:/mnt/boot',
        'Released pool:rpool',
        'Released mapping:luks_1',
        'Released mapping:luks_0',
        'Released block_device:/dev/sdy',
        'Released block_device:/dev/sdx',
    ]


@pytest.fixture
def native_ctx(dry_ctx):
    dry_ctx['ENCRYPTION_MODE'] = 'zfs-native'
    dry_ctx['ZFS_PASSPHRASE'] = 'correct horse'
    dry_ctx['LUKS_PARTITIONS'] = '/dev/sdx3 /dev/nvme0n1p1'
    return dry_ctx


def test_native_encryption_builds_encrypted_pool_on_partitions(native_ctx, caplog):
    caplog.set_level(logging.INFO, logger='cryptpool_installer.lib.command')
    ledger = ResourceLedger()

    assert not SetupEncryptionStep(RecordingPrompter()).precondition(native_ctx)
    assert CreatePoolStep(RecordingPrompter()).run(native_ctx, ledger).ok

    create = next(r.getMessage() for r in caplog.records if r.getMessage().startswith('CMD zpool create'))
    assert 'encryption=aes-256-gcm' in create
    assert 'keyformat=passphrase' in create
    assert create.endswith('mirror /dev/sdx3 /dev/nvme0n1p1')
    assert 'correct horse' not in caplog.text
    assert [(h.kind, h.identifier) for h in ledger.handles] == [(ResourceKind.POOL, 'rpool')]


def test_native_encryption_drops_luks_only_work(native_ctx):
    native_ctx['USE_DETACHED_HEADERS'] = 'yes'
    native_ctx['HEADER_BACKUP_DEVICE'] = '/dev/sdu1'

    assert not native_ctx.detached_headers
    assert not BackupLuksHeadersStep().precondition(native_ctx)
    assert configure_system.build_crypttab(native_ctx).count('\n') == 1
    assert not any(p.startswith('cryptsetup') for p in configure_system.package_list(native_ctx))


def test_proxmox_packages_replace_ifupdown(dry_ctx):
    dry_ctx['PROXMOX_VE'] = 'yes'
    packages = configure_system.package_list(dry_ctx)
    assert 'proxmox-ve' in packages
    assert 'ifupdown2' in packages
    assert 'ifupdown' not in packages
    assert 'cryptsetup-initramfs' in packages


def test_configure_system_adds_proxmox_repo(dry_ctx, monkeypatch):
    dry_ctx.update({
        'PROXMOX_VE': 'yes',
        'BOOT_PART': '/dev/sdx2',
        'EFI_PART': '/dev/sdx1',
        'LUKS_PARTITIONS': '/dev/sdx3',
        'ROOT_PASSWORD': 'toor',
    })
    calls = []
    monkeypatch.setattr(configure_system, 'write_proxmox_repo', lambda root, suite, dry_run: calls.append(('repo', suite)))
    monkeypatch.setattr(configure_system, 'remove_enterprise_repo', lambda root, dry_run: calls.append(('enterprise', root)))

    assert ConfigureSystemStep(RecordingPrompter()).run(dry_ctx, ResourceLedger()).ok
    assert calls == [('repo', 'trixie'), ('enterprise', dry_ctx.target_root)]


def test_dry_run_native_install_end_to_end(config_file, tmp_path, caplog):
    caplog.set_level(logging.INFO, logger='cryptpool_installer.ledger')
    with config_file.open('a', encoding='utf-8') as f:
        f.write("ENCRYPTION_MODE='zfs-native'\nZFS_PASSPHRASE='correct horse'\n")
    options = RunOptions(config_path=str(config_file), dry_run=True, log_path=str(tmp_path / 'install.log'))
    orch = Orchestrator(options)

    result = orch.run()

    assert result.exit_code == EXIT_OK
    released = [r.getMessage() for r in caplog.records if r.getMessage().startswith('Released')]
    assert not any('mapping:' in m for m in released)
    assert released[-3:] == [
        'Released pool:rpool',
        'Released block_device:/dev/sdy',
        'Released block_device:/dev/sdx',
    ]
