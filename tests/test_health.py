import pytest

from cryptpool_installer import health
from cryptpool_installer.context import InstallContext
from cryptpool_installer.errors import InstallCancelled
from cryptpool_installer.health import HealthGate, HealthResult, HealthStatus


@pytest.mark.parametrize(
    'statuses, expected',
    [
        ([HealthStatus.PASS, HealthStatus.PASS], HealthStatus.PASS),
        ([HealthStatus.PASS, HealthStatus.WARN], HealthStatus.WARN),
        ([HealthStatus.WARN, HealthStatus.FAIL, HealthStatus.PASS], HealthStatus.FAIL),
        ([], HealthStatus.PASS),
    ],
)
def test_combine_takes_worst(statuses, expected):
    results = [HealthResult(s, [s.value]) for s in statuses]
    assert HealthResult.combine(results).status is expected


def test_unknown_check_fails():
    result = HealthGate({}).check('nonexistent', InstallContext())
    assert result.status is HealthStatus.FAIL
    assert 'unknown' in result.details[0]


def test_raising_check_becomes_fail():
    def broken(ctx):
        raise OSError('no such device')

    result = HealthGate({'disks': broken}).check('disks', InstallContext())
    assert result.status is HealthStatus.FAIL
    assert 'no such device' in result.details[0]


def test_cancellation_escapes_check():
    def interrupted(ctx):
        raise InstallCancelled('received signal 15', signum=15)

    with pytest.raises(InstallCancelled):
        HealthGate({'network': interrupted}).check('network', InstallContext())


def test_all_combines_registered_checks():
    gate = HealthGate({
        'a': lambda ctx: HealthResult.passed(),
        'b': lambda ctx: HealthResult.warn('slow link'),
    })
    result = gate.check('all', InstallContext())
    assert result.status is HealthStatus.WARN
    assert result.details == ['slow link']


def test_base_system_check(tmp_path):
    ctx = InstallContext({'TARGET_ROOT': str(tmp_path)})
    assert health.check_base_system(ctx).status is HealthStatus.FAIL

    for d in health.BASE_DIRS:
        (tmp_path / d).mkdir()
    assert health.check_base_system(ctx).status is HealthStatus.PASS


def test_system_check_needs_kernel(tmp_path):
    for rel in (*health.BASE_DIRS, 'boot'):
        (tmp_path / rel).mkdir()
    for rel in ('etc/fstab', 'etc/crypttab', 'etc/hostname'):
        (tmp_path / rel).write_text('x\n')
    ctx = InstallContext({'TARGET_ROOT': str(tmp_path)})

    result = health.check_system(ctx)
    assert result.status is HealthStatus.FAIL
    assert any('vmlinuz' in d for d in result.details)

    (tmp_path / 'boot/vmlinuz-6.12.0-amd64').write_text('')
    assert health.check_system(ctx).status is HealthStatus.PASS


def test_network_offline_is_only_a_warning(tmp_path, monkeypatch):
    (tmp_path / 'etc/network').mkdir(parents=True)
    (tmp_path / 'etc/network/interfaces').write_text('auto lo\n')
    monkeypatch.setattr(health.net, 'interfaces', lambda: ['eno1'])
    monkeypatch.setattr(health.net, 'link_is_up', lambda iface: True)
    monkeypatch.setattr(health.net, 'is_online', lambda: False)
    ctx = InstallContext({'TARGET_ROOT': str(tmp_path), 'NET_IFACE': 'eno1'})

    result = health.check_network(ctx)

    assert result.status is HealthStatus.WARN
    assert result.details == ['internet not reachable']


def test_luks_check_requires_mappers():
    assert health.check_luks(InstallContext()).status is HealthStatus.FAIL


def test_zfs_check_passes_in_dry_run():
    ctx = InstallContext({'DRY_RUN': 'yes', 'ZFS_POOL_NAME': 'rpool'})
    assert health.check_zfs(ctx).status is HealthStatus.PASS


def test_native_encryption_leaves_luks_out_of_all():
    def luks(ctx):
        raise AssertionError('luks check must not run')

    ctx = InstallContext({'ENCRYPTION_MODE': 'zfs-native', 'LUKS_MAPPERS': '/dev/mapper/stale'})
    gate = HealthGate({'luks': luks, 'zfs': lambda ctx: HealthResult.passed()})

    assert gate.check('all', ctx).status is HealthStatus.PASS
    assert health.check_luks(ctx).status is HealthStatus.PASS


def test_native_pool_must_be_encrypted(monkeypatch):
    monkeypatch.setattr(health.zfs, 'pool_exists', lambda pool: True)
    monkeypatch.setattr(health.zfs, 'pool_healthy', lambda pool: (True, "pool 'rpool' is healthy"))
    monkeypatch.setattr(health.zfs, 'encryption_of', lambda pool: 'off')
    ctx = InstallContext({'ENCRYPTION_MODE': 'zfs-native', 'ZFS_POOL_NAME': 'rpool'})

    result = health.check_zfs(ctx)

    assert result.status is HealthStatus.FAIL
    assert 'not natively encrypted' in result.details[0]
