import os
import signal
import time

import pytest

from cryptpool_installer.errors import InstallCancelled
from cryptpool_installer.ledger import ResourceGuard, ResourceKind, ResourceLedger


def _recorder(log, name):
    return lambda: log.append(name)


def test_release_all_is_lifo():
    log = []
    ledger = ResourceLedger()
    ledger.acquire(ResourceKind.BLOCK_DEVICE, '/dev/sda', _recorder(log, 'disk'))
    ledger.acquire(ResourceKind.MAPPING, 'luks_0', _recorder(log, 'mapping'))
    ledger.acquire(ResourceKind.POOL, 'rpool', _recorder(log, 'pool'))
    ledger.acquire(ResourceKind.MOUNT_POINT, '/mnt/boot', _recorder(log, 'mount'))

    report = ledger.release_all()

    assert log == ['mount', 'pool', 'mapping', 'disk']
    assert report.ok
    assert len(report.released) == 4


def test_acquired_at_increases():
    ledger = ResourceLedger()
    a = ledger.acquire(ResourceKind.POOL, 'a', lambda: None)
    b = ledger.acquire(ResourceKind.POOL, 'b', lambda: None)
    assert a.acquired_at < b.acquired_at


def test_release_all_twice_releases_once():
    log = []
    ledger = ResourceLedger()
    ledger.acquire(ResourceKind.MOUNT_POINT, '/mnt', _recorder(log, 'mnt'))

    ledger.release_all()
    second = ledger.release_all()

    assert log == ['mnt']
    assert second.released == []
    assert second.ok


def test_failing_release_does_not_stop_the_walk(caplog):
    log = []

    def broken():
        raise RuntimeError('target is busy')

    ledger = ResourceLedger()
    ledger.acquire(ResourceKind.MAPPING, 'luks_0', _recorder(log, 'mapping'))
    ledger.acquire(ResourceKind.POOL, 'rpool', broken)
    ledger.acquire(ResourceKind.MOUNT_POINT, '/mnt', _recorder(log, 'mnt'))

    report = ledger.release_all()

    assert log == ['mnt', 'mapping']
    assert report.errors == [('pool:rpool', 'target is busy')]
    assert 'target is busy' in caplog.text
    assert all(h.released for h in ledger.handles)


def test_early_release_is_skipped_later():
    log = []
    ledger = ResourceLedger()
    ledger.acquire(ResourceKind.BLOCK_DEVICE, '/dev/sda', _recorder(log, 'disk'))
    header = ledger.acquire(ResourceKind.MOUNT_POINT, '/tmp/headers', _recorder(log, 'headers'))

    ledger.release(header)
    assert [h.identifier for h in ledger.pending()] == ['/dev/sda']

    ledger.release_all()
    assert log == ['headers', 'disk']


def test_empty_identifier_rejected():
    with pytest.raises(ValueError):
        ResourceLedger().acquire(ResourceKind.POOL, '', lambda: None)


def test_release_all_on_empty_ledger():
    report = ResourceLedger().release_all()
    assert report.ok
    assert report.released == []


def test_guard_releases_on_exception_and_removes_workdir(tmp_path):
    log = []
    workdir = tmp_path / 'work'
    workdir.mkdir()
    ledger = ResourceLedger()

    with pytest.raises(RuntimeError):
        with ResourceGuard(ledger, workdir=str(workdir)) as guard:
            ledger.acquire(ResourceKind.POOL, 'rpool', _recorder(log, 'pool'))
            raise RuntimeError('stage exploded')

    assert log == ['pool']
    assert guard.report is not None and guard.report.ok
    assert not workdir.exists()


def test_guard_teardown_runs_once():
    log = []
    ledger = ResourceLedger()
    with ResourceGuard(ledger) as guard:
        ledger.acquire(ResourceKind.POOL, 'rpool', _recorder(log, 'pool'))
        guard.teardown()
    assert log == ['pool']


def test_guard_turns_sigterm_into_cancellation():
    log = []
    ledger = ResourceLedger()
    previous = signal.getsignal(signal.SIGTERM)

    with pytest.raises(InstallCancelled) as exc:
        with ResourceGuard(ledger):
            ledger.acquire(ResourceKind.MAPPING, 'luks_0', _recorder(log, 'mapping'))
            os.kill(os.getpid(), signal.SIGTERM)
            for _ in range(100):
                time.sleep(0.01)

    assert exc.value.signum == signal.SIGTERM
    assert log == ['mapping']
    assert signal.getsignal(signal.SIGTERM) == previous


def test_cancellation_mid_walk_finishes_then_reraises():
    log = []
    ledger = ResourceLedger()

    def interrupted():
        raise InstallCancelled('received signal 15', signum=15)

    ledger.acquire(ResourceKind.MAPPING, 'luks_0', _recorder(log, 'mapping'))
    ledger.acquire(ResourceKind.POOL, 'rpool', interrupted)
    ledger.acquire(ResourceKind.MOUNT_POINT, '/mnt/boot', _recorder(log, 'mount'))

    with pytest.raises(InstallCancelled):
        ledger.release_all()

    assert log == ['mount', 'mapping']
    assert ledger.pending() == []
