import os
import signal
import time

import pytest

from conftest import CountingLedger, FakeStage, RecordingPrompter
from cryptpool_installer import orchestrator as orchestrator_mod
from cryptpool_installer.errors import (
    EXIT_INSTALL_FAILED,
    EXIT_NOT_PRIVILEGED,
    EXIT_OK,
    EXIT_VALIDATION_FAILED,
    NotPrivilegedError,
)
from cryptpool_installer.context import InstallContext
from cryptpool_installer.health import HealthGate, HealthResult, HealthStatus
from cryptpool_installer.ledger import ResourceKind, ResourceLedger
from cryptpool_installer.orchestrator import Orchestrator, OrchestratorState, RunOptions, RunStatus
from cryptpool_installer.pipeline import Criticality
from cryptpool_installer.pivot import EnvironmentPivot
from cryptpool_installer.validation import ValidationReport


def _no_root_check():
    return None


def _orchestrator(options, stages, *, gate=None, ledger=None, prompter=None, pivot=None):
    return Orchestrator(
        options,
        ledger=ledger,
        gate=gate or HealthGate({'ok': lambda ctx: HealthResult.passed()}),
        prompter=prompter or RecordingPrompter(),
        pivot=pivot,
        stages_factory=lambda p: stages,
        privilege_check=_no_root_check,
    )


@pytest.fixture
def install_options(config_file, tmp_path):
    return RunOptions(config_path=str(config_file), pivot_enabled=False, log_path=str(tmp_path / 'install.log'))


def test_all_stages_pass(events, install_options, quiet_host):
    stages = [
        FakeStage('partition', events, resources=[(ResourceKind.BLOCK_DEVICE, '/dev/sdx')]),
        FakeStage('encrypt', events, resources=[(ResourceKind.MAPPING, 'luks_0')]),
        FakeStage('pool', events, resources=[(ResourceKind.POOL, 'rpool')]),
    ]
    orch = _orchestrator(install_options, stages)

    result = orch.run()

    assert result.status is RunStatus.DONE
    assert result.exit_code == EXIT_OK
    assert result.cleanup is not None and result.cleanup.errors == []
    assert [e for e in events if e[0] == 'release'] == [('release', 'rpool'), ('release', 'luks_0'), ('release', '/dev/sdx')]
    assert orch.history[-3:] == [OrchestratorState.FINAL_HEALTH_CHECK, OrchestratorState.FINALIZE, OrchestratorState.DONE]


def test_fatal_failure_releases_in_reverse(events, install_options, quiet_host):
    stages = [
        FakeStage('A', events, resources=[(ResourceKind.MOUNT_POINT, 'm1')]),
        FakeStage('B', events, resources=[(ResourceKind.POOL, 'p1')]),
        FakeStage('C', events, fail=True),
        FakeStage('D', events),
    ]
    orch = _orchestrator(install_options, stages)

    result = orch.run()

    assert result.status is RunStatus.FAILED
    assert result.exit_code == EXIT_INSTALL_FAILED
    assert 'C' in result.error
    assert ('run', 'D') not in events
    assert [e for e in events if e[0] == 'release'] == [('release', 'p1'), ('release', 'm1')]
    assert OrchestratorState.CLEANUP in orch.history
    assert orch.state is OrchestratorState.FAILED


def test_recoverable_failure_completes_with_warnings(events, install_options, quiet_host):
    stages = [
        FakeStage('pool', events),
        FakeStage('clover', events, criticality=Criticality.RECOVERABLE, fail=True),
        FakeStage('network', events),
    ]
    result = _orchestrator(install_options, stages).run()

    assert result.status is RunStatus.DONE_WITH_WARNINGS
    assert result.exit_code == EXIT_OK
    assert ('run', 'network') in events
    assert any('clover' in w for w in result.warnings)


def test_failing_final_health_check_is_a_warning(events, install_options, quiet_host):
    gate = HealthGate({'zfs': lambda ctx: HealthResult.fail('degraded')})
    result = _orchestrator(install_options, [FakeStage('a', events)], gate=gate).run()

    assert result.status is RunStatus.DONE_WITH_WARNINGS
    assert result.exit_code == EXIT_OK
    assert any('degraded' in w for w in result.warnings)


def test_declining_recoverable_failure_cancels(events, install_options, quiet_host):
    stages = [
        FakeStage('pool', events, resources=[(ResourceKind.POOL, 'rpool')]),
        FakeStage('clover', events, criticality=Criticality.RECOVERABLE, fail=True),
    ]
    result = _orchestrator(install_options, stages, prompter=RecordingPrompter(answer=False)).run()

    assert result.status is RunStatus.FAILED
    assert result.exit_code == EXIT_INSTALL_FAILED
    assert ('release', 'rpool') in events


def test_validate_only_never_touches_ledger(config_file, tmp_path, monkeypatch, quiet_host):
    report = ValidationReport()
    report.add('disks', HealthStatus.FAIL, '/dev/sdx does not exist')
    monkeypatch.setattr(orchestrator_mod, 'run_validation', lambda ctx, report_path=None: report)
    ledger = CountingLedger()
    options = RunOptions(config_path=str(config_file), validate_only=True, log_path=str(tmp_path / 'x.log'))

    result = _orchestrator(options, [], ledger=ledger).run()

    assert result.status is RunStatus.VALIDATION_FAILED
    assert result.exit_code == EXIT_VALIDATION_FAILED
    assert ledger.acquire_calls == 0


def test_validate_only_passes(config_file, tmp_path, monkeypatch, quiet_host):
    monkeypatch.setattr(orchestrator_mod, 'run_validation', lambda ctx, report_path=None: ValidationReport())
    options = RunOptions(config_path=str(config_file), validate_only=True, log_path=str(tmp_path / 'x.log'))

    result = _orchestrator(options, []).run()

    assert result.status is RunStatus.VALIDATION_PASSED
    assert result.exit_code == EXIT_OK


def test_not_privileged(install_options):
    def refuse():
        raise NotPrivilegedError('must be root')

    orch = Orchestrator(install_options, privilege_check=refuse)
    result = orch.run()

    assert result.status is RunStatus.PRECONDITION_FAILED
    assert result.exit_code == EXIT_NOT_PRIVILEGED


def test_already_relocated_runs_stages_without_pivot(events, config_file, tmp_path, quiet_host):
    root = tmp_path / 'ramroot'
    root.mkdir()
    pivot = EnvironmentPivot(root=str(root))
    (root / pivot.marker).write_text('')

    def forbidden(ctx):
        raise AssertionError('relocate must not be called')

    pivot.relocate = forbidden
    options = RunOptions(config_path=str(config_file), pivot_enabled=True, log_path=str(tmp_path / 'x.log'))

    result = _orchestrator(options, [FakeStage('a', events)], pivot=pivot).run()

    assert result.status is RunStatus.DONE
    assert events == [('run', 'a')]


def test_pivot_returns_child_exit_code(events, config_file, tmp_path, quiet_host):
    pivot = EnvironmentPivot(root=str(tmp_path))
    pivot.relocate = lambda ctx: 0
    options = RunOptions(config_path=str(config_file), pivot_enabled=True, log_path=str(tmp_path / 'x.log'))

    orch = _orchestrator(options, [FakeStage('a', events)], pivot=pivot)
    result = orch.run()

    assert result.status is RunStatus.PIVOTED
    assert result.exit_code == EXIT_OK
    assert events == []
    assert OrchestratorState.PIVOT in orch.history


def test_pivot_refused_while_resources_held(events, config_file, tmp_path, quiet_host):
    ledger = ResourceLedger()
    ledger.acquire(ResourceKind.MOUNT_POINT, '/mnt/stale', lambda: events.append(('release', '/mnt/stale')))
    pivot = EnvironmentPivot(root=str(tmp_path))
    pivot.relocate = lambda ctx: 0
    options = RunOptions(config_path=str(config_file), pivot_enabled=True, log_path=str(tmp_path / 'x.log'))

    result = _orchestrator(options, [], ledger=ledger, pivot=pivot).run()

    assert result.status is RunStatus.FAILED
    assert result.exit_code == EXIT_INSTALL_FAILED
    assert events == [('release', '/mnt/stale')]


def test_resume_context_acknowledges_handover(events, tmp_path, quiet_host):
    context_path = tmp_path / 'context.json'
    InstallContext({'TARGET_DISKS': '/dev/sdx', 'HOSTNAME': 'h', 'UI_MODE': 'auto'}).save(str(context_path))
    options = RunOptions(resume_context=str(context_path), pivot_enabled=False, log_path=str(tmp_path / 'x.log'))

    result = _orchestrator(options, [FakeStage('a', events)]).run()

    assert result.status is RunStatus.DONE
    assert (tmp_path / 'context.json.ack').exists()


def test_sigterm_during_health_check_fails_the_run(events, install_options, quiet_host):
    def network_check(ctx):
        os.kill(os.getpid(), signal.SIGTERM)
        for _ in range(100):
            time.sleep(0.01)
        return HealthResult.passed()

    gate = HealthGate({'network': network_check})
    stages = [
        FakeStage('pool', events, resources=[(ResourceKind.POOL, 'rpool')]),
        FakeStage('network', events, criticality=Criticality.RECOVERABLE, health_check='network'),
        FakeStage('backup', events),
    ]

    result = _orchestrator(install_options, stages, gate=gate).run()

    assert result.status is RunStatus.FAILED
    assert result.exit_code == EXIT_INSTALL_FAILED
    assert ('run', 'backup') not in events
    assert ('release', 'rpool') in events


def test_sigterm_during_finalize_fails_the_run(events, install_options, quiet_host):
    class SignalledStage(FakeStage):
        def run(self, ctx, ledger):
            def release():
                events.append(('release', 'rpool'))
                os.kill(os.getpid(), signal.SIGTERM)
                for _ in range(100):
                    time.sleep(0.01)

            ledger.acquire(ResourceKind.POOL, 'rpool', release)
            ledger.acquire(ResourceKind.MOUNT_POINT, '/mnt', lambda: events.append(('release', '/mnt')))
            return super().run(ctx, ledger)

    result = _orchestrator(install_options, [SignalledStage('pool', events)]).run()

    assert result.status is RunStatus.FAILED
    assert result.exit_code == EXIT_INSTALL_FAILED
    assert [e for e in events if e[0] == 'release'] == [('release', '/mnt'), ('release', 'rpool')]
