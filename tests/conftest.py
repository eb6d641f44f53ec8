from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from cryptpool_installer import orchestrator as orchestrator_mod
from cryptpool_installer.context import InstallContext
from cryptpool_installer.health import HealthGate, HealthResult
from cryptpool_installer.ledger import ResourceKind, ResourceLedger
from cryptpool_installer.pipeline import Criticality, StageOutcome


class RecordingPrompter:
    def __init__(self, answer: bool = True, answers: Optional[Dict[str, str]] = None) -> None:
        self.answer = answer
        self.answers = answers or {}
        self.questions: List[str] = []
        self.messages: List[str] = []

    def confirm(self, question: str, *, default: bool = False) -> bool:
        self.questions.append(question)
        return self.answer

    def ask(self, question: str, *, key: Optional[str] = None, default: str = '') -> str:
        self.questions.append(question)
        return self.answers.get(key or '', default)

    def password(self, question: str, *, key: Optional[str] = None) -> str:
        self.questions.append(question)
        return 'secret'

    def notify(self, message: str) -> None:
        self.messages.append(message)


class FakeStage:
    def __init__(
        self,
        name: str,
        events: List[Tuple[str, str]],
        *,
        criticality: Criticality = Criticality.FATAL,
        health_check: Optional[str] = None,
        resources: Sequence[Tuple[ResourceKind, str]] = (),
        fail: bool = False,
        raises: Optional[BaseException] = None,
        enabled: bool = True,
    ) -> None:
        self.name = name
        self.events = events
        self.criticality = criticality
        self.health_check = health_check
        self.resources = resources
        self.fail = fail
        self.raises = raises
        self.enabled = enabled

    def precondition(self, ctx: InstallContext) -> bool:
        return self.enabled

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        self.events.append(('run', self.name))
        for kind, ident in self.resources:
            ledger.acquire(kind, ident, lambda i=ident: self.events.append(('release', i)))
        if self.raises is not None:
            raise self.raises
        if self.fail:
            return StageOutcome.failure(f'{self.name} broke')
        return StageOutcome.success()


class CountingLedger(ResourceLedger):
    def __init__(self) -> None:
        super().__init__()
        self.acquire_calls = 0

    def acquire(self, kind, identifier, release_action):
        self.acquire_calls += 1
        return super().acquire(kind, identifier, release_action)


@pytest.fixture
def events() -> List[Tuple[str, str]]:
    return []


@pytest.fixture
def prompter() -> RecordingPrompter:
    return RecordingPrompter()


@pytest.fixture
def passing_gate() -> HealthGate:
    return HealthGate({'ok': lambda ctx: HealthResult.passed()})


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / 'installer.conf'
    path.write_text(
        "# test configuration\n"
        "TARGET_DISKS='/dev/sdx /dev/sdy'\n"
        "HOSTNAME='pve-test'\n"
        "ZFS_RAID_LEVEL='mirror'\n"
        "INSTALLER_DEVICE='/dev/sdz'\n"
        "GRUB_MODE='UEFI'\n"
        "UI_MODE='auto'\n"
        "LUKS_PASSPHRASE='hunter2'\n"
        "ROOT_PASSWORD='toor'\n",
        encoding='utf-8',
    )
    return path


@pytest.fixture
def quiet_host(monkeypatch):
    """Keep the orchestrator away from the real machine."""

    monkeypatch.setattr(orchestrator_mod, 'run_preflight', lambda ctx, pivot: None)
    monkeypatch.setattr(orchestrator_mod, 'ensure_connectivity', lambda iface=None, dry_run=False: True)
    monkeypatch.setattr(orchestrator_mod, 'detect_installer_device', lambda dry_run=False: '/dev/sdz')
    monkeypatch.setattr(orchestrator_mod, 'detect_grub_mode', lambda: 'UEFI')
