"""Top-level installer state machine.

INIT -> CONFIGURE -> VALIDATE_ONLY                          (validation mode)
INIT -> CONFIGURE -> PREFLIGHT -> PIVOT_CHECK -> PIVOT       (hand over, exit)
INIT -> CONFIGURE -> PREFLIGHT -> PIVOT_CHECK -> STAGES
     -> FINAL_HEALTH_CHECK -> FINALIZE -> DONE

CLEANUP is entered from any state on failure, cancellation or signal; it
drains the resource ledger through the ResourceGuard.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from .config import gather_options, load_config, save_config
from .context import InstallContext, ensure_defaults
from .errors import (
    EXIT_INSTALL_FAILED,
    EXIT_OK,
    EXIT_VALIDATION_FAILED,
    InstallCancelled,
    InstallerError,
    PivotError,
)
from .health import HealthGate, HealthStatus
from .ledger import ReleaseReport, ResourceGuard, ResourceLedger
from .lib.block import detect_installer_device
from .lib.bootloader import detect_grub_mode
from .lib.env import PATHS
from .lib.net import ensure_connectivity
from .lib.prompt import Prompter, build_prompter
from .pipeline import Stage, run_pipeline
from .pivot import EnvironmentPivot, acknowledge
from .preflight import require_root, run_preflight
from .steps import build_stages
from .validation import run_validation

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    INIT = "INIT"
    CONFIGURE = "CONFIGURE"
    VALIDATE_ONLY = "VALIDATE_ONLY"
    PREFLIGHT = "PREFLIGHT"
    PIVOT_CHECK = "PIVOT_CHECK"
    PIVOT = "PIVOT"
    STAGES = "STAGES"
    FINAL_HEALTH_CHECK = "FINAL_HEALTH_CHECK"
    FINALIZE = "FINALIZE"
    CLEANUP = "CLEANUP"
    DONE = "DONE"
    FAILED = "FAILED"


class RunStatus(str, Enum):
    DONE = "done"
    DONE_WITH_WARNINGS = "done_with_warnings"
    FAILED = "failed"
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"
    PRECONDITION_FAILED = "precondition_failed"
    PIVOTED = "pivoted"


@dataclass(frozen=True)
class RunOptions:
    config_path: Optional[str] = None
    validate_only: bool = False
    pivot_enabled: bool = True
    dry_run: bool = False
    log_path: Optional[str] = None
    resume_context: Optional[str] = None
    save_config_path: Optional[str] = None


@dataclass
class RunResult:
    status: RunStatus
    exit_code: int
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    cleanup: Optional[ReleaseReport] = None


class Orchestrator:
    def __init__(
        self,
        options: RunOptions,
        *,
        ledger: Optional[ResourceLedger] = None,
        gate: Optional[HealthGate] = None,
        pivot: Optional[EnvironmentPivot] = None,
        prompter: Optional[Prompter] = None,
        stages_factory: Optional[Callable[[Prompter], Sequence[Stage]]] = None,
        privilege_check: Callable[[], None] = require_root,
    ) -> None:
        self.options = options
        self.ledger = ledger or ResourceLedger()
        self.gate = gate or HealthGate()
        self._pivot = pivot
        self._prompter = prompter
        self._stages_factory = stages_factory
        self._privilege_check = privilege_check
        self.state = OrchestratorState.INIT
        self.history: List[OrchestratorState] = [OrchestratorState.INIT]
        self.ctx = InstallContext()
        self.warnings: List[str] = []

    def _enter(self, state: OrchestratorState) -> None:
        logger.info("State %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    @property
    def prompter(self) -> Prompter:
        if self._prompter is None:
            self._prompter = build_prompter(self.ctx)
        return self._prompter

    def _stages(self) -> Sequence[Stage]:
        factory = self._stages_factory or build_stages
        return factory(self.prompter)

    def _configure(self) -> None:
        opts = self.options
        if opts.resume_context:
            self.ctx = InstallContext.load(opts.resume_context)
            if not self.ctx:
                raise PivotError(f"Handed-over context {opts.resume_context} is empty or missing")
            acknowledge(opts.resume_context)
        elif opts.config_path:
            self.ctx = load_config(opts.config_path)
        if opts.dry_run:
            self.ctx["DRY_RUN"] = "yes"
        ensure_defaults(self.ctx)

        if not opts.config_path and not opts.resume_context and not opts.validate_only:
            gather_options(self.ctx, self.prompter, installer_device=self.ctx.get("INSTALLER_DEVICE") or None)
            ensure_defaults(self.ctx)

        # Inside the ramdisk "/" is a tmpfs; keep what the parent detected.
        if not self.ctx.get("INSTALLER_DEVICE"):
            self.ctx["INSTALLER_DEVICE"] = detect_installer_device(dry_run=self.ctx.dry_run) or ""
        if not self.ctx.get("GRUB_MODE"):
            self.ctx["GRUB_MODE"] = detect_grub_mode()

        if opts.save_config_path:
            save_config(opts.save_config_path, self.ctx)

    def _pivot_obj(self) -> EnvironmentPivot:
        if self._pivot is None:
            self._pivot = EnvironmentPivot.from_context(self.ctx)
        return self._pivot

    def _should_pivot(self) -> bool:
        if not self.options.pivot_enabled:
            logger.info("Relocation disabled")
            return False
        if self.ctx.dry_run:
            logger.info("Dry run: not relocating")
            return False
        if self._pivot_obj().is_relocated():
            logger.info("Already running from the ramdisk")
            return False
        return True

    def _validate(self) -> RunResult:
        self._enter(OrchestratorState.VALIDATE_ONLY)
        report = run_validation(self.ctx, report_path=self._report_path())
        if report.passed:
            self._enter(OrchestratorState.DONE)
            return RunResult(RunStatus.VALIDATION_PASSED, EXIT_OK, warnings=report.warnings)
        self._enter(OrchestratorState.FAILED)
        return RunResult(
            RunStatus.VALIDATION_FAILED,
            EXIT_VALIDATION_FAILED,
            warnings=report.warnings,
            error="validation failed",
        )

    def _report_path(self) -> Optional[str]:
        log_file = self.ctx.get("LOG_FILE", "")
        if not log_file:
            return None
        return os.path.join(os.path.dirname(log_file) or ".", PATHS.validation_report)

    def _install(self) -> RunResult:
        self._enter(OrchestratorState.PREFLIGHT)
        pivot_wanted = self._should_pivot()
        run_preflight(self.ctx, pivot=pivot_wanted)

        self._enter(OrchestratorState.PIVOT_CHECK)
        if pivot_wanted:
            pending = self.ledger.pending()
            if pending:
                raise PivotError(f"Refusing to relocate with {len(pending)} resource(s) still held")
            self._enter(OrchestratorState.PIVOT)
            code = self._pivot_obj().relocate(self.ctx)
            self._enter(OrchestratorState.DONE if code == EXIT_OK else OrchestratorState.FAILED)
            return RunResult(RunStatus.PIVOTED, code)

        if not ensure_connectivity(self.ctx.get("NET_IFACE") or None, dry_run=self.ctx.dry_run):
            self.warnings.append("no network connectivity at start of installation")

        self._enter(OrchestratorState.STAGES)
        result = run_pipeline(
            ctx=self.ctx,
            stages=self._stages(),
            ledger=self.ledger,
            gate=self.gate,
            prompter=self.prompter,
        )
        self.warnings.extend(result.warnings)

        self._enter(OrchestratorState.FINAL_HEALTH_CHECK)
        final = self.gate.check("all", self.ctx)
        if final.status is not HealthStatus.PASS:
            self.warnings.append(f"final health check {final.status.value}: {'; '.join(final.details)}")

        self._enter(OrchestratorState.FINALIZE)
        report = self.ledger.release_all()
        for ident, err in report.errors:
            self.warnings.append(f"release of {ident} failed: {err}")

        self._enter(OrchestratorState.DONE)
        status = RunStatus.DONE_WITH_WARNINGS if self.warnings else RunStatus.DONE
        self.prompter.notify(
            "Installation finished" + (f" with {len(self.warnings)} warning(s)" if self.warnings else "")
        )
        return RunResult(status, EXIT_OK, warnings=list(self.warnings))

    def _run_guarded(self, workdir: str) -> RunResult:
        opts = self.options
        self.ctx["TEMP_DIR"] = workdir
        try:
            self._enter(OrchestratorState.CONFIGURE)
            self._configure()
            self.ctx["TEMP_DIR"] = workdir
            if opts.log_path:
                self.ctx["LOG_FILE"] = opts.log_path

            if opts.validate_only:
                return self._validate()
            return self._install()
        except InstallCancelled as e:
            logger.error("Installation cancelled: %s", e)
            self._enter(OrchestratorState.CLEANUP)
            return RunResult(RunStatus.FAILED, EXIT_INSTALL_FAILED, list(self.warnings), f"cancelled: {e}")
        except KeyboardInterrupt:
            logger.error("Installation interrupted")
            self._enter(OrchestratorState.CLEANUP)
            return RunResult(RunStatus.FAILED, EXIT_INSTALL_FAILED, list(self.warnings), "interrupted")
        except InstallerError as e:
            logger.error("Installation failed: %s", e)
            self._enter(OrchestratorState.CLEANUP)
            status = RunStatus.FAILED if e.exit_code == EXIT_INSTALL_FAILED else RunStatus.PRECONDITION_FAILED
            return RunResult(status, e.exit_code, list(self.warnings), str(e))
        except Exception as e:
            logger.exception("Installer failed")
            self._enter(OrchestratorState.CLEANUP)
            return RunResult(RunStatus.FAILED, EXIT_INSTALL_FAILED, list(self.warnings), str(e))

    def run(self) -> RunResult:
        opts = self.options
        if not (opts.validate_only or opts.dry_run):
            try:
                self._privilege_check()
            except InstallerError as e:
                logger.error("%s", e)
                self._enter(OrchestratorState.FAILED)
                return RunResult(RunStatus.PRECONDITION_FAILED, e.exit_code, error=str(e))

        workdir = tempfile.mkdtemp(prefix="cryptpool-installer.")
        guard = ResourceGuard(self.ledger, workdir=workdir)
        try:
            with guard:
                result = self._run_guarded(workdir)
        finally:
            if self.state is OrchestratorState.CLEANUP:
                self._enter(OrchestratorState.FAILED)

        result.cleanup = guard.report
        if guard.report is not None and guard.report.errors and result.status is RunStatus.FAILED:
            logger.error("Cleanup left %d resource(s) unreleased", len(guard.report.errors))
        return result
