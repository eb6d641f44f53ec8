from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol, Sequence

from .context import InstallContext
from .errors import HealthCheckFailure, InstallCancelled, StageFailure
from .health import HealthGate, HealthStatus
from .ledger import ResourceLedger
from .lib.prompt import Prompter

logger = logging.getLogger(__name__)


class Criticality(str, Enum):
    FATAL = "fatal"
    RECOVERABLE = "recoverable"


@dataclass(frozen=True)
class StageOutcome:
    ok: bool
    detail: str = ""

    @classmethod
    def success(cls, detail: str = "") -> "StageOutcome":
        return cls(True, detail)

    @classmethod
    def failure(cls, detail: str) -> "StageOutcome":
        return cls(False, detail)


class Stage(Protocol):
    """One installation stage.

    Stages register every resource they create with the ledger at the moment
    it exists, so a failure halfway through still leaves a complete record.
    """

    name: str
    criticality: Criticality
    health_check: Optional[str]

    def precondition(self, ctx: InstallContext) -> bool:
        ...

    def run(self, ctx: InstallContext, ledger: ResourceLedger) -> StageOutcome:
        ...


@dataclass
class PipelineResult:
    ran: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _recoverable_problem(stage: Stage, message: str, result: PipelineResult, prompter: Prompter) -> None:
    logger.warning("%s", message)
    result.warnings.append(message)
    if not prompter.confirm(f"{message}. Continue the installation?", default=True):
        raise InstallCancelled(f"operator stopped after {stage.name}")


def run_pipeline(
    *,
    ctx: InstallContext,
    stages: Sequence[Stage],
    ledger: ResourceLedger,
    gate: HealthGate,
    prompter: Prompter,
) -> PipelineResult:
    """Run stages in order, gating each one.

    A fatal stage failure or a FAIL from its health check raises and stops
    the sequence. Recoverable problems become warnings once the operator
    agrees to carry on. WARN results are recorded and never stop anything.
    """

    result = PipelineResult()

    for stage in stages:
        if not stage.precondition(ctx):
            logger.info("Skipping stage %s (precondition not met)", stage.name)
            result.skipped.append(stage.name)
            continue

        logger.info("Running stage %s", stage.name)
        try:
            outcome = stage.run(ctx, ledger)
        except (InstallCancelled, KeyboardInterrupt):
            raise
        except Exception as e:
            logger.exception("Stage %s raised", stage.name)
            outcome = StageOutcome.failure(str(e))
        result.ran.append(stage.name)

        if not outcome.ok:
            if stage.criticality is Criticality.FATAL:
                raise StageFailure(stage.name, outcome.detail)
            _recoverable_problem(stage, f"Stage {stage.name} failed: {outcome.detail}", result, prompter)
            continue

        if not stage.health_check:
            continue

        health = gate.check(stage.health_check, ctx)
        if health.status is HealthStatus.FAIL:
            if stage.criticality is Criticality.FATAL:
                raise HealthCheckFailure(stage.name, stage.health_check, health.details)
            _recoverable_problem(
                stage,
                f"Health check {stage.health_check} failed after {stage.name}: {'; '.join(health.details)}",
                result,
                prompter,
            )
        elif health.status is HealthStatus.WARN:
            msg = f"Health check {stage.health_check} warned after {stage.name}: {'; '.join(health.details)}"
            logger.warning("%s", msg)
            result.warnings.append(msg)

    return result
