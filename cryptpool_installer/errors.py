from __future__ import annotations

from typing import Optional

# Process exit codes. argparse keeps 2 for usage errors.
EXIT_OK = 0
EXIT_INSTALL_FAILED = 1
EXIT_VALIDATION_FAILED = 3
EXIT_NOT_PRIVILEGED = 4
EXIT_PRECONDITION_FAILED = 5


class InstallerError(Exception):
    """Base class for every failure the installer reports on purpose."""

    exit_code = EXIT_INSTALL_FAILED


class ConfigError(InstallerError):
    exit_code = EXIT_PRECONDITION_FAILED


class PreconditionError(InstallerError):
    exit_code = EXIT_PRECONDITION_FAILED


class NotPrivilegedError(PreconditionError):
    exit_code = EXIT_NOT_PRIVILEGED


class StageFailure(InstallerError):
    """A fatal stage reported failure."""

    def __init__(self, stage: str, detail: str = "") -> None:
        self.stage = stage
        self.detail = detail
        msg = f"Stage {stage} failed"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class HealthCheckFailure(InstallerError):
    """The health gate failed after a fatal stage."""

    def __init__(self, stage: str, check: str, details: Optional[list[str]] = None) -> None:
        self.stage = stage
        self.check = check
        self.details = list(details or [])
        msg = f"Health check '{check}' failed after stage {stage}"
        if self.details:
            msg += ": " + "; ".join(self.details)
        super().__init__(msg)


class PivotError(InstallerError):
    pass


class InstallCancelled(InstallerError):
    """Raised when the operator or a termination signal cancels the run."""

    def __init__(self, reason: str = "cancelled", signum: Optional[int] = None) -> None:
        self.signum = signum
        super().__init__(reason)


class CommandError(InstallerError):
    """An external tool exited non-zero."""

    def __init__(self, cmd: str, returncode: int, stderr: str = "") -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Command failed ({returncode}): {cmd}\n{stderr}".rstrip())
