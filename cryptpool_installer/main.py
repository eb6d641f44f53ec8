from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from typing import Optional

from . import __version__
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .orchestrator import Orchestrator, RunOptions, RunResult, RunStatus

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cryptpool-installer",
        description="Install Debian onto LUKS-encrypted disks pooled with ZFS.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--validate", action="store_true", help="Check configuration and hardware, change nothing")
    p.add_argument("--config", default=None, help="Configuration file (KEY='value', yaml or json)")
    p.add_argument("--no-ram-boot", action="store_true", help="Do not relocate into a RAM disk before installing")
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to installer log")
    p.add_argument("--dry-run", action="store_true", help="Log every command without executing it")
    p.add_argument("--save-config", default=None, help="Write the effective configuration to this file")
    # Used by the installer itself when it re-executes from the RAM disk.
    p.add_argument("--resume-context", default=None, help=argparse.SUPPRESS)
    return p


def run(options: RunOptions) -> RunResult:
    actual_log_path = configure_logging(log_path=options.log_path or DEFAULT_LOG_PATH)
    if actual_log_path != options.log_path:
        options = replace(options, log_path=actual_log_path)
    return Orchestrator(options).run()


def _summarize(result: RunResult) -> None:
    for w in result.warnings:
        logger.warning("Warning: %s", w)
    if result.status is RunStatus.DONE:
        logger.info("Installation complete")
    elif result.status is RunStatus.DONE_WITH_WARNINGS:
        logger.warning("Installation complete with %d warning(s)", len(result.warnings))
    elif result.status is RunStatus.VALIDATION_PASSED:
        logger.info("Validation passed")
    elif result.status is RunStatus.PIVOTED:
        logger.info("Relocated installer exited with %d", result.exit_code)
    else:
        logger.error("%s: %s", result.status.value, result.error)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    options = RunOptions(
        config_path=args.config,
        validate_only=args.validate,
        pivot_enabled=not args.no_ram_boot,
        dry_run=args.dry_run,
        log_path=args.log,
        resume_context=args.resume_context,
        save_config_path=args.save_config,
    )
    result = run(options)
    _summarize(result)
    return result.exit_code
