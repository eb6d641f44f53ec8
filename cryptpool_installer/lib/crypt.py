from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Optional

from .block import is_block_device
from .command import run_cmd

logger = logging.getLogger(__name__)


def mapper_path(name: str) -> str:
    return f"/dev/mapper/{name}"


def is_luks(dev: str, *, dry_run: bool = False) -> bool:
    return run_cmd(["cryptsetup", "isLuks", dev], check=False, dry_run=dry_run).ok


def is_active(name: str, *, dry_run: bool = False) -> bool:
    if not dry_run and not is_block_device(mapper_path(name)):
        return False
    return run_cmd(["cryptsetup", "status", name], check=False, dry_run=dry_run).ok


def luks_format(dev: str, passphrase: str, *, header: Optional[str] = None, dry_run: bool = False) -> None:
    argv = ["cryptsetup", "luksFormat", "--type", "luks2", "--batch-mode", "--key-file", "-"]
    if header:
        argv += ["--header", header]
    argv.append(dev)
    run_cmd(argv, input_text=passphrase, dry_run=dry_run)


def luks_open(dev: str, name: str, passphrase: str, *, header: Optional[str] = None, dry_run: bool = False) -> str:
    argv = ["cryptsetup", "open", "--type", "luks2", "--key-file", "-"]
    if header:
        argv += ["--header", header]
    argv += [dev, name]
    run_cmd(argv, input_text=passphrase, dry_run=dry_run)
    return mapper_path(name)


def luks_close(name: str, *, dry_run: bool = False) -> None:
    """Close a mapping; a no-op if it is not open."""

    if not dry_run and not os.path.exists(mapper_path(name)):
        logger.debug("Mapping %s already closed", name)
        return
    run_cmd(["cryptsetup", "close", name], dry_run=dry_run)


def make_closer(name: str, *, dry_run: bool = False):
    def _release() -> None:
        luks_close(name, dry_run=dry_run)

    return _release


def cryptsetup_version(*, dry_run: bool = False) -> Optional[tuple[int, int]]:
    r = run_cmd(["cryptsetup", "--version"], check=False, dry_run=dry_run)
    m = re.search(r"(\d+)\.(\d+)", r.stdout or "")
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def header_filename(hostname: str, index: int) -> str:
    return f"header_{hostname}_disk{index}.img"


def backup_header(dev: str, dest: str, *, header: Optional[str] = None, dry_run: bool = False) -> None:
    if not dry_run:
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
        if os.path.exists(dest):
            os.remove(dest)
    argv = ["cryptsetup", "luksHeaderBackup"]
    if header:
        argv += ["--header", header]
    argv += [dev, "--header-backup-file", dest]
    run_cmd(argv, dry_run=dry_run)
