"""Operator interaction backends.

The installer core never talks to the terminal directly; it asks a Prompter.
`console` reads from stdin, `auto` answers from the installation context so a
fully configured run needs no operator.
"""

from __future__ import annotations

import getpass
import logging
from typing import Callable, Optional, Protocol

from ..context import InstallContext
from ..errors import ConfigError, InstallCancelled

logger = logging.getLogger(__name__)


class Prompter(Protocol):
    def confirm(self, question: str, *, default: bool = False) -> bool:
        ...

    def ask(self, question: str, *, key: Optional[str] = None, default: str = "") -> str:
        ...

    def password(self, question: str, *, key: Optional[str] = None) -> str:
        ...

    def notify(self, message: str) -> None:
        ...


class ConsolePrompter:
    def __init__(
        self,
        *,
        input_fn: Callable[[str], str] = input,
        secret_fn: Callable[[str], str] = getpass.getpass,
    ) -> None:
        self._input = input_fn
        self._secret = secret_fn

    def _read(self, fn: Callable[[str], str], prompt: str) -> str:
        try:
            return fn(prompt)
        except EOFError as e:
            raise InstallCancelled("input closed") from e

    def confirm(self, question: str, *, default: bool = False) -> bool:
        hint = "[Y/n]" if default else "[y/N]"
        answer = self._read(self._input, f"{question} {hint} ").strip().lower()
        if not answer:
            return default
        return answer in {"y", "yes"}

    def ask(self, question: str, *, key: Optional[str] = None, default: str = "") -> str:
        suffix = f" [{default}]" if default else ""
        answer = self._read(self._input, f"{question}{suffix}: ").strip()
        return answer or default

    def password(self, question: str, *, key: Optional[str] = None) -> str:
        while True:
            first = self._read(self._secret, f"{question}: ")
            second = self._read(self._secret, "Repeat: ")
            if first and first == second:
                return first
            print("Entries were empty or did not match, try again.")

    def notify(self, message: str) -> None:
        print(message)


class AutoPrompter:
    """Answers from the context; never blocks."""

    def __init__(self, ctx: InstallContext) -> None:
        self.ctx = ctx

    def confirm(self, question: str, *, default: bool = False) -> bool:
        answer = self.ctx.get_bool("ASSUME_YES", default=True)
        logger.info("%s -> %s (unattended)", question, "yes" if answer else "no")
        return answer

    def ask(self, question: str, *, key: Optional[str] = None, default: str = "") -> str:
        value = self.ctx.get(key, "") if key else ""
        return value or default

    def password(self, question: str, *, key: Optional[str] = None) -> str:
        value = self.ctx.get(key, "") if key else ""
        if not value:
            raise ConfigError(f"{key or question} must be set for unattended installs")
        return value

    def notify(self, message: str) -> None:
        logger.info("%s", message)


def encryption_passphrase(ctx: InstallContext, prompter: Prompter) -> str:
    """Passphrase for the selected encryption mode, asked for once and kept in ctx."""

    key = ctx.passphrase_key
    value = ctx.get(key, "")
    if not value:
        label = "LUKS passphrase" if ctx.uses_luks else "ZFS encryption passphrase"
        value = prompter.password(label, key=key)
        ctx[key] = value
    return value


def build_prompter(ctx: InstallContext, mode: Optional[str] = None) -> Prompter:
    mode = (mode or ctx.get("UI_MODE") or "console").lower()
    if mode == "auto":
        return AutoPrompter(ctx)
    if mode == "console":
        return ConsolePrompter()
    raise ConfigError(f"Unknown UI_MODE: {mode}")
