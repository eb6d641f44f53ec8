from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from .lib.env import PATHS

DEFAULT_LOG_PATH = PATHS.log_default


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure the root logger once.

    /var/log may not be writable in every live environment; in that case the
    log goes to the current working directory instead.

    Returns the actual file path being used.
    """

    logger = logging.getLogger()

    if getattr(logger, "_cryptpool_configured", False):
        return getattr(logger, "_cryptpool_log_path", log_path)

    handlers: list[logging.Handler] = []

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    file_handler: Optional[logging.Handler] = None
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        chosen_path = log_path
    except OSError:
        chosen_path = str(Path.cwd() / os.path.basename(DEFAULT_LOG_PATH))
        file_handler = logging.FileHandler(chosen_path)
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.DEBUG)
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        console.setLevel(level)
        handlers.append(console)

    # Command output is logged at DEBUG; keep it in the file.
    logger.setLevel(logging.DEBUG)
    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_cryptpool_configured", True)
    setattr(logger, "_cryptpool_log_path", chosen_path)

    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s)", log_path, chosen_path
    )
    return chosen_path
