from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"yaml", "yml"}:
        return "yaml"
    # Default to JSON for unknown extensions.
    return "json"


def _yaml():
    try:
        import yaml
    except ImportError as e:  # pragma: no cover
        raise RuntimeError(
            "YAML requested but PyYAML is not available. "
            "Use JSON or install PyYAML in the live environment."
        ) from e
    return yaml


def load_mapping(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}

    text = p.read_text(encoding="utf-8")
    if _detect_format(p) == "yaml":
        data = _yaml().safe_load(text) or {}
    else:
        data = json.loads(text) if text.strip() else {}

    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain an object/dict, got {type(data).__name__}")
    return data


def save_mapping(path: str, data: Dict[str, Any], *, mode: Optional[int] = None) -> None:
    """Write a mapping as YAML or JSON.

    With ``mode`` the file is created with those permissions from the start,
    so secrets are never readable through a wider default umask.
    """

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    if _detect_format(p) == "yaml":
        text = _yaml().safe_dump(data, sort_keys=True, default_flow_style=False)
    else:
        text = json.dumps(data, indent=2, sort_keys=True) + "\n"

    if mode is None:
        p.write_text(text, encoding="utf-8")
    else:
        fd = os.open(p, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            # O_CREAT ignores mode for a file that already exists.
            os.fchmod(f.fileno(), mode)
            f.write(text)
    logger.debug("Wrote %s", p)
