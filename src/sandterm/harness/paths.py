"""Default filesystem locations for console state."""

from __future__ import annotations

import os
from pathlib import Path


def sandterm_home() -> Path:
    env_home = os.environ.get("SANDTERM_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.cwd() / ".sandterm"


def history_default() -> Path:
    return sandterm_home() / "history.json"


def package_root() -> Path:
    """Directory that contains the ``sandterm`` package."""
    return Path(__file__).resolve().parents[2]
