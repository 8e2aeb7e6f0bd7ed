"""Shared directory helpers for the adapter and the pi agent home."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import PlatformDirs

APP_NAME = "pi-acp"
AGENT_DIR_ENV = "PI_CODING_AGENT_DIR"
SESSION_MAP_ENV = "PI_ACP_SESSION_MAP"


def _platform_dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def log_dir() -> Path:
    return ensure_dir(Path(_platform_dirs().user_log_path))


def expand_home(value: str) -> Path:
    """Expand a leading `~` the way the pi agent does."""
    if value == "~":
        return Path.home()
    if value.startswith("~/"):
        return Path.home() / value[2:]
    return Path(value)


def agent_dir() -> Path:
    """Return the pi agent home (`PI_CODING_AGENT_DIR` or `~/.pi/agent`)."""
    env_dir = os.getenv(AGENT_DIR_ENV)
    if env_dir:
        return expand_home(env_dir)
    return Path.home() / ".pi" / "agent"


def sessions_dir() -> Path:
    return agent_dir() / "sessions"


def session_map_path() -> Path:
    """Location of the persisted session id -> transcript map."""
    override = os.getenv(SESSION_MAP_ENV)
    if override:
        return expand_home(override)
    return Path.home() / ".pi" / "pi-acp" / "session-map.json"
