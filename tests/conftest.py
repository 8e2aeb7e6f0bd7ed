from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_home(tmp_path_factory, monkeypatch):
    """Force tests to use a temporary HOME/XDG dirs and pi agent home."""
    base = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(base))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(base / ".config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / ".local" / "state"))
    monkeypatch.setenv("XDG_DATA_HOME", str(base / ".local" / "share"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(base / ".cache"))
    monkeypatch.setenv("PI_CODING_AGENT_DIR", str(base / ".pi" / "agent"))
    monkeypatch.setenv("PI_ACP_SESSION_MAP", str(base / ".pi" / "pi-acp" / "session-map.json"))
    monkeypatch.setenv("PI_ACP_LOG_DIR", str(base / "logs"))
    monkeypatch.setattr(Path, "home", lambda: base)
