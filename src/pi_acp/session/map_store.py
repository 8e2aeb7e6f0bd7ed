"""Persisted mapping from ACP session ids to pi transcript files.

The map survives adapter restarts so `session/load` and `session/resume` can
find a transcript without rescanning the agent's session directory.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from pi_acp.log_utils import log_event

logger = logging.getLogger(__name__)


@dataclass
class SessionMapStore:
    """JSON file of `{sessionId: {"piSessionPath": path}}`.

    Every operation re-reads the file; a missing or corrupt file reads as
    empty. Concurrent writers are not coordinated.
    """

    path: Path

    def get(self, session_id: str) -> str | None:
        entry = self._read().get(session_id)
        if isinstance(entry, dict):
            value = entry.get("piSessionPath")
            return value if isinstance(value, str) else None
        return None

    def set(self, session_id: str, pi_session_path: str) -> None:
        data = self._read()
        data[session_id] = {"piSessionPath": pi_session_path}
        self._write(data)

    def merge(self, entries: Mapping[str, str]) -> bool:
        """Add or update entries, writing only when something changed."""
        data = self._read()
        changed = False
        for session_id, pi_session_path in entries.items():
            current = data.get(session_id)
            if isinstance(current, dict) and current.get("piSessionPath") == pi_session_path:
                continue
            data[session_id] = {"piSessionPath": pi_session_path}
            changed = True
        if changed:
            self._write(data)
        return changed

    def all(self) -> dict[str, str]:
        result: dict[str, str] = {}
        for session_id, entry in self._read().items():
            if isinstance(entry, dict) and isinstance(entry.get("piSessionPath"), str):
                result[session_id] = entry["piSessionPath"]
        return result

    def _read(self) -> dict[str, object]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log_event(logger, "session_map.read_failed", level=logging.WARNING, path=str(self.path), error=str(exc))
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
