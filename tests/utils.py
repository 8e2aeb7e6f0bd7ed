from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock

from acp.agent.connection import AgentSideConnection

from pi_acp.acp_runtime import RuntimeSettings
from pi_acp.agent import PiAcpAgent
from pi_acp.errors import PiProcessExited
from pi_acp.pi.messages import PiResponse, decode_line
from pi_acp.session.manager import SessionManager
from pi_acp.session.map_store import SessionMapStore

MODELS = [
    {
        "id": "claude-sonnet-4-5",
        "provider": "anthropic",
        "name": "Claude Sonnet 4.5",
        "reasoning": True,
        "contextWindow": 200000,
        "maxTokens": 64000,
    },
    {"id": "gpt-4o", "provider": "openai", "name": "GPT-4o", "reasoning": False},
]


def default_responses() -> dict[str, Any]:
    return {
        "get_state": {
            "model": MODELS[0],
            "thinkingLevel": "medium",
            "steeringMode": "all",
            "followUpMode": "one-at-a-time",
            "autoCompactionEnabled": False,
            "autoRetryEnabled": True,
        },
        "get_available_models": {"models": MODELS},
        "get_session_stats": {"tokens": {"input": 1200, "output": 300, "total": 1500}, "cost": 0.0123},
        "get_messages": {"messages": []},
    }


class FakePi:
    """In-memory stand-in for a pi process.

    `responses` maps a command type to its response data, an exception to
    raise, or a callable receiving the command.
    """

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = default_responses()
        self.responses.update(responses or {})
        self.sent: list[dict[str, Any]] = []
        self.requests: list[dict[str, Any]] = []
        self.exited = False
        self.stopped = False
        self._listeners: list[Callable[[Any], Any]] = []
        self._error_listeners: list[Callable[[Exception], Any]] = []

    def on_line(self, listener: Callable[[Any], Any]) -> None:
        self._listeners.append(listener)

    def on_error(self, listener: Callable[[Exception], Any]) -> None:
        self._error_listeners.append(listener)

    async def send(self, command: dict[str, Any]) -> None:
        if self.exited:
            raise PiProcessExited(1)
        self.sent.append(dict(command))

    async def request(self, command: dict[str, Any], timeout_ms: int | None = None) -> PiResponse:
        if self.exited:
            raise PiProcessExited(1)
        self.requests.append(dict(command))
        kind = command["type"]
        result = self.responses.get(kind, {})
        if callable(result):
            result = result(command)
        if isinstance(result, Exception):
            raise result
        return PiResponse(type="response", command=kind, success=True, data=result)

    async def stop(self) -> None:
        self.stopped = True
        self.exited = True

    async def emit(self, payload: dict[str, Any]) -> None:
        """Deliver one event line to every listener, like the reader task does."""
        line = decode_line(json.dumps(payload))
        for listener in list(self._listeners):
            await listener(line)

    async def exit(self, returncode: int = 1) -> None:
        self.exited = True
        error = PiProcessExited(returncode)
        for listener in list(self._error_listeners):
            result = listener(error)
            if asyncio.iscoroutine(result):
                await result

    def request_types(self) -> list[str]:
        return [command["type"] for command in self.requests]


class Recorder:
    """Collects emitted updates in order."""

    def __init__(self) -> None:
        self.updates: list[tuple[str, Any]] = []

    async def __call__(self, session_id: str, update: Any) -> None:
        self.updates.append((session_id, update))

    def of_kind(self, kind: str) -> list[Any]:
        return [update for _sid, update in self.updates if getattr(update, "session_update", None) == kind]


def make_settings(**overrides: Any) -> RuntimeSettings:
    values: dict[str, Any] = {"heartbeat_interval_s": 3600.0}
    values.update(overrides)
    return RuntimeSettings(**values)


def make_manager(
    tmp_path: Path,
    *,
    responses: dict[str, Any] | None = None,
    emit: Any = None,
    **settings: Any,
) -> tuple[SessionManager, list[FakePi]]:
    """Build a SessionManager whose spawned processes are FakePi instances."""
    spawned: list[FakePi] = []

    async def _spawn(_cwd: Path, _env: dict[str, str]) -> FakePi:
        pi = FakePi(responses)
        spawned.append(pi)
        return pi

    manager = SessionManager(
        emit or Recorder(),
        make_settings(**settings),
        map_store=SessionMapStore(tmp_path / "session-map.json"),
        spawn=_spawn,
    )
    return manager, spawned


def make_agent(tmp_path: Path, *, responses: dict[str, Any] | None = None) -> tuple[PiAcpAgent, AsyncMock, list[FakePi]]:
    conn = AsyncMock(spec=AgentSideConnection)
    agent = PiAcpAgent(conn, settings=make_settings())
    manager, spawned = make_manager(tmp_path, responses=responses, emit=agent._emit)
    agent.manager = manager
    return agent, conn, spawned


def write_transcript(
    directory: Path,
    session_id: str,
    cwd: str,
    messages: list[tuple[str, str]],
    *,
    timestamp: str = "2025-01-01T00:00:00.000Z",
) -> Path:
    """Write a pi JSONL transcript with one header and the given messages."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{timestamp.replace(':', '-')}_{session_id}.jsonl"
    lines = [json.dumps({"type": "session", "version": 3, "id": session_id, "timestamp": timestamp, "cwd": cwd})]
    for index, (role, text) in enumerate(messages):
        lines.append(
            json.dumps(
                {
                    "type": "message",
                    "id": f"entry-{index}",
                    "timestamp": timestamp,
                    "message": {"role": role, "content": [{"type": "text", "text": text}]},
                }
            )
        )
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path
