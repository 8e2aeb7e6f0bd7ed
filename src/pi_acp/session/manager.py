"""Live session directory: one pi subprocess per ACP session."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from acp.schema import SessionModelState

from pi_acp.acp_runtime import RuntimeSettings
from pi_acp.commands.slash import available_slash_commands
from pi_acp.errors import (
    PiAcpError,
    PiError,
    PromptInProgressError,
    UnknownConfigOptionError,
    UnknownModelError,
    UnknownSessionError,
)
from pi_acp.log_utils import log_context, log_event
from pi_acp.paths import session_map_path
from pi_acp.pi.process import PiProcess
from pi_acp.runtime.heartbeat import Heartbeat
from pi_acp.runtime.router import SessionRuntime, build_prompt
from pi_acp.session.config import refresh_session_config, resolve_model_id
from pi_acp.session.map_store import SessionMapStore
from pi_acp.session.state import PiClient, Session
from pi_acp.session.transcripts import (
    SessionFileInfo,
    create_forked_session_file,
    normalize_title,
    read_session_info,
    scan_sessions,
)
from pi_acp.updates import (
    EmitUpdate,
    available_commands_update,
    config_option_update,
    now_iso,
    session_info_update,
)

logger = logging.getLogger(__name__)

MCP_SERVERS_ENV = "PI_ACP_MCP_SERVERS"

SpawnPi = Callable[[Path, dict[str, str]], Awaitable[PiClient]]

_TOGGLE_COMMANDS = {"auto_compaction": "set_auto_compaction", "auto_retry": "set_auto_retry"}
_MODE_COMMANDS = {"steering_mode": "set_steering_mode", "follow_up_mode": "set_follow_up_mode"}


def mcp_servers_payload(mcp_servers: Sequence[Any]) -> list[Any]:
    payload: list[Any] = []
    for server in mcp_servers:
        if hasattr(server, "model_dump"):
            payload.append(server.model_dump(mode="json", by_alias=True, exclude_none=True))
        else:
            payload.append(server)
    return payload


def build_mcp_env(mcp_servers: Sequence[Any]) -> dict[str, str]:
    if not mcp_servers:
        return {}
    return {MCP_SERVERS_ENV: json.dumps(mcp_servers_payload(mcp_servers))}


def infer_title(prompt: Sequence[Any]) -> str | None:
    """Title from the first non-empty text block or embedded text resource."""
    for block in prompt:
        kind = getattr(block, "type", None)
        if kind == "text":
            text = (getattr(block, "text", "") or "").strip()
        elif kind == "resource":
            text = (getattr(getattr(block, "resource", None), "text", "") or "").strip()
        else:
            continue
        if text:
            return normalize_title(text)
    return None


class SessionManager:
    """Creates, restores and drives sessions.

    `spawn` starts a pi process for a cwd and extra environment; tests
    substitute an in-memory fake.
    """

    def __init__(
        self,
        emit: EmitUpdate,
        settings: RuntimeSettings,
        *,
        map_store: SessionMapStore | None = None,
        spawn: SpawnPi | None = None,
    ) -> None:
        self._emit = emit
        self._settings = settings
        self.map_store = map_store or SessionMapStore(session_map_path())
        self._spawn = spawn or self._spawn_process
        self.sessions: dict[str, Session] = {}
        self.runtime = SessionRuntime(emit, settings, self.refresh_and_broadcast)

    async def _spawn_process(self, cwd: Path, env: dict[str, str]) -> PiClient:
        return await PiProcess.spawn(
            cwd,
            argv=self._settings.pi_argv,
            env=env,
            limit=self._settings.stdio_buffer_limit,
            request_timeout_ms=self._settings.request_timeout_ms,
        )

    def get(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def create(self, cwd: str, mcp_servers: Sequence[Any] | None = None) -> tuple[Session, SessionModelState | None]:
        session = await self._start(str(uuid.uuid4()), cwd, mcp_servers or [])
        await self._capture_session_file(session)
        models = await refresh_session_config(session)
        self._queue_init_updates(session)
        return session, models

    async def load(
        self, session_id: str, cwd: str, mcp_servers: Sequence[Any] | None = None
    ) -> tuple[Session, SessionModelState | None]:
        path = await self._resolve_session_path(session_id)
        session = await self._open_transcript(session_id, cwd, path, mcp_servers or [])
        models = await refresh_session_config(session)
        self._queue_init_updates(session)
        self.runtime.spawn_background(self.runtime.replay_history(session), name=f"replay:{session.id}")
        return session, models

    async def resume(
        self, session_id: str, cwd: str, mcp_servers: Sequence[Any] | None = None
    ) -> tuple[Session, SessionModelState | None]:
        path = await self._resolve_session_path(session_id)
        session = await self._open_transcript(session_id, cwd, path, mcp_servers or [])
        models = await refresh_session_config(session)
        self._queue_init_updates(session)
        return session, models

    async def fork(
        self, source_session_id: str, cwd: str, mcp_servers: Sequence[Any] | None = None
    ) -> tuple[Session, SessionModelState | None]:
        source_path = await self._resolve_session_path(source_session_id)
        try:
            new_id, new_path = await asyncio.to_thread(create_forked_session_file, source_path, cwd)
        except (OSError, ValueError) as exc:
            raise PiAcpError(f"Cannot fork session {source_session_id}: {exc}") from exc
        self.map_store.set(new_id, str(new_path))
        log_event(logger, "session.forked", source=source_session_id, session_id=new_id)
        session = await self._open_transcript(new_id, cwd, str(new_path), mcp_servers or [])
        models = await refresh_session_config(session)
        self._queue_init_updates(session)
        self.runtime.spawn_background(self.runtime.replay_history(session), name=f"replay:{session.id}")
        return session, models

    async def list_sessions(self, cwd: str | None = None) -> list[SessionFileInfo]:
        sessions = await asyncio.to_thread(scan_sessions, cwd)
        if sessions:
            self.map_store.merge({info.session_id: info.file_path for info in sessions})
        return sessions

    async def shutdown(self) -> None:
        sessions = list(self.sessions.values())
        self.sessions.clear()
        await self.runtime.shutdown()
        if sessions:
            await asyncio.gather(*(session.pi.stop() for session in sessions), return_exceptions=True)
        log_event(logger, "sessions.shutdown", count=len(sessions))

    async def _start(self, session_id: str, cwd: str, mcp_servers: Sequence[Any]) -> Session:
        previous = self.sessions.pop(session_id, None)
        if previous is not None:
            await previous.pi.stop()
        pi = await self._spawn(Path(cwd), build_mcp_env(mcp_servers))
        session = Session(id=session_id, cwd=Path(cwd), pi=pi, mcp_servers=list(mcp_servers))
        self.runtime.attach(session)

        async def _on_error(error: Exception) -> None:
            await self._handle_process_error(session, error)

        pi.on_error(_on_error)
        self.sessions[session_id] = session
        with log_context(session_id=session_id):
            log_event(logger, "session.started", cwd=cwd, mcp_servers=len(mcp_servers))
        return session

    async def _handle_process_error(self, session: Session, error: Exception) -> None:
        with log_context(session_id=session.id):
            log_event(logger, "session.process_error", level=logging.ERROR, error=str(error))
        session.fail(error)
        if session.pi.exited and self.sessions.get(session.id) is session:
            del self.sessions[session.id]
        await self.runtime.status.update(session, "error", str(error))

    async def _open_transcript(self, session_id: str, cwd: str, path: str, mcp_servers: Sequence[Any]) -> Session:
        session = await self._start(session_id, cwd, mcp_servers)
        session.session_file = path
        self.map_store.set(session_id, path)
        try:
            await session.pi.request({"type": "switch_session", "sessionPath": path}, self._settings.history_timeout_ms)
        except PiError:
            if self.sessions.get(session_id) is session:
                del self.sessions[session_id]
            await session.pi.stop()
            raise
        return session

    async def _resolve_session_path(self, session_id: str) -> str:
        """Live sessions first, then the persisted map, then a directory scan."""
        live = self.sessions.get(session_id)
        if live is not None and live.session_file:
            return live.session_file
        mapped = self.map_store.get(session_id)
        if mapped:
            return mapped
        found = {info.session_id: info.file_path for info in await asyncio.to_thread(scan_sessions)}
        if found:
            self.map_store.merge(found)
        path = found.get(session_id)
        if path is None:
            raise UnknownSessionError(session_id)
        return path

    async def _capture_session_file(self, session: Session) -> None:
        try:
            response = await session.pi.request({"type": "get_state"})
        except PiError as exc:
            log_event(logger, "session.file_capture_failed", level=logging.WARNING, session_id=session.id, error=str(exc))
            return
        session_file = response.data_dict().get("sessionFile")
        if isinstance(session_file, str):
            session.session_file = session_file
            self.map_store.set(session.id, session_file)

    def _queue_init_updates(self, session: Session) -> None:
        # Deferred so the client sees the session response before its updates.
        asyncio.get_running_loop().call_soon(self._start_init_updates, session)

    def _start_init_updates(self, session: Session) -> None:
        if self.sessions.get(session.id) is not session:
            return
        self.runtime.spawn_background(self._send_init_updates(session), name=f"init:{session.id}")

    async def _send_init_updates(self, session: Session) -> None:
        await self._emit(session.id, available_commands_update(available_slash_commands()))
        await self._emit(session.id, config_option_update(session.id, session.config_options))
        await self._emit(
            session.id,
            session_info_update(session.id, title=session.title, updated_at=now_iso(), include_title=True),
        )
        if session.mcp_servers:
            await self._emit(
                session.id,
                session_info_update(session.id, meta={"mcpServers": mcp_servers_payload(session.mcp_servers)}),
            )
        if not session.session_file:
            return
        info = await asyncio.to_thread(read_session_info, session.session_file)
        if info is None:
            return
        if session.title is None:
            session.title = info.title
        await self._emit(
            session.id,
            session_info_update(
                session.id,
                title=info.title,
                updated_at=info.updated_at,
                include_title=True,
                meta={"messageCount": info.message_count, "sessionFile": info.file_path},
            ),
        )

    # ------------------------------------------------------------------ #
    # Prompting
    # ------------------------------------------------------------------ #

    async def prompt(self, session_id: str, prompt: Sequence[Any]) -> str:
        """Send a prompt and wait for its stop reason.

        Raises PromptInProgressError while another prompt is pending, and the
        process error when pi exits before the prompt settles.
        """
        session = self.get(session_id)
        if session.pending is not None:
            raise PromptInProgressError()
        if await self.runtime.handle_slash_command(session, prompt):
            return "end_turn"

        message, images = build_prompt(prompt)
        title = session.title or infer_title(prompt)
        if title and title != session.title:
            session.title = title
            await self._emit(session.id, session_info_update(session.id, title=title, updated_at=now_iso()))

        pending = session.begin_prompt()
        await self.runtime.begin_prompt(session)
        command: dict[str, Any] = {"type": "prompt", "message": message}
        if images:
            command["images"] = images

        heartbeat = Heartbeat(self._emit, session.id, self._settings.heartbeat_interval_s)
        heartbeat.start()
        try:
            await session.pi.send(command)
            pending.mark_sent()
            stop_reason = await pending.wait()
        finally:
            await heartbeat.stop()
            if session.pending is pending:
                session.pending = None
        with log_context(session_id=session.id):
            log_event(logger, "prompt.done", stop_reason=stop_reason, heartbeats=heartbeat.beats)
        return stop_reason

    async def cancel(self, session_id: str) -> None:
        """Abort the running prompt without waiting for pi to acknowledge."""
        session = self.sessions.get(session_id)
        if session is None:
            log_event(logger, "session.cancel_unknown", level=logging.DEBUG, session_id=session_id)
            return
        settled = session.settle("cancelled")
        log_event(logger, "session.cancelled", session_id=session_id, settled=settled)
        try:
            await session.pi.send({"type": "abort"})
        except PiError as exc:
            log_event(logger, "session.abort_failed", level=logging.WARNING, session_id=session_id, error=str(exc))
        await self.runtime.cancel_prompt(session)

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #

    async def refresh_and_broadcast(self, session: Session) -> SessionModelState | None:
        models = await refresh_session_config(session)
        await self._emit(session.id, config_option_update(session.id, session.config_options))
        return models

    async def set_model(self, session_id: str, model_id: str) -> SessionModelState | None:
        session = self.get(session_id)
        model = resolve_model_id(session, model_id)
        if model is None:
            raise UnknownModelError(model_id)
        await session.pi.request({"type": "set_model", "provider": model.provider, "modelId": model.id})
        log_event(logger, "session.model_set", session_id=session_id, model=model.key)
        return await self.refresh_and_broadcast(session)

    async def set_config_option(self, session_id: str, config_id: str, value: Any) -> list[dict[str, Any]]:
        """Apply one config option through pi, then re-read and re-broadcast all options."""
        session = self.get(session_id)
        if config_id in {"thinking_level", "reasoning_effort"}:
            command: dict[str, Any] = {"type": "set_thinking_level", "level": value}
        elif config_id in _MODE_COMMANDS:
            command = {"type": _MODE_COMMANDS[config_id], "mode": value}
        elif config_id in _TOGGLE_COMMANDS:
            command = {"type": _TOGGLE_COMMANDS[config_id], "enabled": value is True or value == "on"}
        elif config_id == "model":
            await self.set_model(session_id, str(value))
            return session.config_options
        else:
            raise UnknownConfigOptionError(config_id)
        await session.pi.request(command)
        log_event(logger, "session.config_set", session_id=session_id, config_id=config_id, value=value)
        await self.refresh_and_broadcast(session)
        return session.config_options
