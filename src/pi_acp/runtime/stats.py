"""Token and cost reporting from `get_session_stats`."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pi_acp.acp_runtime import RuntimeSettings
from pi_acp.errors import PiError
from pi_acp.log_utils import log_event
from pi_acp.session.state import PiModel, Session
from pi_acp.session.transcripts import SessionFileInfo, read_session_info
from pi_acp.updates import EmitUpdate, session_info_update, text_tool_call, text_tool_progress

logger = logging.getLogger(__name__)


def stats_tool_call_id(session_id: str) -> str:
    return f"session_stats:{session_id}"


def _count(label: str, value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return f"{label} {value:,}"


def _tokens(data: dict[str, Any]) -> dict[str, Any]:
    tokens = data.get("tokens")
    return tokens if isinstance(tokens, dict) else {}


def format_stats(data: dict[str, Any], model: PiModel | None = None) -> str:
    tokens = _tokens(data)
    lines = ["Session stats:"]
    total = tokens.get("total")
    if isinstance(total, int):
        context = f" / {model.context_window:,}" if model and model.context_window else ""
        lines.append(f"- Context tokens: {total:,}{context}")
    if model and model.max_tokens:
        lines.append(f"- Max output: {model.max_tokens:,}")
    parts = [
        _count("input", tokens.get("input")),
        _count("output", tokens.get("output")),
        _count("cache read", tokens.get("cacheRead")),
        _count("cache write", tokens.get("cacheWrite")),
        _count("total", total),
    ]
    parts = [part for part in parts if part]
    if parts:
        lines.append(f"- Tokens: {', '.join(parts)}")
    cost = data.get("cost")
    if isinstance(cost, (int, float)):
        lines.append(f"- Cost: ${cost:.4f}")
    return "\n".join(lines)


def format_summary(data: dict[str, Any], context_window: int | None = None) -> str:
    """One-line `Context: used/window (pct%) | Cost: $x` summary."""
    tokens = _tokens(data)
    total = tokens.get("total")
    parts: list[str] = []
    if isinstance(total, int) and context_window:
        pct = round(total / context_window * 100)
        parts.append(f"Context: {total:,}/{context_window:,} ({pct}%)")
    elif isinstance(total, int):
        parts.append(f"Tokens: {total:,}")
    cost = data.get("cost")
    if isinstance(cost, (int, float)):
        parts.append(f"Cost: ${cost:.4f}")
    return " | ".join(parts)


class StatsReporter:
    def __init__(self, emit: EmitUpdate, settings: RuntimeSettings) -> None:
        self._emit = emit
        self._timeout_ms = settings.stats_timeout_ms
        self.tool_calls_enabled = settings.status_tool_calls

    async def _fetch(self, session: Session) -> dict[str, Any] | None:
        try:
            response = await session.pi.request({"type": "get_session_stats"}, self._timeout_ms)
        except PiError as exc:
            log_event(logger, "stats.request_failed", level=logging.WARNING, session_id=session.id, error=str(exc))
            return None
        return response.data_dict()

    async def summary(self, session: Session) -> str | None:
        data = await self._fetch(session)
        if data is None:
            return None
        model = session.current_model
        return format_summary(data, model.context_window if model else None) or None

    async def report(self, session: Session) -> None:
        """Publish full stats plus transcript metadata as a session info update."""
        data = await self._fetch(session)
        if data is None:
            return
        model = session.current_model
        if self.tool_calls_enabled:
            text = format_stats(data, model)
            tool_call_id = stats_tool_call_id(session.id)
            if not session.stats_announced:
                session.stats_announced = True
                await self._emit(session.id, text_tool_call(tool_call_id, "Session stats", text))
            else:
                await self._emit(session.id, text_tool_progress(tool_call_id, text, status="completed"))

        info = await self._session_info(session)
        meta = {
            "tokenStats": {
                "tokens": _tokens(data),
                "contextWindow": model.context_window if model else None,
                "maxTokens": model.max_tokens if model else None,
                "cost": data.get("cost"),
            },
            "messageCount": info.message_count if info else None,
            "sessionFile": info.file_path if info else session.session_file,
        }
        await self._emit(
            session.id,
            session_info_update(
                session.id,
                title=info.title if info else None,
                updated_at=info.updated_at if info else None,
                meta=meta,
            ),
        )

    async def _session_info(self, session: Session) -> SessionFileInfo | None:
        if not session.session_file:
            try:
                response = await session.pi.request({"type": "get_state"}, self._timeout_ms)
            except PiError as exc:
                log_event(logger, "stats.state_failed", level=logging.WARNING, session_id=session.id, error=str(exc))
                return None
            session_file = response.data_dict().get("sessionFile")
            if not isinstance(session_file, str):
                return None
            session.session_file = session_file
        return await asyncio.to_thread(read_session_info, session.session_file)
