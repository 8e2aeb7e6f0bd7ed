"""Builders for outbound ACP `session/update` payloads."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from acp.helpers import text_block, tool_content, update_agent_message, update_agent_thought
from acp.schema import (
    AvailableCommand,
    AvailableCommandsUpdate,
    SessionNotification,
    ToolCallProgress,
    ToolCallStart,
    UserMessageChunk,
)

# Async callable delivering one update for a session, in call order.
EmitUpdate = Callable[[str, Any], Awaitable[None]]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def agent_text(text: str) -> Any:
    return update_agent_message(text_block(text))


def agent_thought(text: str) -> Any:
    return update_agent_thought(text_block(text))


def user_text(text: str) -> UserMessageChunk:
    return UserMessageChunk(session_update="user_message_chunk", content=text_block(text))


def _validated_update(session_id: str, update: dict[str, Any]) -> Any:
    # Variants the SDK types as part of the SessionUpdate union are built from
    # their wire form so field aliases (`_meta`, `updatedAt`) stay exact.
    return SessionNotification.model_validate({"sessionId": session_id, "update": update}).update


def session_info_update(
    session_id: str,
    *,
    title: str | None = None,
    updated_at: str | None = None,
    meta: dict[str, Any] | None = None,
    include_title: bool = False,
) -> Any:
    """Build a `session_info_update`.

    `title` is only sent when given, or explicitly (possibly as null) when
    `include_title` is set.
    """
    payload: dict[str, Any] = {"sessionUpdate": "session_info_update"}
    if title is not None or include_title:
        payload["title"] = title
    if updated_at is not None:
        payload["updatedAt"] = updated_at
    if meta:
        payload["_meta"] = meta
    return _validated_update(session_id, payload)


def config_option_update(session_id: str, config_options: list[dict[str, Any]]) -> Any:
    return _validated_update(
        session_id,
        {"sessionUpdate": "config_option_update", "configOptions": config_options},
    )


def available_commands_update(commands: list[AvailableCommand]) -> AvailableCommandsUpdate:
    return AvailableCommandsUpdate(session_update="available_commands_update", available_commands=commands)


def text_tool_call(
    tool_call_id: str,
    title: str,
    text: str,
    *,
    kind: str = "other",
    status: str = "completed",
) -> ToolCallStart:
    """A self-contained tool call card carrying one text block."""
    return ToolCallStart(
        session_update="tool_call",
        tool_call_id=tool_call_id,
        title=title,
        kind=kind,
        status=status,
        content=[tool_content(text_block(text))],
    )


def text_tool_progress(tool_call_id: str, text: str, *, status: str) -> ToolCallProgress:
    return ToolCallProgress(
        session_update="tool_call_update",
        tool_call_id=tool_call_id,
        status=status,
        content=[tool_content(text_block(text))],
    )
