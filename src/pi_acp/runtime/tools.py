"""Translate pi tool execution events into ACP tool call updates."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from acp.helpers import text_block, tool_content, tool_diff_content
from acp.schema import ToolCallLocation, ToolCallProgress, ToolCallStart

from pi_acp.log_utils import log_context, log_event
from pi_acp.pi.messages import PiToolResult, ToolExecutionEnd, ToolExecutionStart, ToolExecutionUpdate
from pi_acp.session.state import FileSnapshot, Session, ToolCallInput
from pi_acp.updates import EmitUpdate

logger = logging.getLogger(__name__)

PATH_ARG_KEYS = ("path", "filePath", "file")


def tool_kind(tool_name: str) -> str:
    """Return a tool kind label for a pi tool name."""

    name = tool_name.lower()
    if "read" in name:
        return "read"
    if "edit" in name:
        return "edit"
    if "search" in name:
        return "search"
    if "fetch" in name or "http" in name:
        return "fetch"
    if "delete" in name:
        return "delete"
    if "bash" in name or "exec" in name:
        return "execute"
    return "other"


def summarize_input(tool_name: str, args: Any) -> ToolCallInput:
    if tool_name.lower() == "bash" and isinstance(args, dict) and isinstance(args.get("command"), str):
        command = args["command"]
        return ToolCallInput(summary=f"Command: {command}", command=command)
    if not args:
        return ToolCallInput(summary=tool_name)
    try:
        return ToolCallInput(summary=json.dumps(args, indent=2))
    except (TypeError, ValueError):
        return ToolCallInput(summary=str(args))


def path_from_args(args: Any) -> str | None:
    if not isinstance(args, dict):
        return None
    for key in PATH_ARG_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def build_sections(
    stored: ToolCallInput | None,
    output: str | None = None,
    details: Any = None,
) -> str | None:
    sections: list[str] = []
    if stored is not None and stored.command:
        sections.append(f"Command:\n{stored.command}")
    elif stored is not None and stored.summary:
        sections.append(f"Input:\n{stored.summary}")
    if output:
        sections.append(f"Output:\n{output}")
    if details is not None:
        sections.append(f"Details:\n{json.dumps(details, indent=2, default=str)}")
    if not sections:
        return None
    return "\n\n".join(sections)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        log_event(logger, "tool.file.read_failed", level=logging.DEBUG, path=str(path), error=str(exc))
        return None


class ToolCallTracker:
    """Per-adapter tool call translation; state lives on each `Session`."""

    def __init__(self, emit: EmitUpdate) -> None:
        self._emit = emit

    async def start(self, session: Session, event: ToolExecutionStart) -> None:
        stored = summarize_input(event.tool_name, event.args)
        raw_path = path_from_args(event.args)
        resolved = self._resolve(session, raw_path) if raw_path else None
        if raw_path:
            stored.locations = [str(resolved)]
        session.tool_inputs[event.tool_call_id] = stored

        if resolved is not None:
            old_text = await asyncio.to_thread(_read_text, resolved)
            if old_text is not None:
                session.snapshots[event.tool_call_id] = FileSnapshot(path=resolved, old_text=old_text)

        title = f"{event.tool_name}: {stored.command}" if stored.command else event.tool_name
        with log_context(session_id=session.id, tool_call_id=event.tool_call_id, tool_name=event.tool_name):
            log_event(logger, "tool.call.start", snapshot=event.tool_call_id in session.snapshots)
        await self._emit(
            session.id,
            ToolCallStart(
                session_update="tool_call",
                tool_call_id=event.tool_call_id,
                title=title,
                kind=tool_kind(event.tool_name),
                status="pending",
                raw_input=event.args,
                locations=[ToolCallLocation(path=path) for path in stored.locations] or None,
                content=[tool_content(text_block(stored.summary))] if stored.summary else None,
            ),
        )

    async def update(self, session: Session, event: ToolExecutionUpdate) -> None:
        stored = session.tool_inputs.get(event.tool_call_id)
        output = event.partial_result.text() if event.partial_result else None
        text = build_sections(stored, output)
        await self._emit(
            session.id,
            ToolCallProgress(
                session_update="tool_call_update",
                tool_call_id=event.tool_call_id,
                status="in_progress",
                content=[tool_content(text_block(text))] if text else None,
            ),
        )

    async def end(self, session: Session, event: ToolExecutionEnd) -> None:
        stored = session.tool_inputs.pop(event.tool_call_id, None)
        snapshot = session.snapshots.pop(event.tool_call_id, None)
        result = event.result or PiToolResult()
        text = build_sections(stored, result.text(), result.details)

        content: list[Any] = []
        if text:
            content.append(tool_content(text_block(text)))
        has_diff = False
        if snapshot is not None:
            new_text = await asyncio.to_thread(_read_text, snapshot.path)
            if new_text is not None and new_text != snapshot.old_text:
                content.append(tool_diff_content(str(snapshot.path), new_text, snapshot.old_text))
                has_diff = True

        status = "failed" if event.is_error else "completed"
        with log_context(session_id=session.id, tool_call_id=event.tool_call_id, tool_name=event.tool_name):
            log_event(logger, "tool.call.complete", status=status, diff=has_diff)
        await self._emit(
            session.id,
            ToolCallProgress(
                session_update="tool_call_update",
                tool_call_id=event.tool_call_id,
                status=status,
                content=content or None,
                raw_output=event.result.model_dump(by_alias=True) if event.result is not None else None,
            ),
        )

    @staticmethod
    def _resolve(session: Session, raw_path: str) -> Path:
        path = Path(raw_path).expanduser()
        if not path.is_absolute():
            path = session.cwd / path
        return path
