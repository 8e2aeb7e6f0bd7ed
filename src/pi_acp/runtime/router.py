"""Per-line routing of pi output into ACP session updates.

Every line a session's pi process writes is handed to `SessionRuntime.handle_line`
by the process's single reader task, so handlers run strictly in arrival
order. Handlers that need a pi round trip (`agent_end`, stats reporting) run
as background tasks: the reader must stay free to deliver their responses.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Sequence

from pi_acp.acp_runtime import RuntimeSettings
from pi_acp.commands.slash import SlashContext, handle_slash_command
from pi_acp.errors import PiError
from pi_acp.log_utils import log_context, log_event
from pi_acp.pi.messages import (
    AgentEnd,
    AgentStart,
    AutoCompactionEnd,
    AutoCompactionStart,
    AutoRetryEnd,
    AutoRetryStart,
    ExtensionError,
    MessageUpdate,
    PiEvent,
    PiResponse,
    ToolExecutionEnd,
    ToolExecutionStart,
    ToolExecutionUpdate,
    TurnEnd,
)
from pi_acp.runtime.stats import StatsReporter
from pi_acp.runtime.status import StatusReporter
from pi_acp.runtime.tools import ToolCallTracker
from pi_acp.session.state import PendingPrompt, Session
from pi_acp.updates import EmitUpdate, agent_text, agent_thought, user_text

logger = logging.getLogger(__name__)

STOP_REASON_MAP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "aborted": "cancelled",
    "toolUse": "end_turn",
}


def map_stop_reason(reason: str | None) -> str:
    """Map a pi stop reason onto an ACP stop reason (`end_turn` by default)."""
    if reason is None:
        return "end_turn"
    return STOP_REASON_MAP.get(reason, "end_turn")


def _field(block: Any, name: str, default: Any = None) -> Any:
    if isinstance(block, dict):
        return block.get(name, default)
    return getattr(block, name, default)


def build_prompt(prompt: Sequence[Any]) -> tuple[str, list[dict[str, Any]]]:
    """Flatten ACP content blocks into pi's `(message, images)` prompt shape."""
    parts: list[str] = []
    images: list[dict[str, Any]] = []
    for block in prompt:
        kind = _field(block, "type")
        if kind == "text":
            parts.append(_field(block, "text", "") or "")
        elif kind == "resource":
            resource = _field(block, "resource")
            uri = _field(resource, "uri", "") or ""
            text = _field(resource, "text", "") or ""
            parts.append(f"\n[resource:{uri}]\n{text}")
        elif kind == "resource_link":
            parts.append(f"\n[resource_link:{_field(block, 'uri', '')}] {_field(block, 'name', '')}")
        elif kind == "image":
            images.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "mediaType": _field(block, "mime_type") or _field(block, "mimeType"),
                        "data": _field(block, "data"),
                    },
                }
            )
    return "\n".join(part for part in parts if part), images


def _message_texts(content: Any) -> list[str]:
    if isinstance(content, str):
        return [content] if content else []
    if not isinstance(content, list):
        return []
    return [
        item["text"]
        for item in content
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str) and item["text"]
    ]


class SessionRuntime:
    def __init__(
        self,
        emit: EmitUpdate,
        settings: RuntimeSettings,
        refresh_config: Callable[[Session], Awaitable[Any]],
    ) -> None:
        self._emit = emit
        self._settings = settings
        self._refresh_config = refresh_config
        self.tools = ToolCallTracker(emit)
        self.status = StatusReporter(emit, enabled=settings.status_tool_calls)
        self.stats = StatsReporter(emit, settings)
        self._background: set[asyncio.Task[Any]] = set()
        self._handlers: dict[str, Callable[[Session, Any], Awaitable[None]]] = {
            "message_update": self._on_message_update,
            "tool_execution_start": self._on_tool_start,
            "tool_execution_update": self._on_tool_update,
            "tool_execution_end": self._on_tool_end,
            "turn_end": self._on_turn_end,
            "agent_start": self._on_agent_start,
            "agent_end": self._on_agent_end,
            "auto_compaction_start": self._on_compaction_start,
            "auto_compaction_end": self._on_compaction_end,
            "auto_retry_start": self._on_retry_start,
            "auto_retry_end": self._on_retry_end,
            "extension_error": self._on_extension_error,
        }

    def attach(self, session: Session) -> None:
        """Route every line from the session's pi process through this runtime."""

        async def _listener(line: PiResponse | PiEvent) -> None:
            await self.handle_line(session, line)

        session.pi.on_line(_listener)

    async def handle_line(self, session: Session, line: PiResponse | PiEvent) -> None:
        if isinstance(line, PiResponse):
            if not line.success:
                log_event(
                    logger,
                    "pi.response.error",
                    level=logging.WARNING,
                    session_id=session.id,
                    command=line.command,
                    error=line.error,
                )
            return
        handler = self._handlers.get(line.type)
        if handler is None:
            log_event(logger, "pi.event", level=logging.DEBUG, session_id=session.id, type=line.type)
            return
        await handler(session, line)

    async def begin_prompt(self, session: Session) -> None:
        await self.status.update(session, "running", "Prompt sent")

    async def cancel_prompt(self, session: Session) -> None:
        await self.status.update(session, "cancelled", "Prompt cancelled")

    async def handle_slash_command(self, session: Session, prompt: Sequence[Any]) -> bool:
        ctx = SlashContext(
            session=session,
            emit=self._emit,
            refresh_config=self._refresh_config,
            history_timeout_ms=self._settings.history_timeout_ms,
        )
        return await handle_slash_command(ctx, prompt)

    async def replay_history(self, session: Session) -> None:
        """Re-emit the transcript so a newly attached client can render it."""
        try:
            response = await session.pi.request({"type": "get_messages"}, self._settings.history_timeout_ms)
        except PiError as exc:
            log_event(logger, "history.replay_failed", level=logging.WARNING, session_id=session.id, error=str(exc))
            return
        messages = response.data_dict().get("messages")
        if not isinstance(messages, list):
            return
        replayed = 0
        for message in messages:
            if not isinstance(message, dict):
                continue
            build = user_text if message.get("role") == "user" else agent_text
            for text in _message_texts(message.get("content")):
                await self._emit(session.id, build(text))
                replayed += 1
        log_event(logger, "history.replayed", session_id=session.id, messages=len(messages), chunks=replayed)

    def spawn_background(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_event(logger, "runtime.background_failed", level=logging.ERROR, task=task.get_name(), error=str(exc))

    async def shutdown(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _on_message_update(self, session: Session, event: MessageUpdate) -> None:
        inner = event.assistant_message_event
        if not isinstance(inner, dict):
            return
        delta = inner.get("delta")
        if not isinstance(delta, str) or not delta:
            return
        if inner.get("type") == "text_delta":
            await self._emit(session.id, agent_text(delta))
        elif inner.get("type") == "thinking_delta":
            await self._emit(session.id, agent_thought(delta))

    async def _on_tool_start(self, session: Session, event: ToolExecutionStart) -> None:
        command = event.args.get("command") if isinstance(event.args, dict) else None
        if event.tool_name.lower() == "bash" and isinstance(command, str):
            detail = f"Running bash: {command}"
        else:
            detail = f"Running tool: {event.tool_name}"
        await self.status.update(session, "running", detail)
        await self.tools.start(session, event)

    async def _on_tool_update(self, session: Session, event: ToolExecutionUpdate) -> None:
        await self.tools.update(session, event)

    async def _on_tool_end(self, session: Session, event: ToolExecutionEnd) -> None:
        await self.tools.end(session, event)
        await self.status.update(session, "running", f"Completed tool: {event.tool_name}")

    async def _on_turn_end(self, session: Session, event: TurnEnd) -> None:
        # A prompt may span several turns; only agent_end settles it.
        await self.status.update(session, "running", f"Turn finished ({map_stop_reason(event.stop_reason)})")
        self.spawn_background(self.stats.report(session), name=f"stats:{session.id}")

    async def _on_agent_start(self, session: Session, event: AgentStart) -> None:
        prompt = session.bind_run()
        log_event(
            logger,
            "pi.run.start",
            level=logging.DEBUG,
            session_id=session.id,
            prompt=prompt.token if prompt else None,
        )

    async def _on_agent_end(self, session: Session, event: AgentEnd) -> None:
        # Capture before yielding: a new prompt may bind the next run meanwhile.
        prompt = session.take_run()
        if prompt is None or prompt.done:
            log_event(
                logger,
                "pi.run.stale_end",
                session_id=session.id,
                prompt=prompt.token if prompt else None,
                stop_reason=event.last_stop_reason(),
            )
            return
        self.spawn_background(self._finish_prompt(session, prompt, event), name=f"agent_end:{session.id}")

    async def _finish_prompt(self, session: Session, prompt: PendingPrompt, event: AgentEnd) -> None:
        summary = await self.stats.summary(session)
        if summary and not prompt.done:
            await self._emit(session.id, agent_text(f"\n\n---\n{summary}"))
        stop_reason = map_stop_reason(event.last_stop_reason())
        settled = session.settle_prompt(prompt, stop_reason)
        with log_context(session_id=session.id):
            log_event(logger, "prompt.finished", prompt=prompt.token, stop_reason=stop_reason, settled=settled)
        if not settled:
            return
        await self.status.update(session, "idle", "Agent finished")
        await self.stats.report(session)

    async def _on_compaction_start(self, session: Session, event: AutoCompactionStart) -> None:
        await self.status.update(session, "running", f"Auto compaction ({event.reason})")

    async def _on_compaction_end(self, session: Session, event: AutoCompactionEnd) -> None:
        detail = "Auto compaction aborted" if event.aborted else "Auto compaction complete"
        await self.status.update(session, "running", detail)

    async def _on_retry_start(self, session: Session, event: AutoRetryStart) -> None:
        suffix = f": {event.error_message}" if event.error_message else ""
        await self.status.update(session, "running", f"Auto retry {event.attempt}/{event.max_attempts}{suffix}")

    async def _on_retry_end(self, session: Session, event: AutoRetryEnd) -> None:
        if event.success:
            await self.status.update(session, "running", "Auto retry succeeded")
            return
        detail = f"Auto retry failed: {event.final_error}" if event.final_error else "Auto retry failed"
        await self.status.update(session, "error", detail)

    async def _on_extension_error(self, session: Session, event: ExtensionError) -> None:
        log_event(
            logger,
            "pi.extension_error",
            level=logging.WARNING,
            session_id=session.id,
            extension=event.extension_path,
            pi_event=event.event,
            error=event.error,
        )
