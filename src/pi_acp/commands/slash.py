"""Slash commands handled by the adapter instead of being sent as prompts.

See: https://agentclientprotocol.com/protocol/slash-commands
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from acp.schema import AvailableCommand, AvailableCommandInput, UnstructuredCommandInput

from pi_acp.commands.format import (
    format_bash_result,
    format_relative_date,
    format_session_stats,
    format_sessions_table,
)
from pi_acp.commands.web import WebFetchError, fetch_text, search_web
from pi_acp.errors import PiError
from pi_acp.log_utils import log_event
from pi_acp.session.config import format_thinking_level, resolve_model_id, thinking_levels_for
from pi_acp.session.state import Session
from pi_acp.session.transcripts import SessionFileInfo, scan_sessions, truncate
from pi_acp.updates import EmitUpdate, agent_text, text_tool_call

logger = logging.getLogger(__name__)

SESSIONS_LIST_LIMIT = 20


@dataclass
class SlashContext:
    session: Session
    emit: EmitUpdate
    refresh_config: Callable[[Session], Awaitable[Any]]
    history_timeout_ms: int

    async def reply(self, text: str) -> None:
        await self.emit(self.session.id, agent_text(text))

    async def request(self, command: dict[str, Any], timeout_ms: int | None = None) -> dict[str, Any]:
        response = await self.session.pi.request(command, timeout_ms)
        return response.data_dict()


SlashHandler = Callable[[SlashContext, str], Awaitable[None]]

SLASH_HANDLERS: dict[str, "SlashCommandDef"] = {}


@dataclass
class SlashCommandDef:
    description: str
    hint: str | None
    handler: SlashHandler


def register_slash_command(
    name: str, description: str, hint: str | None = None
) -> Callable[[SlashHandler], SlashHandler]:
    """Decorator to register a slash command handler."""

    def _decorator(func: SlashHandler) -> SlashHandler:
        SLASH_HANDLERS[name] = SlashCommandDef(description=description, hint=hint, handler=func)
        return func

    return _decorator


def parse_on_off(value: str) -> bool | None:
    normalized = value.strip().lower()
    if normalized == "on":
        return True
    if normalized == "off":
        return False
    return None


def normalize_thinking_level_input(value: str, levels: Sequence[str]) -> str | None:
    mapped = "xhigh" if value in {"extra", "extra-high"} else value
    return mapped if mapped in levels else None


@register_slash_command("compact", "Compact conversation", "optional instructions")
async def _handle_compact(ctx: SlashContext, args: str) -> None:
    command: dict[str, Any] = {"type": "compact"}
    if args:
        command["customInstructions"] = args
    try:
        await ctx.request(command)
    except PiError as exc:
        await ctx.reply(f"Compaction failed: {exc}")
        return
    await ctx.reply("Compaction complete.")


async def _toggle(ctx: SlashContext, args: str, *, usage: str, request_type: str, label: str) -> None:
    enabled = parse_on_off(args)
    if enabled is None:
        await ctx.reply(f"Usage: {usage}")
        return
    try:
        await ctx.request({"type": request_type, "enabled": enabled})
    except PiError as exc:
        await ctx.reply(f"{label} failed: {exc}")
        return
    await ctx.reply(f"{label} {'enabled' if enabled else 'disabled'}.")


@register_slash_command("autocompact", "Toggle auto compaction (on|off)")
async def _handle_autocompact(ctx: SlashContext, args: str) -> None:
    await _toggle(ctx, args, usage="/autocompact on|off", request_type="set_auto_compaction", label="Auto compaction")


@register_slash_command("autoretry", "Toggle auto retry (on|off)")
async def _handle_autoretry(ctx: SlashContext, args: str) -> None:
    await _toggle(ctx, args, usage="/autoretry on|off", request_type="set_auto_retry", label="Auto retry")


@register_slash_command("export", "Export session to HTML")
async def _handle_export(ctx: SlashContext, _args: str) -> None:
    try:
        data = await ctx.request({"type": "export_html"})
    except PiError as exc:
        await ctx.reply(f"Export failed: {exc}")
        return
    await ctx.reply(f"Exported session to {data.get('path') or '(unknown path)'}.")


@register_slash_command("session", "Show session stats")
async def _handle_session(ctx: SlashContext, _args: str) -> None:
    try:
        data = await ctx.request({"type": "get_session_stats"})
    except PiError as exc:
        await ctx.reply(f"Session stats failed: {exc}")
        return
    await ctx.reply(format_session_stats(data))


@register_slash_command("model", "Switch model", "provider:model-id")
async def _handle_model(ctx: SlashContext, args: str) -> None:
    if not args:
        await ctx.reply("Usage: /model <provider>:<model-id>")
        return
    model = resolve_model_id(ctx.session, args)
    if model is None:
        await ctx.reply(f"Unknown model: {args}")
        return
    try:
        await ctx.request({"type": "set_model", "provider": model.provider, "modelId": model.id})
    except PiError as exc:
        await ctx.reply(str(exc) or "Failed to set model.")
        return
    await ctx.refresh_config(ctx.session)
    await ctx.reply(f"Model set to {model.provider}/{model.id}.")


@register_slash_command("thinking", "Set or cycle thinking level", "level (off|minimal|low|medium|high|xhigh) or cycle")
async def _handle_thinking(ctx: SlashContext, args: str) -> None:
    model = ctx.session.current_model
    if model is None or not model.reasoning:
        await ctx.reply("Thinking levels are not available for the current model.")
        return
    levels = thinking_levels_for(model)
    normalized = args.lower()
    if not normalized or normalized in {"cycle", "next"}:
        try:
            await ctx.request({"type": "cycle_thinking_level"})
        except PiError as exc:
            await ctx.reply(str(exc) or "Failed to cycle thinking level.")
            return
        await ctx.refresh_config(ctx.session)
        level = ctx.session.thinking_level
        await ctx.reply(f"Thinking level set to {format_thinking_level(level) if level else '(unknown)'}.")
        return
    level = normalize_thinking_level_input(normalized, levels)
    if level is None:
        await ctx.reply(f"Usage: /thinking <{'|'.join(levels)}|cycle>")
        return
    try:
        await ctx.request({"type": "set_thinking_level", "level": level})
    except PiError as exc:
        await ctx.reply(str(exc) or "Failed to set thinking level.")
        return
    await ctx.refresh_config(ctx.session)
    await ctx.reply(f"Thinking level set to {format_thinking_level(level)}.")


@register_slash_command("cycle-model", "Cycle to the next model")
async def _handle_cycle_model(ctx: SlashContext, _args: str) -> None:
    try:
        data = await ctx.request({"type": "cycle_model"})
    except PiError as exc:
        await ctx.reply(str(exc) or "Failed to cycle model.")
        return
    model = data.get("model") if isinstance(data.get("model"), dict) else {}
    if model.get("provider") and model.get("id"):
        label = f"{model['provider']}/{model['id']}"
    else:
        label = "(unknown model)"
    await ctx.refresh_config(ctx.session)
    await ctx.reply(f"Model set to {label}.")


@register_slash_command("bash", "Run a shell command", "command")
async def _handle_bash(ctx: SlashContext, args: str) -> None:
    if not args:
        await ctx.reply("Usage: /bash <command>")
        return
    try:
        data = await ctx.request({"type": "bash", "command": args}, ctx.history_timeout_ms)
    except PiError as exc:
        await ctx.reply(str(exc) or "Bash command failed.")
        return
    await ctx.reply(format_bash_result(data))


@register_slash_command("steer", "Send a steering message", "message")
async def _handle_steer(ctx: SlashContext, args: str) -> None:
    if not args:
        await ctx.reply("Usage: /steer <message>")
        return
    try:
        await ctx.request({"type": "steer", "message": args})
    except PiError as exc:
        await ctx.reply(f"Steer failed: {exc}")
        return
    await ctx.reply("Steering message queued.")


@register_slash_command("queue", "Queue a follow-up message", "message")
async def _handle_queue(ctx: SlashContext, args: str) -> None:
    if not args:
        await ctx.reply("Usage: /queue <message>")
        return
    try:
        await ctx.request({"type": "follow_up", "message": args})
    except PiError as exc:
        await ctx.reply(f"Queue failed: {exc}")
        return
    await ctx.reply("Follow-up message queued.")


@register_slash_command("last", "Show last assistant message")
async def _handle_last(ctx: SlashContext, _args: str) -> None:
    try:
        data = await ctx.request({"type": "get_last_assistant_text"})
    except PiError as exc:
        await ctx.reply(str(exc) or "Failed to fetch last message.")
        return
    text = data.get("text")
    await ctx.reply(text if isinstance(text, str) and text else "(no assistant message yet)")


@register_slash_command("fork", "Fork from a message", "entryId (optional)")
async def _handle_fork(ctx: SlashContext, args: str) -> None:
    entry_id = args
    try:
        if not entry_id:
            messages = (await ctx.request({"type": "get_fork_messages"})).get("messages")
            if not isinstance(messages, list) or not messages:
                await ctx.reply("No user messages available to fork from.")
                return
            entry_id = messages[-1].get("entryId") if isinstance(messages[-1], dict) else None
            if not entry_id:
                await ctx.reply("No user messages available to fork from.")
                return
        data = await ctx.request({"type": "fork", "entryId": entry_id})
    except PiError as exc:
        await ctx.reply(str(exc) or "Failed to fork session.")
        return
    await ctx.refresh_config(ctx.session)
    if data.get("cancelled"):
        await ctx.reply("Fork cancelled.")
        return
    source = data.get("text") if isinstance(data.get("text"), str) else ""
    snippet = " ".join(source.split())
    if len(snippet) > 160:
        snippet = snippet[:160] + "…"
    suffix = f"\nFrom: {snippet}" if snippet else ""
    await ctx.reply(f"Forked session.{suffix}")


@register_slash_command("new", "Start a fresh session")
async def _handle_new(ctx: SlashContext, _args: str) -> None:
    try:
        data = await ctx.request({"type": "new_session"})
    except PiError as exc:
        await ctx.reply(str(exc) or "Failed to start new session.")
        return
    await ctx.refresh_config(ctx.session)
    await ctx.reply("New session cancelled." if data.get("cancelled") else "New session started.")


async def _web_tool(ctx: SlashContext, kind: str, text: str, status: str) -> None:
    tool_call_id = f"{kind}:{uuid.uuid4()}"
    await ctx.emit(ctx.session.id, text_tool_call(tool_call_id, kind, text, kind=kind, status=status))


@register_slash_command("fetch", "Fetch a URL", "url")
async def _handle_fetch(ctx: SlashContext, args: str) -> None:
    if not args:
        await ctx.reply("Usage: /fetch <url>")
        return
    try:
        result = await fetch_text(args)
    except WebFetchError as exc:
        log_event(logger, "slash.fetch.failed", level=logging.WARNING, url=args, error=str(exc))
        await _web_tool(ctx, "fetch", f"Fetch failed: {exc}", "failed")
        return
    text = f"{result.text}\n\n(truncated)" if result.truncated else result.text
    await _web_tool(ctx, "fetch", text, "completed")


@register_slash_command("search", "Search the web", "query")
async def _handle_search(ctx: SlashContext, args: str) -> None:
    if not args:
        await ctx.reply("Usage: /search <query>")
        return
    try:
        results = await search_web(args)
    except WebFetchError as exc:
        log_event(logger, "slash.search.failed", level=logging.WARNING, error=str(exc))
        await _web_tool(ctx, "search", f"Search failed: {exc}", "failed")
        return
    await _web_tool(ctx, "search", results, "completed")


@register_slash_command("sessions", "List recent sessions")
async def _handle_sessions(ctx: SlashContext, _args: str) -> None:
    sessions = (await asyncio.to_thread(scan_sessions))[:SESSIONS_LIST_LIMIT]
    if not sessions:
        await ctx.reply("No sessions found.")
        return
    await ctx.reply(format_sessions_table(sessions))


def _find_session(sessions: list[SessionFileInfo], token: str) -> SessionFileInfo | None:
    if token.isdigit() and 1 <= int(token) <= len(sessions):
        return sessions[int(token) - 1]
    for info in sessions:
        if info.session_id.startswith(token):
            return info
    return None


@register_slash_command("load", "Load a previous session", "number or id prefix")
async def _handle_load(ctx: SlashContext, args: str) -> None:
    token = args.strip()
    if not token:
        await ctx.reply("Usage: `/load <number>`\n\nUse `/sessions` to see available sessions.")
        return
    target = _find_session(await asyncio.to_thread(scan_sessions), token)
    if target is None:
        await ctx.reply(f"Session not found: `{token}`\n\nUse `/sessions` to see available sessions.")
        return
    short_id = target.session_id[:8]
    await ctx.reply(f"Loading session: `{short_id}`…\n")
    try:
        await ctx.request({"type": "switch_session", "sessionPath": target.file_path}, ctx.history_timeout_ms)
    except PiError as exc:
        await ctx.reply(f"Failed to load session: {exc}")
        return
    ctx.session.session_file = target.file_path
    await ctx.refresh_config(ctx.session)
    title = truncate((target.title or "").strip() or "(no title)", 80)
    await ctx.reply(
        "\n".join(
            [
                f"✓ Loaded session: `{short_id}`",
                f"Title: {title}",
                f"Updated: {format_relative_date(target.updated_at)}",
                f"Messages: {target.message_count}",
            ]
        )
    )


def parse_slash_command(prompt: Sequence[Any]) -> tuple[str, str] | None:
    """Return `(name, args)` when the first text block starts with `/`."""
    for block in prompt:
        if getattr(block, "type", None) != "text":
            continue
        trimmed = (getattr(block, "text", "") or "").strip()
        if not trimmed.startswith("/"):
            return None
        parts = trimmed[1:].split(maxsplit=1)
        if not parts:
            return None
        args = parts[1].strip() if len(parts) > 1 else ""
        return parts[0].lower(), args
    return None


async def handle_slash_command(ctx: SlashContext, prompt: Sequence[Any]) -> bool:
    """Run a registered command; False means the prompt goes to pi unchanged."""
    parsed = parse_slash_command(prompt)
    if parsed is None:
        return False
    name, args = parsed
    entry = SLASH_HANDLERS.get(name)
    if entry is None:
        return False
    log_event(logger, "slash.command", session_id=ctx.session.id, command=name)
    await entry.handler(ctx, args)
    return True


def available_slash_commands() -> list[AvailableCommand]:
    """Build ACP AvailableCommand entries from registered slash commands."""
    commands: list[AvailableCommand] = []
    for name, entry in SLASH_HANDLERS.items():
        commands.append(
            AvailableCommand(
                name=name,
                description=entry.description,
                input=AvailableCommandInput(root=UnstructuredCommandInput(hint=entry.hint)) if entry.hint else None,
            )
        )
    return commands
