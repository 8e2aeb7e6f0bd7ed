"""Text formatting for slash command replies."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pi_acp.session.transcripts import SessionFileInfo, truncate


def _count(label: str, value: Any, *, grouped: bool = False) -> str | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return f"{label} {value:,}" if grouped else f"{label} {value}"


def _section(lines: list[str], label: str, parts: list[str | None]) -> None:
    present = [part for part in parts if part]
    if present:
        lines.append(f"- {label}: {', '.join(present)}")


def format_session_stats(data: dict[str, Any]) -> str:
    lines = ["Session stats:"]
    if data.get("sessionId"):
        lines.append(f"- ID: {data['sessionId']}")
    if data.get("sessionFile"):
        lines.append(f"- File: {data['sessionFile']}")
    _section(
        lines,
        "Messages",
        [
            _count("user", data.get("userMessages")),
            _count("assistant", data.get("assistantMessages")),
            _count("total", data.get("totalMessages")),
        ],
    )
    _section(lines, "Tools", [_count("calls", data.get("toolCalls")), _count("results", data.get("toolResults"))])
    tokens = data.get("tokens")
    if isinstance(tokens, dict):
        _section(
            lines,
            "Tokens",
            [
                _count("input", tokens.get("input"), grouped=True),
                _count("output", tokens.get("output"), grouped=True),
                _count("cache read", tokens.get("cacheRead"), grouped=True),
                _count("cache write", tokens.get("cacheWrite"), grouped=True),
                _count("total", tokens.get("total"), grouped=True),
            ],
        )
    cost = data.get("cost")
    if isinstance(cost, (int, float)) and not isinstance(cost, bool):
        lines.append(f"- Cost: ${cost:.4f}")
    return "\n".join(lines)


def format_bash_result(data: dict[str, Any]) -> str:
    output = data.get("output")
    text = output if isinstance(output, str) and output.strip() else "(no output)"
    details: list[str] = []
    exit_code = data.get("exitCode")
    if isinstance(exit_code, int) and not isinstance(exit_code, bool):
        details.append(f"exit {exit_code}")
    if data.get("cancelled"):
        details.append("cancelled")
    if data.get("truncated"):
        details.append("truncated")
    if data.get("fullOutputPath"):
        details.append(f"full output: {data['fullOutputPath']}")
    if details:
        return f"{text}\n\n({', '.join(details)})"
    return text


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_relative_date(value: str | None, *, now: datetime | None = None) -> str:
    """`just now`, `5m ago`, `3h ago`, `2d ago`, else `Mar 4` (`Mar 4, 2023` in other years)."""
    if not value:
        return "(unknown)"
    moment = _parse_iso(value)
    if moment is None:
        return "(unknown)"
    current = now or datetime.now(timezone.utc)
    seconds = (current - moment).total_seconds()
    minutes = int(seconds // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    days = hours // 24
    if days < 7:
        return f"{days}d ago"
    label = f"{moment.strftime('%b')} {moment.day}"
    if moment.year == current.year:
        return label
    return f"{label}, {moment.year}"


def format_sessions_table(sessions: list[SessionFileInfo]) -> str:
    plural = "" if len(sessions) == 1 else "s"
    lines = [
        "## Sessions",
        f"Showing last {len(sessions)} session{plural}:\n",
        "| # | ID | Updated | Title |",
        "| --- | --- | --- | --- |",
    ]
    for index, info in enumerate(sessions, start=1):
        title = truncate((info.title or "").strip() or "(no title)", 70)
        lines.append(f"| {index} | `{info.session_id[:8]}` | {format_relative_date(info.updated_at)} | {title} |")
    table = "\n".join(lines)
    return f"{table}\n\n**Tip:** Use `/load <num>` to load a session (e.g., `/load 1`)."
