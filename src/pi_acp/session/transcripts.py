"""Read-only index over pi transcript files, plus transcript forking.

Transcripts live under `<agent dir>/sessions/--<encoded cwd>--/` as JSONL
files whose first line is a `{"type": "session", ...}` header.
"""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from pi_acp.log_utils import log_event
from pi_acp.paths import sessions_dir

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 160
DEFAULT_TRANSCRIPT_VERSION = 3

_WHITESPACE = re.compile(r"\s+")


@dataclass
class SessionFileInfo:
    session_id: str
    cwd: str
    file_path: str
    message_count: int
    modified: float
    title: str | None = None
    updated_at: str | None = None


def normalize_cwd(value: str | None) -> str | None:
    """Absolute, trailing-slash free form of a cwd; accepts `file://` URLs."""
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    if text.startswith("file://"):
        text = unquote(urlparse(text).path) or text
    normalized = os.path.abspath(os.path.expanduser(text))
    if len(normalized) > 1:
        normalized = normalized.rstrip("/\\")
    return normalized


def truncate(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[: max(0, max_length - 1)].rstrip() + "…"


def normalize_title(value: str | None) -> str | None:
    """Collapse whitespace and cap the length with an ellipsis."""
    if not value:
        return None
    collapsed = _WHITESPACE.sub(" ", value).strip()
    if not collapsed:
        return None
    return truncate(collapsed, MAX_TITLE_LENGTH)


def extract_message_text(content: Any) -> str | None:
    """Text of a message's content: a string, or text items joined by spaces."""
    if isinstance(content, str):
        return content.strip() or None
    if not isinstance(content, list):
        return None
    parts = [
        block["text"].strip()
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    joined = " ".join(part for part in parts if part).strip()
    return joined or None


def _parse_json(line: str) -> Any:
    try:
        return json.loads(line)
    except ValueError:
        return None


def _read_lines(path: Path) -> list[str]:
    return [line for line in path.read_text(encoding="utf-8").split("\n") if line.strip()]


def _valid_header(header: Any) -> bool:
    return isinstance(header, dict) and header.get("type") == "session" and isinstance(header.get("id"), str)


def read_session_info(path: str | Path) -> SessionFileInfo | None:
    """Summarise one transcript; None when unreadable or not a session file."""
    file_path = Path(path)
    try:
        lines = _read_lines(file_path)
        stat = file_path.stat()
    except (OSError, UnicodeDecodeError):
        return None
    if not lines:
        return None
    header = _parse_json(lines[0])
    if not _valid_header(header):
        return None

    raw_cwd = header.get("cwd") if isinstance(header.get("cwd"), str) else ""
    title: str | None = None
    first_user_message: str | None = None
    updated_at = header.get("timestamp") if isinstance(header.get("timestamp"), str) else None
    message_count = 0

    for line in lines[1:]:
        entry = _parse_json(line)
        if not isinstance(entry, dict):
            continue
        if isinstance(entry.get("timestamp"), str):
            updated_at = entry["timestamp"]
        if entry.get("type") == "session_info" and isinstance(entry.get("name"), str):
            title = normalize_title(entry["name"]) or title
        message = entry.get("message")
        if entry.get("type") != "message" or not message:
            continue
        message_count += 1
        if isinstance(message, dict) and message.get("role") == "user" and first_user_message is None:
            first_user_message = extract_message_text(message.get("content"))

    if updated_at is None:
        updated_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat().replace("+00:00", "Z")

    return SessionFileInfo(
        session_id=header["id"],
        cwd=normalize_cwd(raw_cwd) or raw_cwd,
        file_path=str(file_path),
        message_count=message_count,
        modified=stat.st_mtime,
        title=title or normalize_title(first_user_message),
        updated_at=updated_at,
    )


def list_session_files() -> list[Path]:
    root = sessions_dir()
    if not root.is_dir():
        return []
    files: list[Path] = []
    for directory in root.iterdir():
        if not directory.is_dir():
            continue
        try:
            files.extend(entry for entry in directory.iterdir() if entry.is_file() and entry.suffix == ".jsonl")
        except OSError:
            continue
    return files


def scan_sessions(cwd: str | None = None) -> list[SessionFileInfo]:
    """All readable transcripts, newest first, optionally limited to one cwd."""
    target = normalize_cwd(cwd)
    sessions: list[SessionFileInfo] = []
    for path in list_session_files():
        info = read_session_info(path)
        if info is None:
            continue
        if target and normalize_cwd(info.cwd) != target:
            continue
        sessions.append(info)
    sessions.sort(key=lambda info: info.modified, reverse=True)
    return sessions


def session_dir_for_cwd(cwd: str) -> Path:
    """Directory pi uses for transcripts of `cwd`, created if missing."""
    normalized = normalize_cwd(cwd) or cwd
    safe = "--" + re.sub(r"[/\\:]", "-", re.sub(r"^[/\\]", "", normalized)) + "--"
    directory = sessions_dir() / safe
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def create_forked_session_file(source_path: str | Path, target_cwd: str) -> tuple[str, Path]:
    """Copy a transcript under a new session id; returns (session_id, path).

    The new header references the source file as `parentSession`; every line
    after the source header is kept in order.
    """
    source = Path(source_path)
    lines = _read_lines(source)
    if not lines:
        raise ValueError(f"Source session is empty: {source}")
    header = _parse_json(lines[0])
    if not _valid_header(header):
        raise ValueError(f"Invalid session header: {source}")

    session_id = str(uuid.uuid4())
    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    file_stamp = re.sub(r"[:.]", "-", timestamp)
    target = session_dir_for_cwd(target_cwd) / f"{file_stamp}_{session_id}.jsonl"
    version = header.get("version")
    new_header = {
        "type": "session",
        "version": version if isinstance(version, int) else DEFAULT_TRANSCRIPT_VERSION,
        "id": session_id,
        "timestamp": timestamp,
        "cwd": target_cwd,
        "parentSession": str(source),
    }
    target.write_text("\n".join([json.dumps(new_header), *lines[1:]]) + "\n", encoding="utf-8")
    log_event(logger, "transcript.forked", source=str(source), target=str(target), session_id=session_id)
    return session_id, target
