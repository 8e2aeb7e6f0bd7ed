"""Session status tracking, optionally surfaced as a synthetic tool call."""

from __future__ import annotations

import logging

from pi_acp.log_utils import log_event
from pi_acp.session.state import Session, StatusState
from pi_acp.updates import EmitUpdate, text_tool_call, text_tool_progress

logger = logging.getLogger(__name__)

_TOOL_STATUS: dict[str, str] = {
    "running": "in_progress",
    "cancelled": "failed",
    "error": "failed",
    "idle": "completed",
}


def status_tool_call_id(session_id: str) -> str:
    return f"session_status:{session_id}"


def format_status(state: StatusState, detail: str | None) -> str:
    lines = [f"Status: {state.capitalize()}"]
    if detail:
        lines.append(f"Detail: {detail}")
    return "\n".join(lines)


class StatusReporter:
    """Tracks idle/running/cancelled/error per session.

    State is always recorded on the session. With `enabled`, each change is
    also published as a `session_status:<id>` tool call: the first emission
    creates it, later ones update it in place.
    """

    def __init__(self, emit: EmitUpdate, *, enabled: bool = False) -> None:
        self._emit = emit
        self.enabled = enabled

    async def update(self, session: Session, state: StatusState, detail: str | None = None) -> None:
        if session.status_state == state and session.status_detail == detail:
            return
        session.status_state = state
        session.status_detail = detail
        log_event(logger, "session.status", level=logging.DEBUG, session_id=session.id, state=state, detail=detail)
        if not self.enabled:
            return
        tool_call_id = status_tool_call_id(session.id)
        text = format_status(state, detail)
        if not session.status_announced:
            session.status_announced = True
            await self._emit(
                session.id,
                text_tool_call(tool_call_id, "Session status", text, status=_TOOL_STATUS[state]),
            )
            return
        await self._emit(session.id, text_tool_progress(tool_call_id, text, status=_TOOL_STATUS[state]))
