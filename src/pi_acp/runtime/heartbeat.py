"""Heartbeat: periodic `session_info_update` while a prompt is pending."""

from __future__ import annotations

import asyncio
import logging

from pi_acp.log_utils import log_event
from pi_acp.updates import EmitUpdate, now_iso, session_info_update

logger = logging.getLogger(__name__)


class Heartbeat:
    """Emits an `updatedAt` session info update every *interval* seconds.

    The first beat is sent as soon as the heartbeat starts. There is no cap;
    the owner stops it when the prompt settles.
    """

    def __init__(self, emit: EmitUpdate, session_id: str, interval: float) -> None:
        self._emit = emit
        self._session_id = session_id
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self.beats = 0

    def start(self) -> None:
        """Start the heartbeat loop as a background task."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the heartbeat and wait for the loop to exit."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await self._beat()
            if self._interval <= 0:
                return
            await asyncio.sleep(self._interval)

    async def _beat(self) -> None:
        self.beats += 1
        try:
            await self._emit(self._session_id, session_info_update(self._session_id, updated_at=now_iso()))
        except Exception as exc:
            log_event(logger, "heartbeat.failed", level=logging.WARNING, session_id=self._session_id, error=str(exc))
