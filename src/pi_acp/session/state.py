"""Per-session state shared by the manager, runtime and reporters."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from pi_acp.errors import PromptInProgressError
from pi_acp.pi.messages import PiEvent, PiResponse

StatusState = Literal["idle", "running", "cancelled", "error"]

_prompt_tokens = itertools.count(1)


class PiClient(Protocol):
    """What the session layer needs from a pi process."""

    @property
    def exited(self) -> bool: ...

    def on_line(self, listener: Callable[[PiResponse | PiEvent], Awaitable[None]]) -> None: ...

    def on_error(self, listener: Callable[[Exception], Any]) -> None: ...

    async def send(self, command: Mapping[str, Any]) -> None: ...

    async def request(self, command: Mapping[str, Any], timeout_ms: int | None = None) -> PiResponse: ...

    async def stop(self) -> None: ...


@dataclass
class PiModel:
    id: str
    provider: str
    name: str
    reasoning: bool = False
    api: str | None = None
    context_window: int | None = None
    max_tokens: int | None = None

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.id}"

    @classmethod
    def from_payload(cls, payload: Any) -> PiModel | None:
        """Build from a pi model object; None when id/provider are missing."""
        if not isinstance(payload, dict):
            return None
        model_id = payload.get("id")
        provider = payload.get("provider")
        if not isinstance(model_id, str) or not isinstance(provider, str):
            return None
        context_window = payload.get("contextWindow")
        max_tokens = payload.get("maxTokens")
        return cls(
            id=model_id,
            provider=provider,
            name=payload.get("name") or model_id,
            reasoning=bool(payload.get("reasoning")),
            api=payload.get("api"),
            context_window=context_window if isinstance(context_window, int) else None,
            max_tokens=max_tokens if isinstance(max_tokens, int) else None,
        )


@dataclass
class ToolCallInput:
    summary: str | None = None
    command: str | None = None
    locations: list[str] = field(default_factory=list)


@dataclass
class FileSnapshot:
    path: Path
    old_text: str


class PendingPrompt:
    """One-shot completion cell for an in-flight prompt.

    The first `resolve` or `reject` wins; later calls return False and change
    nothing. `token` identifies the prompt in logs; `sent` turns True once the
    prompt command has been written to pi, after which the next `agent_start`
    binds this cell to that run.
    """

    def __init__(self) -> None:
        self.token = next(_prompt_tokens)
        self.sent = False
        self._future: asyncio.Future[str] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def mark_sent(self) -> None:
        self.sent = True

    def resolve(self, stop_reason: str) -> bool:
        if self._future.done():
            return False
        self._future.set_result(stop_reason)
        return True

    def reject(self, error: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True

    def add_done_callback(self, callback: Callable[[], Any]) -> None:
        self._future.add_done_callback(lambda _future: callback())

    async def wait(self) -> str:
        return await self._future


@dataclass
class Session:
    id: str
    cwd: Path
    pi: PiClient
    mcp_servers: list[Any] = field(default_factory=list)
    pending: PendingPrompt | None = None
    run_prompt: PendingPrompt | None = None
    session_file: str | None = None
    title: str | None = None
    tool_inputs: dict[str, ToolCallInput] = field(default_factory=dict)
    snapshots: dict[str, FileSnapshot] = field(default_factory=dict)
    model_map: dict[str, PiModel] = field(default_factory=dict)
    current_model_id: str | None = None
    thinking_level: str | None = None
    steering_mode: str | None = None
    follow_up_mode: str | None = None
    auto_compaction: bool | None = None
    auto_retry: bool | None = None
    config_options: list[dict[str, Any]] = field(default_factory=list)
    status_state: StatusState = "idle"
    status_detail: str | None = None
    status_announced: bool = False
    stats_announced: bool = False

    @property
    def current_model(self) -> PiModel | None:
        if self.current_model_id is None:
            return None
        return self.model_map.get(self.current_model_id)

    def begin_prompt(self) -> PendingPrompt:
        """Fill the pending slot; a second prompt is rejected, never queued."""
        if self.pending is not None:
            raise PromptInProgressError()
        self.pending = PendingPrompt()
        return self.pending

    def settle(self, stop_reason: str) -> bool:
        """Resolve and clear the pending prompt; no-op when none is pending."""
        pending, self.pending = self.pending, None
        if pending is None:
            return False
        return pending.resolve(stop_reason)

    def bind_run(self) -> PendingPrompt | None:
        """Attach the pi run that just started to the prompt it serves.

        Only a sent, unsettled prompt that no earlier run claimed is bound; any
        other run (a late start after a cancel, or one pi began on its own)
        belongs to no prompt.
        """
        pending = self.pending
        if pending is not None and pending.sent and not pending.done and self.run_prompt is not pending:
            self.run_prompt = pending
        else:
            self.run_prompt = None
        return self.run_prompt

    def take_run(self) -> PendingPrompt | None:
        """Detach the prompt bound to the current run, if any."""
        run, self.run_prompt = self.run_prompt, None
        return run

    def settle_prompt(self, prompt: PendingPrompt, stop_reason: str) -> bool:
        """Resolve exactly `prompt`; the pending slot is cleared only if it still holds it."""
        if self.pending is prompt:
            self.pending = None
        return prompt.resolve(stop_reason)

    def fail(self, error: BaseException) -> bool:
        """Reject and clear the pending prompt; no-op when none is pending."""
        pending, self.pending = self.pending, None
        if pending is None:
            return False
        return pending.reject(error)
