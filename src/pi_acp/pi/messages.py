"""Typed view of the pi RPC line protocol.

Every stdout line of a pi process is either a response to a request
(`type: "response"`) or an unsolicited event. Lines are decoded once, at the
transport boundary, into the closed union `PiLine`.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from pi_acp.errors import PiProtocolError


class PiModelBase(BaseModel):
    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)


class PiResponse(PiModelBase):
    type: Literal["response"]
    command: str | None = None
    success: bool
    id: str | None = None
    data: Any = None
    error: str | None = None

    def data_dict(self) -> dict[str, Any]:
        """Return `data` when it is an object, else an empty dict."""
        return self.data if isinstance(self.data, dict) else {}


class PiToolResult(PiModelBase):
    content: Any = Field(default_factory=list)
    details: Any = None

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_result(cls, value: Any) -> Any:
        # Tools may return a bare string or value instead of {content, details}.
        if value is None or isinstance(value, dict):
            return value
        if isinstance(value, str):
            return {"content": [{"type": "text", "text": value}]}
        return {"details": value}

    def text(self) -> str | None:
        """Join the text items of the result, or None when there are none."""
        if isinstance(self.content, str):
            return self.content or None
        items = self.content if isinstance(self.content, list) else []
        parts = [
            item["text"]
            for item in items
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
        ]
        if not parts:
            return None
        return "\n".join(parts)


class AgentStart(PiModelBase):
    type: Literal["agent_start"]


class AgentEnd(PiModelBase):
    type: Literal["agent_end"]
    messages: Any = None

    def last_stop_reason(self) -> str | None:
        if not isinstance(self.messages, list):
            return None
        for message in reversed(self.messages):
            if isinstance(message, dict) and message.get("role") == "assistant":
                reason = message.get("stopReason")
                return reason if isinstance(reason, str) else None
        return None


class TurnStart(PiModelBase):
    type: Literal["turn_start"]


class TurnEnd(PiModelBase):
    type: Literal["turn_end"]
    message: Any = None
    tool_results: Any = None

    @property
    def stop_reason(self) -> str | None:
        if not isinstance(self.message, dict):
            return None
        reason = self.message.get("stopReason")
        return reason if isinstance(reason, str) else None


class MessageStart(PiModelBase):
    type: Literal["message_start"]
    message: Any = None


class MessageUpdate(PiModelBase):
    type: Literal["message_update"]
    message: Any = None
    assistant_message_event: Any = None


class MessageEnd(PiModelBase):
    type: Literal["message_end"]
    message: Any = None


class ToolExecutionStart(PiModelBase):
    type: Literal["tool_execution_start"]
    tool_call_id: str
    tool_name: str
    args: Any = None


class ToolExecutionUpdate(PiModelBase):
    type: Literal["tool_execution_update"]
    tool_call_id: str
    tool_name: str
    args: Any = None
    partial_result: PiToolResult | None = None


class ToolExecutionEnd(PiModelBase):
    type: Literal["tool_execution_end"]
    tool_call_id: str
    tool_name: str
    result: PiToolResult | None = None
    is_error: bool = False


class AutoCompactionStart(PiModelBase):
    type: Literal["auto_compaction_start"]
    reason: str | None = None


class AutoCompactionEnd(PiModelBase):
    type: Literal["auto_compaction_end"]
    result: Any = None
    aborted: bool = False
    will_retry: bool = False
    error_message: str | None = None


class AutoRetryStart(PiModelBase):
    type: Literal["auto_retry_start"]
    attempt: int
    max_attempts: int
    delay_ms: int | None = None
    error_message: str | None = None


class AutoRetryEnd(PiModelBase):
    type: Literal["auto_retry_end"]
    success: bool
    attempt: int | None = None
    final_error: str | None = None


class ExtensionError(PiModelBase):
    type: Literal["extension_error"]
    extension_path: str | None = None
    event: str | None = None
    error: str | None = None


PiEvent = Union[
    AgentStart,
    AgentEnd,
    TurnStart,
    TurnEnd,
    MessageStart,
    MessageUpdate,
    MessageEnd,
    ToolExecutionStart,
    ToolExecutionUpdate,
    ToolExecutionEnd,
    AutoCompactionStart,
    AutoCompactionEnd,
    AutoRetryStart,
    AutoRetryEnd,
    ExtensionError,
]

PiLine = Annotated[Union[PiResponse, PiEvent], Field(discriminator="type")]

_LINE_ADAPTER: TypeAdapter[Any] = TypeAdapter(PiLine)


def decode_line(raw: str) -> PiResponse | PiEvent:
    """Decode one stdout line into a response or event model.

    Raises PiProtocolError for invalid JSON, unknown `type` tags and payloads
    that do not match their tag's shape.
    """
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PiProtocolError(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise PiProtocolError("line is not a JSON object")
    try:
        return _LINE_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise PiProtocolError(f"unrecognised line (type={payload.get('type')!r}): {exc.error_count()} errors") from exc
