from __future__ import annotations

import json

import pytest

from pi_acp.errors import PiProtocolError
from pi_acp.pi.messages import (
    AgentEnd,
    AutoRetryStart,
    MessageUpdate,
    PiResponse,
    ToolExecutionEnd,
    TurnEnd,
    decode_line,
)


def test_response_line_decodes_with_data() -> None:
    line = decode_line(json.dumps({"type": "response", "id": "req_1", "command": "get_state", "success": True, "data": {"a": 1}}))
    assert isinstance(line, PiResponse)
    assert line.id == "req_1"
    assert line.data_dict() == {"a": 1}


def test_response_with_non_object_data_has_empty_data_dict() -> None:
    line = decode_line(json.dumps({"type": "response", "success": True, "data": [1, 2]}))
    assert isinstance(line, PiResponse)
    assert line.data_dict() == {}


def test_camel_case_fields_are_mapped() -> None:
    line = decode_line(
        json.dumps(
            {
                "type": "tool_execution_end",
                "toolCallId": "t1",
                "toolName": "bash",
                "isError": True,
                "result": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]},
            }
        )
    )
    assert isinstance(line, ToolExecutionEnd)
    assert line.tool_call_id == "t1"
    assert line.is_error is True
    assert line.result is not None
    assert line.result.text() == "a\nb"


def test_message_update_keeps_inner_event() -> None:
    line = decode_line(
        json.dumps({"type": "message_update", "assistantMessageEvent": {"type": "text_delta", "delta": "hi"}})
    )
    assert isinstance(line, MessageUpdate)
    assert line.assistant_message_event == {"type": "text_delta", "delta": "hi"}


def test_agent_end_last_stop_reason_uses_last_assistant_message() -> None:
    line = decode_line(
        json.dumps(
            {
                "type": "agent_end",
                "messages": [
                    {"role": "assistant", "stopReason": "toolUse"},
                    {"role": "toolResult"},
                    {"role": "assistant", "stopReason": "length"},
                    {"role": "user"},
                ],
            }
        )
    )
    assert isinstance(line, AgentEnd)
    assert line.last_stop_reason() == "length"


def test_turn_end_stop_reason() -> None:
    line = decode_line(json.dumps({"type": "turn_end", "message": {"stopReason": "aborted"}}))
    assert isinstance(line, TurnEnd)
    assert line.stop_reason == "aborted"


def test_auto_retry_start_fields() -> None:
    line = decode_line(json.dumps({"type": "auto_retry_start", "attempt": 2, "maxAttempts": 3, "errorMessage": "overloaded"}))
    assert isinstance(line, AutoRetryStart)
    assert (line.attempt, line.max_attempts, line.error_message) == (2, 3, "overloaded")


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        json.dumps({"type": "unknown_event"}),
        json.dumps({"type": "tool_execution_start"}),
    ],
)
def test_invalid_lines_raise_protocol_error(raw: str) -> None:
    with pytest.raises(PiProtocolError):
        decode_line(raw)


@pytest.mark.parametrize("details", [["a", "b"], "plain", 3, {"exitCode": 0}])
def test_tool_end_accepts_any_details_payload(details) -> None:
    line = decode_line(
        json.dumps(
            {
                "type": "tool_execution_end",
                "toolCallId": "t1",
                "toolName": "bash",
                "result": {"content": [{"type": "text", "text": "ok"}], "details": details},
            }
        )
    )
    assert isinstance(line, ToolExecutionEnd)
    assert line.result is not None
    assert line.result.details == details
    assert line.result.text() == "ok"


def test_tool_end_with_bare_result_values() -> None:
    line = decode_line(json.dumps({"type": "tool_execution_end", "toolCallId": "t1", "toolName": "read", "result": "file body"}))
    assert isinstance(line, ToolExecutionEnd)
    assert line.result is not None
    assert line.result.text() == "file body"

    line = decode_line(json.dumps({"type": "tool_execution_end", "toolCallId": "t2", "toolName": "ls", "result": [1, 2]}))
    assert line.result is not None
    assert line.result.text() is None
    assert line.result.details == [1, 2]


def test_odd_nested_payloads_still_decode() -> None:
    update = decode_line(json.dumps({"type": "message_update", "assistantMessageEvent": "text_delta"}))
    assert isinstance(update, MessageUpdate)

    turn = decode_line(json.dumps({"type": "turn_end", "message": "done", "toolResults": {}}))
    assert isinstance(turn, TurnEnd)
    assert turn.stop_reason is None

    end = decode_line(json.dumps({"type": "agent_end", "messages": None}))
    assert isinstance(end, AgentEnd)
    assert end.last_stop_reason() is None
