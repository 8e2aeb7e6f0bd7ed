from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path

import pytest

from pi_acp.errors import PiError, PiProcessExited, PiRequestTimeout, PiResponseError
from pi_acp.pi.messages import AgentEnd, PiResponse
from pi_acp.pi.process import PiProcess

ECHO_SCRIPT = textwrap.dedent(
    """
    import json, sys

    for raw in sys.stdin:
        command = json.loads(raw)
        kind = command.get("type")
        if kind == "silent":
            continue
        if kind == "fail":
            print(json.dumps({"type": "response", "id": command["id"], "command": kind,
                              "success": False, "error": "boom"}), flush=True)
            continue
        if kind == "garbage":
            print("not json at all", flush=True)
            print(json.dumps({"type": "mystery_event"}), flush=True)
        if kind == "prompt":
            print(json.dumps({"type": "agent_end", "messages": []}), flush=True)
            continue
        print(json.dumps({"type": "response", "id": command.get("id"), "command": kind,
                          "success": True, "data": {"echo": command.get("value")}}), flush=True)
    """
)

EXIT_SCRIPT = textwrap.dedent(
    """
    import sys

    sys.stdin.readline()
    sys.stderr.write("fatal\\n")
    sys.exit(3)
    """
)


async def _spawn(tmp_path: Path, script: str, **kwargs) -> PiProcess:
    path = tmp_path / "fake_pi.py"
    path.write_text(script, encoding="utf-8")
    return await PiProcess.spawn(tmp_path, argv=[sys.executable, str(path)], **kwargs)


@pytest.mark.asyncio
async def test_request_returns_matching_response(tmp_path: Path) -> None:
    proc = await _spawn(tmp_path, ECHO_SCRIPT)
    try:
        response = await proc.request({"type": "echo", "value": 1})
        assert response.success is True
        assert response.data_dict() == {"echo": 1}
        assert proc.pending_request_count == 0
    finally:
        await proc.stop()


@pytest.mark.asyncio
async def test_concurrent_requests_are_correlated_by_id(tmp_path: Path) -> None:
    proc = await _spawn(tmp_path, ECHO_SCRIPT)
    try:
        responses = await asyncio.gather(*(proc.request({"type": "echo", "value": i}) for i in range(5)))
        assert [r.data_dict()["echo"] for r in responses] == list(range(5))
    finally:
        await proc.stop()


@pytest.mark.asyncio
async def test_failed_response_raises_with_error_text(tmp_path: Path) -> None:
    proc = await _spawn(tmp_path, ECHO_SCRIPT)
    try:
        with pytest.raises(PiResponseError) as excinfo:
            await proc.request({"type": "fail"})
        assert str(excinfo.value) == "boom"
    finally:
        await proc.stop()


@pytest.mark.asyncio
async def test_timeout_frees_the_request_slot(tmp_path: Path) -> None:
    proc = await _spawn(tmp_path, ECHO_SCRIPT)
    try:
        with pytest.raises(PiRequestTimeout) as excinfo:
            await proc.request({"type": "silent"}, timeout_ms=10)
        assert "Pi request timed out: silent" in str(excinfo.value)
        assert proc.pending_request_count == 0
    finally:
        await proc.stop()


@pytest.mark.asyncio
async def test_default_timeout_comes_from_spawn(tmp_path: Path) -> None:
    proc = await _spawn(tmp_path, ECHO_SCRIPT, request_timeout_ms=10)
    try:
        with pytest.raises(PiRequestTimeout):
            await proc.request({"type": "silent"})
    finally:
        await proc.stop()


@pytest.mark.asyncio
async def test_malformed_and_unknown_lines_are_dropped(tmp_path: Path) -> None:
    proc = await _spawn(tmp_path, ECHO_SCRIPT)
    seen = []

    async def _listener(line) -> None:
        seen.append(line)

    proc.on_line(_listener)
    try:
        response = await proc.request({"type": "garbage", "value": "ok"})
        assert response.data_dict() == {"echo": "ok"}
        assert all(isinstance(line, PiResponse) for line in seen)
    finally:
        await proc.stop()


@pytest.mark.asyncio
async def test_events_reach_listeners_in_order(tmp_path: Path) -> None:
    proc = await _spawn(tmp_path, ECHO_SCRIPT)
    seen = []
    ended = asyncio.Event()

    async def _listener(line) -> None:
        seen.append(line.type)
        if isinstance(line, AgentEnd):
            ended.set()

    proc.on_line(_listener)
    try:
        await proc.request({"type": "echo"})
        await proc.send({"type": "prompt", "message": "hi"})
        await asyncio.wait_for(ended.wait(), timeout=5)
        assert seen == ["response", "agent_end"]
    finally:
        await proc.stop()


@pytest.mark.asyncio
async def test_exit_rejects_pending_requests_and_notifies(tmp_path: Path) -> None:
    proc = await _spawn(tmp_path, EXIT_SCRIPT)
    errors: list[Exception] = []
    proc.on_error(errors.append)

    with pytest.raises(PiProcessExited):
        await proc.request({"type": "get_state"}, timeout_ms=5000)

    for _ in range(50):
        if errors:
            break
        await asyncio.sleep(0.01)
    assert proc.exited is True
    assert isinstance(errors[0], PiProcessExited)
    assert errors[0].returncode == 3

    with pytest.raises(PiProcessExited):
        await proc.request({"type": "get_state"})
    await proc.stop()


@pytest.mark.asyncio
async def test_spawn_failure_is_a_pi_error(tmp_path: Path) -> None:
    with pytest.raises(PiError):
        await PiProcess.spawn(tmp_path, argv=[str(tmp_path / "missing-binary")])
