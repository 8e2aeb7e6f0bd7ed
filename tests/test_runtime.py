from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from acp.schema import AgentMessageChunk, AgentThoughtChunk, UserMessageChunk

from pi_acp.runtime.router import SessionRuntime, build_prompt, map_stop_reason
from pi_acp.session.state import Session
from tests.utils import FakePi, Recorder, make_settings


async def _noop_refresh(_session: Session) -> None:
    return None


def _runtime(recorder: Recorder, **settings) -> SessionRuntime:
    return SessionRuntime(recorder, make_settings(**settings), _noop_refresh)


def _attached(runtime: SessionRuntime, tmp_path: Path, pi: FakePi | None = None) -> tuple[Session, FakePi]:
    pi = pi or FakePi()
    session = Session(id="s1", cwd=tmp_path, pi=pi)
    runtime.attach(session)
    return session, pi


@pytest.mark.parametrize(
    ("reason", "expected"),
    [("stop", "end_turn"), ("length", "max_tokens"), ("aborted", "cancelled"), ("toolUse", "end_turn"), ("error", "end_turn"), (None, "end_turn")],
)
def test_map_stop_reason(reason: str | None, expected: str) -> None:
    assert map_stop_reason(reason) == expected


def test_build_prompt_flattens_blocks() -> None:
    message, images = build_prompt(
        [
            {"type": "text", "text": "Look at this"},
            {"type": "resource", "resource": {"uri": "file:///a.py", "text": "print(1)"}},
            {"type": "resource_link", "uri": "file:///b.py", "name": "b.py"},
            {"type": "image", "mimeType": "image/png", "data": "AAAA"},
            {"type": "audio", "data": "ignored"},
        ]
    )
    assert message.startswith("Look at this")
    assert "[resource:file:///a.py]\nprint(1)" in message
    assert "[resource_link:file:///b.py] b.py" in message
    assert images == [{"type": "image", "source": {"type": "base64", "mediaType": "image/png", "data": "AAAA"}}]


@pytest.mark.asyncio
async def test_message_deltas_become_chunks(tmp_path: Path) -> None:
    recorder = Recorder()
    runtime = _runtime(recorder)
    _session, pi = _attached(runtime, tmp_path)

    await pi.emit({"type": "message_update", "assistantMessageEvent": {"type": "text_delta", "delta": "Hel"}})
    await pi.emit({"type": "message_update", "assistantMessageEvent": {"type": "thinking_delta", "delta": "hmm"}})
    await pi.emit({"type": "message_update", "assistantMessageEvent": {"type": "text_end"}})

    kinds = [type(update) for _sid, update in recorder.updates]
    assert kinds == [AgentMessageChunk, AgentThoughtChunk]


@pytest.mark.asyncio
async def test_turn_end_does_not_settle_but_agent_end_does(tmp_path: Path) -> None:
    recorder = Recorder()
    runtime = _runtime(recorder)
    session, pi = _attached(runtime, tmp_path)
    pending = session.begin_prompt()
    pending.mark_sent()
    await pi.emit({"type": "agent_start"})

    await pi.emit({"type": "turn_end", "message": {"stopReason": "toolUse"}})
    await asyncio.sleep(0)
    assert pending.done is False

    await pi.emit({"type": "agent_end", "messages": [{"role": "assistant", "stopReason": "length"}]})
    assert await asyncio.wait_for(pending.wait(), timeout=1) == "max_tokens"
    assert session.pending is None
    await runtime.shutdown()

    summaries = [
        update.content.text
        for update in recorder.of_kind("agent_message_chunk")
        if update.content.text.startswith("\n\n---\n")
    ]
    assert summaries == ["\n\n---\nTokens: 1,500 | Cost: $0.0123"]


@pytest.mark.asyncio
async def test_agent_end_without_pending_prompt_is_harmless(tmp_path: Path) -> None:
    recorder = Recorder()
    runtime = _runtime(recorder)
    session, pi = _attached(runtime, tmp_path)

    await pi.emit({"type": "agent_end", "messages": []})
    await asyncio.sleep(0)
    await asyncio.gather(*list(runtime._background))
    assert session.pending is None
    assert session.status_state == "idle"


@pytest.mark.asyncio
async def test_settle_is_exactly_once(tmp_path: Path) -> None:
    session = Session(id="s1", cwd=tmp_path, pi=FakePi())
    pending = session.begin_prompt()

    assert session.settle("cancelled") is True
    assert session.settle("end_turn") is False
    assert session.fail(RuntimeError("late")) is False
    assert await pending.wait() == "cancelled"


@pytest.mark.asyncio
async def test_agent_end_of_an_unbound_run_does_not_settle(tmp_path: Path) -> None:
    recorder = Recorder()
    runtime = _runtime(recorder)
    session, pi = _attached(runtime, tmp_path)
    pending = session.begin_prompt()

    # Started before the prompt command went out, so it belongs to an older run.
    await pi.emit({"type": "agent_start"})
    pending.mark_sent()
    await pi.emit({"type": "agent_end", "messages": [{"role": "assistant", "stopReason": "aborted"}]})
    await asyncio.gather(*list(runtime._background))

    assert pending.done is False
    assert session.pending is pending
    assert recorder.of_kind("agent_message_chunk") == []

    await pi.emit({"type": "agent_start"})
    await pi.emit({"type": "agent_end", "messages": [{"role": "assistant", "stopReason": "stop"}]})
    assert await asyncio.wait_for(pending.wait(), timeout=1) == "end_turn"
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_agent_end_settles_the_prompt_bound_at_start_only(tmp_path: Path) -> None:
    runtime = _runtime(Recorder())
    session, pi = _attached(runtime, tmp_path)
    first = session.begin_prompt()
    first.mark_sent()
    await pi.emit({"type": "agent_start"})
    assert session.run_prompt is first

    assert session.settle("cancelled") is True
    second = session.begin_prompt()
    second.mark_sent()
    await pi.emit({"type": "agent_end", "messages": [{"role": "assistant", "stopReason": "aborted"}]})
    await asyncio.gather(*list(runtime._background))

    assert await first.wait() == "cancelled"
    assert second.done is False
    assert session.pending is second
    assert session.run_prompt is None
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_status_tool_calls_only_when_enabled(tmp_path: Path) -> None:
    quiet = Recorder()
    runtime = _runtime(quiet)
    session, _pi = _attached(runtime, tmp_path)
    await runtime.begin_prompt(session)
    assert session.status_state == "running"
    assert quiet.updates == []

    loud = Recorder()
    runtime = _runtime(loud, status_tool_calls=True)
    session, _pi = _attached(runtime, tmp_path)
    await runtime.begin_prompt(session)
    await runtime.cancel_prompt(session)
    start, progress = (update for _sid, update in loud.updates)
    assert start.tool_call_id == "session_status:s1"
    assert start.status == "in_progress"
    assert progress.status == "failed"


@pytest.mark.asyncio
async def test_auto_retry_failure_sets_error_status(tmp_path: Path) -> None:
    runtime = _runtime(Recorder())
    session, pi = _attached(runtime, tmp_path)

    await pi.emit({"type": "auto_retry_start", "attempt": 1, "maxAttempts": 3, "errorMessage": "overloaded"})
    assert session.status_detail == "Auto retry 1/3: overloaded"
    await pi.emit({"type": "auto_retry_end", "success": False, "finalError": "gave up"})
    assert session.status_state == "error"
    assert session.status_detail == "Auto retry failed: gave up"


@pytest.mark.asyncio
async def test_replay_history_emits_user_and_agent_chunks(tmp_path: Path) -> None:
    recorder = Recorder()
    runtime = _runtime(recorder)
    pi = FakePi(
        {
            "get_messages": {
                "messages": [
                    {"role": "user", "content": "hello"},
                    {"role": "assistant", "content": [{"type": "text", "text": "hi there"}, {"type": "toolCall"}]},
                ]
            }
        }
    )
    session, _pi = _attached(runtime, tmp_path, pi)

    await runtime.replay_history(session)

    kinds = [type(update) for _sid, update in recorder.updates]
    assert kinds == [UserMessageChunk, AgentMessageChunk]
