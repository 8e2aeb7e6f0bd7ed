from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from acp import PROTOCOL_VERSION, RequestError, text_block
from acp.schema import AgentMessageChunk

from pi_acp.paths import sessions_dir
from tests.utils import make_agent, write_transcript


@pytest.mark.asyncio
async def test_initialize_advertises_capabilities(tmp_path: Path) -> None:
    agent, _conn, _spawned = make_agent(tmp_path)

    response = await agent.initialize(protocol_version=PROTOCOL_VERSION)

    assert response.protocol_version == PROTOCOL_VERSION
    assert response.agent_info.name == "pi-acp"
    caps = response.agent_capabilities
    assert caps.load_session is True
    assert caps.prompt_capabilities.image is True
    assert caps.prompt_capabilities.embedded_context is True
    assert caps.mcp_capabilities.http is False
    assert caps.session_capabilities.list is not None


@pytest.mark.asyncio
async def test_authenticate_is_a_no_op(tmp_path: Path) -> None:
    agent, _conn, _spawned = make_agent(tmp_path)
    assert await agent.authenticate(method_id="none") is not None


@pytest.mark.asyncio
async def test_new_session_returns_models_and_config_options(tmp_path: Path) -> None:
    agent, _conn, _spawned = make_agent(tmp_path)

    response = await agent.new_session(cwd=str(tmp_path), mcp_servers=[])

    assert response.session_id in agent.manager.sessions
    assert response.models.current_model_id == "anthropic:claude-sonnet-4-5"
    assert response.config_options
    await agent.shutdown()


@pytest.mark.asyncio
async def test_prompt_streams_updates_over_the_connection(tmp_path: Path) -> None:
    agent, conn, spawned = make_agent(tmp_path)
    session = await agent.new_session(cwd=str(tmp_path), mcp_servers=[])
    pi = spawned[0]

    task = asyncio.create_task(agent.prompt(prompt=[text_block("hello")], session_id=session.session_id))
    for _ in range(100):
        if any(command["type"] == "prompt" for command in pi.sent):
            break
        await asyncio.sleep(0.01)
    await pi.emit({"type": "agent_start"})
    await pi.emit({"type": "message_update", "assistantMessageEvent": {"type": "text_delta", "delta": "Hi!"}})
    await pi.emit({"type": "agent_end", "messages": [{"role": "assistant", "stopReason": "stop"}]})

    response = await asyncio.wait_for(task, timeout=1)

    assert response.stop_reason == "end_turn"
    chunks = [
        call.kwargs["update"]
        for call in conn.session_update.call_args_list
        if isinstance(call.kwargs.get("update"), AgentMessageChunk)
    ]
    assert any(chunk.content.text == "Hi!" for chunk in chunks)
    await agent.shutdown()


@pytest.mark.asyncio
async def test_unknown_session_maps_to_request_error(tmp_path: Path) -> None:
    agent, _conn, _spawned = make_agent(tmp_path)

    with pytest.raises(RequestError) as excinfo:
        await agent.load_session(cwd=str(tmp_path), session_id="nonexistent", mcp_servers=[])
    assert excinfo.value.code == -32002

    with pytest.raises(RequestError):
        await agent.prompt(prompt=[text_block("hi")], session_id="nonexistent")


@pytest.mark.asyncio
async def test_unknown_config_option_maps_to_invalid_params(tmp_path: Path) -> None:
    agent, _conn, _spawned = make_agent(tmp_path)
    session = await agent.new_session(cwd=str(tmp_path), mcp_servers=[])

    with pytest.raises(RequestError) as excinfo:
        await agent.set_session_config_option(config_id="theme", session_id=session.session_id, value="dark")
    assert excinfo.value.code == -32602

    response = await agent.set_session_config_option(
        config_id="steering_mode", session_id=session.session_id, value="one-at-a-time"
    )
    assert response.config_options
    await agent.shutdown()


@pytest.mark.asyncio
async def test_list_sessions_reports_transcripts(tmp_path: Path) -> None:
    write_transcript(sessions_dir() / "--work--", "w1", "/work", [("user", "Write docs")])
    agent, _conn, _spawned = make_agent(tmp_path)

    response = await agent.list_sessions(cwd="/work")

    assert [info.session_id for info in response.sessions] == ["w1"]
    assert response.sessions[0].title == "Write docs"
    assert response.next_cursor is None


@pytest.mark.asyncio
async def test_cancel_unknown_session_is_ignored(tmp_path: Path) -> None:
    agent, _conn, _spawned = make_agent(tmp_path)
    await agent.cancel(session_id="missing")
