"""ACP agent facade and stdio entrypoints."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Iterator

from acp import (
    PROTOCOL_VERSION,
    Agent,
    AuthenticateResponse,
    InitializeResponse,
    LoadSessionResponse,
    NewSessionResponse,
    PromptResponse,
    RequestError,
    SetSessionModelResponse,
)
from acp import schema as acp_schema
from acp.core import run_agent
from acp.schema import (
    AgentCapabilities,
    ForkSessionResponse,
    Implementation,
    ListSessionsResponse,
    McpCapabilities,
    PromptCapabilities,
    ResumeSessionResponse,
    SessionCapabilities,
    SessionInfo,
    SessionListCapabilities,
    SetSessionConfigOptionResponse,
)
from dotenv import load_dotenv

from pi_acp.acp_compat import enable_session_config_options_api
from pi_acp.acp_runtime import RuntimeSettings, load_runtime_settings
from pi_acp.errors import (
    PiAcpError,
    PiError,
    PromptInProgressError,
    UnknownConfigOptionError,
    UnknownModelError,
    UnknownSessionError,
)
from pi_acp.log_utils import build_log_config, configure_logging, log_context, log_event
from pi_acp.session.manager import SessionManager

logger = logging.getLogger(__name__)

AGENT_NAME = "pi-acp"
AGENT_TITLE = "Pi ACP"
AGENT_VERSION = "0.1.0"

INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
RESOURCE_NOT_FOUND = -32002


@contextmanager
def acp_errors(operation: str) -> Iterator[None]:
    """Translate adapter failures into JSON-RPC errors for the client."""
    try:
        yield
    except UnknownSessionError as exc:
        raise RequestError(RESOURCE_NOT_FOUND, str(exc), {"sessionId": exc.session_id}) from exc
    except (PromptInProgressError, UnknownModelError, UnknownConfigOptionError) as exc:
        raise RequestError(INVALID_PARAMS, str(exc)) from exc
    except PiError as exc:
        log_event(logger, "acp.request_failed", level=logging.ERROR, operation=operation, error=str(exc))
        raise RequestError(INTERNAL_ERROR, str(exc), {"operation": operation}) from exc
    except PiAcpError as exc:
        raise RequestError(INTERNAL_ERROR, str(exc)) from exc


def _session_capabilities() -> SessionCapabilities:
    extras: dict[str, Any] = {}
    # Older SDK releases predate the resume/fork capability models.
    for field, model_name in (("resume", "SessionResumeCapabilities"), ("fork", "SessionForkCapabilities")):
        model = getattr(acp_schema, model_name, None)
        if model is not None:
            extras[field] = model()
    return SessionCapabilities(list=SessionListCapabilities(), **extras)


class PiAcpAgent(Agent):
    """Expose pi sessions over the Agent Client Protocol."""

    def __init__(
        self,
        conn: Any | None = None,
        *,
        settings: RuntimeSettings | None = None,
        manager: SessionManager | None = None,
    ) -> None:
        self._conn = conn
        self.settings = settings or load_runtime_settings()
        self.manager = manager or SessionManager(self._emit, self.settings)
        self._client_capabilities: Any | None = None
        self._client_info: Any | None = None

    def on_connect(self, conn: Any) -> None:  # type: ignore[override]
        """Capture connection when wiring via run_agent."""
        self._conn = conn

    async def _emit(self, session_id: str, update: Any) -> None:
        if self._conn is None:
            log_event(logger, "acp.update_dropped", level=logging.WARNING, session_id=session_id)
            return
        try:
            await self._conn.session_update(session_id=session_id, update=update)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                "acp.update_failed",
                level=logging.WARNING,
                session_id=session_id,
                update=getattr(update, "session_update", None),
                error=str(exc),
            )

    async def initialize(
        self,
        protocol_version: int,
        client_capabilities: Any | None = None,
        client_info: Any | None = None,
        **_: Any,
    ) -> InitializeResponse:
        log_event(logger, "acp.initialize.request", protocol_version=protocol_version)
        if protocol_version != PROTOCOL_VERSION:
            log_event(
                logger,
                "acp.initialize.version_mismatch",
                level=logging.WARNING,
                requested=protocol_version,
                supported=PROTOCOL_VERSION,
            )
        self._client_capabilities = client_capabilities
        self._client_info = client_info
        capabilities = AgentCapabilities(
            load_session=True,
            prompt_capabilities=PromptCapabilities(embedded_context=True, image=True, audio=False),
            mcp_capabilities=McpCapabilities(http=False, sse=False),
            session_capabilities=_session_capabilities(),
        )
        return InitializeResponse(
            protocol_version=PROTOCOL_VERSION,
            agent_capabilities=capabilities,
            agent_info=Implementation(name=AGENT_NAME, title=AGENT_TITLE, version=AGENT_VERSION),
            auth_methods=[],
        )

    async def authenticate(self, method_id: str, **_: Any) -> AuthenticateResponse | None:
        log_event(logger, "acp.authenticate", method_id=method_id)
        return AuthenticateResponse()

    async def new_session(self, cwd: str, mcp_servers: list[Any] | None = None, **_: Any) -> NewSessionResponse:
        with acp_errors("session/new"):
            session, models = await self.manager.create(cwd, mcp_servers or [])
        return NewSessionResponse(session_id=session.id, models=models, config_options=session.config_options)

    async def load_session(
        self, cwd: str, session_id: str, mcp_servers: list[Any] | None = None, **_: Any
    ) -> LoadSessionResponse:
        with acp_errors("session/load"):
            session, models = await self.manager.load(session_id, cwd, mcp_servers or [])
        return LoadSessionResponse(models=models, config_options=session.config_options)

    async def resume_session(
        self, cwd: str, session_id: str, mcp_servers: list[Any] | None = None, **_: Any
    ) -> ResumeSessionResponse:
        with acp_errors("session/resume"):
            session, models = await self.manager.resume(session_id, cwd, mcp_servers or [])
        return ResumeSessionResponse(models=models, config_options=session.config_options)

    async def fork_session(
        self, cwd: str, session_id: str, mcp_servers: list[Any] | None = None, **_: Any
    ) -> ForkSessionResponse:
        with acp_errors("session/fork"):
            session, models = await self.manager.fork(session_id, cwd, mcp_servers or [])
        return ForkSessionResponse(session_id=session.id, models=models, config_options=session.config_options)

    async def list_sessions(self, cursor: str | None = None, cwd: str | None = None, **_: Any) -> ListSessionsResponse:
        """Sessions found on disk, newest first; no paging."""
        with acp_errors("session/list"):
            found = await self.manager.list_sessions(cwd)
        sessions = [
            SessionInfo(
                session_id=info.session_id,
                cwd=info.cwd,
                title=info.title,
                updated_at=info.updated_at,
                field_meta={"messageCount": info.message_count},
            )
            for info in found
        ]
        return ListSessionsResponse(sessions=sessions, next_cursor=None)

    async def prompt(self, prompt: list[Any], session_id: str, **_: Any) -> PromptResponse:
        with log_context(session_id=session_id), acp_errors("session/prompt"):
            stop_reason = await self.manager.prompt(session_id, prompt)
        return PromptResponse(stop_reason=stop_reason)

    async def cancel(self, session_id: str, **_: Any) -> None:
        log_event(logger, "acp.cancel", session_id=session_id)
        await self.manager.cancel(session_id)

    async def set_session_model(self, model_id: str, session_id: str, **_: Any) -> SetSessionModelResponse | None:
        with acp_errors("session/set_model"):
            await self.manager.set_model(session_id, model_id)
        return SetSessionModelResponse()

    async def set_session_config_option(
        self, config_id: str, session_id: str, value: Any, **_: Any
    ) -> SetSessionConfigOptionResponse:
        with acp_errors("session/set_config_option"):
            options = await self.manager.set_config_option(session_id, config_id, value)
        return SetSessionConfigOptionResponse.model_validate({"configOptions": options})

    async def shutdown(self) -> None:
        await self.manager.shutdown()


async def run_acp_agent() -> None:
    """Run the ACP server on stdio."""
    load_dotenv(override=False)
    configure_logging(build_log_config(log_file_name="pi-acp.log"))
    enable_session_config_options_api()
    agent = PiAcpAgent()
    log_event(logger, "acp.server.start", pi_command=agent.settings.pi_command)
    try:
        await run_agent(agent, use_unstable_protocol=True)
    finally:
        await agent.shutdown()


async def main(argv: list[str] | None = None) -> None:
    """Default entrypoint launches the ACP server on stdio."""
    await run_acp_agent()


def main_entry() -> int:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        return 0
    return 0


if __name__ == "__main__":
    main_entry()
