"""Route `session/set_config_option` through the ACP SDK agent router.

The protocol schema defines the method, but the SDK's agent router does not
dispatch it. The patch wraps `build_agent_router` so the method reaches
`Agent.set_session_config_option`.
"""

from __future__ import annotations

from typing import Any

_MARKER = "_pi_acp_config_option_route"
_PATCHED = False


def enable_session_config_options_api() -> None:
    """Register the config option route on every agent router built afterwards."""
    global _PATCHED
    if _PATCHED:
        return

    from acp.agent import connection as agent_connection_module
    from acp.agent import router as agent_router_module
    from acp.meta import AGENT_METHODS
    from acp.schema import SetSessionConfigOptionRequest
    from acp.utils import normalize_result

    method = AGENT_METHODS.get("session_set_config_option")
    original_build_router = agent_router_module.build_agent_router
    if method is None or getattr(original_build_router, _MARKER, False):
        _PATCHED = True
        return

    def _build_agent_router(agent: Any, use_unstable_protocol: bool = False):
        router = original_build_router(agent, use_unstable_protocol=use_unstable_protocol)
        router.route_request(
            method,
            SetSessionConfigOptionRequest,
            agent,
            "set_session_config_option",
            adapt_result=normalize_result,
        )
        return router

    setattr(_build_agent_router, _MARKER, True)
    agent_router_module.build_agent_router = _build_agent_router
    agent_connection_module.build_agent_router = _build_agent_router
    _PATCHED = True
