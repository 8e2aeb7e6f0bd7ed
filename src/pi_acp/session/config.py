"""Model and configuration-option state derived from a pi process."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from acp.schema import ModelInfo, SessionModelState

from pi_acp.errors import PiError
from pi_acp.log_utils import log_event
from pi_acp.pi.messages import PiResponse
from pi_acp.session.state import PiModel, Session

logger = logging.getLogger(__name__)

THINKING_LEVELS = ("off", "minimal", "low", "medium", "high")
THINKING_LEVELS_WITH_XHIGH = (*THINKING_LEVELS, "xhigh")
XHIGH_MODELS = frozenset({"gpt-5.1-codex-max", "gpt-5.2", "gpt-5.2-codex"})

DELIVERY_MODES = ("all", "one-at-a-time")

DEFAULT_THINKING_LEVEL = "off"
DEFAULT_STEERING_MODE = "all"
DEFAULT_FOLLOW_UP_MODE = "one-at-a-time"


def thinking_levels_for(model: PiModel | None) -> tuple[str, ...]:
    if model is not None and model.id in XHIGH_MODELS:
        return THINKING_LEVELS_WITH_XHIGH
    return THINKING_LEVELS


def format_thinking_level(level: str) -> str:
    if level == "xhigh":
        return "Extra High"
    return level[:1].upper() + level[1:]


def resolve_model_id(session: Session, model_id: str) -> PiModel | None:
    """Resolve a client-supplied model token.

    Accepted forms, in order: a known `provider:id` key, any `provider:id` or
    `provider/id` pair (even if never seen), or a bare id matching a known
    model of any provider.
    """
    known = session.model_map.get(model_id)
    if known is not None:
        return known
    for separator in (":", "/"):
        provider, sep, rest = model_id.partition(separator)
        if sep and provider and rest:
            for model in session.model_map.values():
                if model.provider == provider and model.id == rest:
                    return model
            return PiModel(id=rest, provider=provider, name=rest)
    for model in session.model_map.values():
        if model.id == model_id:
            return model
    return None


async def _safe_request(session: Session, command: dict[str, Any]) -> PiResponse | None:
    try:
        return await session.pi.request(command)
    except PiError as exc:
        log_event(
            logger,
            "config.request_failed",
            level=logging.WARNING,
            session_id=session.id,
            command=command.get("type"),
            error=str(exc),
        )
        return None


async def refresh_session_config(session: Session) -> SessionModelState | None:
    """Re-read models and settings from pi and rebuild the config options.

    Returns the model state for ACP responses (None when pi reports no models).
    """
    state_response, models_response = await asyncio.gather(
        _safe_request(session, {"type": "get_state"}),
        _safe_request(session, {"type": "get_available_models"}),
    )
    state = state_response.data_dict() if state_response is not None else {}
    models_payload = models_response.data_dict().get("models") if models_response is not None else None

    available = [model for model in (PiModel.from_payload(item) for item in models_payload or []) if model]
    current = PiModel.from_payload(state.get("model"))
    if current is not None and not any(model.key == current.key for model in available):
        available.insert(0, current)

    session.model_map = {model.key: model for model in available}
    if current is not None:
        session.current_model_id = current.key
    elif available:
        session.current_model_id = available[0].key
    else:
        session.current_model_id = None

    session.thinking_level = state.get("thinkingLevel") or session.thinking_level or DEFAULT_THINKING_LEVEL
    session.steering_mode = state.get("steeringMode") or session.steering_mode or DEFAULT_STEERING_MODE
    session.follow_up_mode = state.get("followUpMode") or session.follow_up_mode or DEFAULT_FOLLOW_UP_MODE
    if isinstance(state.get("autoCompactionEnabled"), bool):
        session.auto_compaction = state["autoCompactionEnabled"]
    elif session.auto_compaction is None:
        session.auto_compaction = False
    if isinstance(state.get("autoRetryEnabled"), bool):
        session.auto_retry = state["autoRetryEnabled"]
    elif session.auto_retry is None:
        session.auto_retry = False
    if isinstance(state.get("sessionFile"), str):
        session.session_file = state["sessionFile"]

    session.config_options = build_config_options(session)

    if session.current_model_id is None:
        return None
    return SessionModelState(
        current_model_id=session.current_model_id,
        available_models=[
            ModelInfo(model_id=model.key, name=model.name, description=f"{model.provider}/{model.id}")
            for model in available
        ],
    )


def _select_option(
    option_id: str,
    name: str,
    description: str,
    current: str,
    choices: list[tuple[str, str]],
    *,
    category: str | None = None,
) -> dict[str, Any]:
    option: dict[str, Any] = {
        "type": "select",
        "id": option_id,
        "name": name,
        "description": description,
        "currentValue": current,
        "options": [{"value": value, "name": label} for value, label in choices],
    }
    if category:
        option["category"] = category
    return option


def build_config_options(session: Session) -> list[dict[str, Any]]:
    """Config options in ACP wire form for the session's current state."""
    options: list[dict[str, Any]] = []
    model = session.current_model
    if model is not None and model.reasoning:
        levels = thinking_levels_for(model)
        if session.thinking_level not in levels:
            session.thinking_level = levels[0]
        options.append(
            _select_option(
                "reasoning_effort",
                "Reasoning Effort",
                "Choose how much reasoning to apply",
                session.thinking_level,
                [(level, format_thinking_level(level)) for level in levels],
                category="thought_level",
            )
        )
    delivery = [("all", "All at once"), ("one-at-a-time", "One at a time")]
    toggle = [("on", "On"), ("off", "Off")]
    options.append(
        _select_option(
            "steering_mode",
            "Steering Mode",
            "How to deliver steering messages",
            session.steering_mode or DEFAULT_STEERING_MODE,
            delivery,
        )
    )
    options.append(
        _select_option(
            "follow_up_mode",
            "Follow-up Mode",
            "How to deliver follow-up messages",
            session.follow_up_mode or DEFAULT_FOLLOW_UP_MODE,
            delivery,
        )
    )
    options.append(
        _select_option(
            "auto_compaction",
            "Auto Compaction",
            "Automatically compact when context is full",
            "on" if session.auto_compaction else "off",
            toggle,
        )
    )
    options.append(
        _select_option(
            "auto_retry",
            "Auto Retry",
            "Automatically retry on transient errors",
            "on" if session.auto_retry else "off",
            toggle,
        )
    )
    return options
