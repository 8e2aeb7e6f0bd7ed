"""Runtime configuration read from the environment."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass

from pi_acp.log_utils import parse_bool, parse_int

DEFAULT_STDIO_BUFFER_LIMIT_BYTES = 50 * 1024 * 1024
_MIN_STDIO_BUFFER_LIMIT_BYTES = 64 * 1024

DEFAULT_PI_COMMAND = "pi"
DEFAULT_PI_ARGS = ("--mode", "rpc")
DEFAULT_REQUEST_TIMEOUT_MS = 5000
DEFAULT_HISTORY_TIMEOUT_MS = 30000
DEFAULT_STATS_TIMEOUT_MS = 15000
DEFAULT_HEARTBEAT_INTERVAL_S = 30.0


def _parse_stdio_buffer_limit(raw_value: str | None) -> int:
    if raw_value is None:
        return DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    try:
        parsed = int(raw_value)
    except ValueError:
        return DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    return max(parsed, _MIN_STDIO_BUFFER_LIMIT_BYTES)


def _parse_positive_float(raw_value: str | None, default: float) -> float:
    if raw_value is None:
        return default
    try:
        parsed = float(raw_value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class RuntimeSettings:
    pi_command: str = DEFAULT_PI_COMMAND
    pi_args: tuple[str, ...] = DEFAULT_PI_ARGS
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    history_timeout_ms: int = DEFAULT_HISTORY_TIMEOUT_MS
    stats_timeout_ms: int = DEFAULT_STATS_TIMEOUT_MS
    heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S
    status_tool_calls: bool = False
    stdio_buffer_limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES

    @property
    def pi_argv(self) -> list[str]:
        return [self.pi_command, *self.pi_args]


def load_runtime_settings() -> RuntimeSettings:
    """Build settings from `PI_ACP_*` variables, falling back to defaults."""
    raw_args = os.getenv("PI_ACP_PI_ARGS")
    pi_args = tuple(shlex.split(raw_args)) if raw_args is not None else DEFAULT_PI_ARGS
    return RuntimeSettings(
        pi_command=os.getenv("PI_ACP_PI_COMMAND") or DEFAULT_PI_COMMAND,
        pi_args=pi_args,
        request_timeout_ms=parse_int(os.getenv("PI_ACP_REQUEST_TIMEOUT_MS"), DEFAULT_REQUEST_TIMEOUT_MS),
        history_timeout_ms=parse_int(os.getenv("PI_ACP_HISTORY_TIMEOUT_MS"), DEFAULT_HISTORY_TIMEOUT_MS),
        stats_timeout_ms=parse_int(os.getenv("PI_ACP_STATS_TIMEOUT_MS"), DEFAULT_STATS_TIMEOUT_MS),
        heartbeat_interval_s=_parse_positive_float(
            os.getenv("PI_ACP_HEARTBEAT_INTERVAL_S"), DEFAULT_HEARTBEAT_INTERVAL_S
        ),
        status_tool_calls=parse_bool(os.getenv("PI_ACP_STATUS_TOOL_CALLS"), False),
        stdio_buffer_limit=_parse_stdio_buffer_limit(os.getenv("PI_ACP_STDIO_BUFFER_LIMIT_BYTES")),
    )
