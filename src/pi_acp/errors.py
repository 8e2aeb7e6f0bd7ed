"""Exception hierarchy for the adapter."""

from __future__ import annotations


class PiAcpError(Exception):
    """Base class for adapter errors."""


class PiError(PiAcpError):
    """Failure talking to a pi subprocess."""


class PiProcessExited(PiError):
    def __init__(self, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__("pi process exited" if returncode is None else f"pi process exited (code={returncode})")


class PiRequestTimeout(PiError):
    def __init__(self, command: str, timeout_ms: int) -> None:
        self.command = command
        self.timeout_ms = timeout_ms
        super().__init__(f"Pi request timed out: {command}")


class PiResponseError(PiError):
    """The subprocess answered a request with `success: false`."""

    def __init__(self, command: str, error: str | None) -> None:
        self.command = command
        self.error = error
        super().__init__(error or f"pi request failed: {command}")


class PiProtocolError(PiError):
    """A line from the subprocess could not be decoded."""


class UnknownSessionError(PiAcpError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


class UnknownModelError(PiAcpError):
    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"Unknown model: {model_id}")


class UnknownConfigOptionError(PiAcpError):
    def __init__(self, config_id: str) -> None:
        self.config_id = config_id
        super().__init__(f"Unknown config option: {config_id}")


class PromptInProgressError(PiAcpError):
    def __init__(self) -> None:
        super().__init__("Prompt already in progress")
