"""Client side of the pi agent's RPC mode."""

from __future__ import annotations

from pi_acp.pi.messages import PiEvent, PiResponse, PiToolResult, decode_line
from pi_acp.pi.process import PiProcess

__all__ = ["PiEvent", "PiProcess", "PiResponse", "PiToolResult", "decode_line"]
