"""Per-session event translation: tool calls, status, stats and heartbeats."""
