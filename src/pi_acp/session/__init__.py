"""Session state, persistence and lifecycle."""
