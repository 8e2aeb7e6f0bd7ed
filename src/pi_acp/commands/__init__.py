"""Slash commands handled by the adapter without a model turn."""
