"""Relay PM-tool tasks to field workers over Telegram."""

__version__ = "0.1.0"
