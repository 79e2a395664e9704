"""Chat collaborators."""

from roombot.chat.console import ConsoleChat

__all__ = ["ConsoleChat"]
