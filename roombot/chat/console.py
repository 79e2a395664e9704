"""Terminal chat collaborator backed by a rich Console."""

import itertools
import logging

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

logger = logging.getLogger(__name__)


class ConsoleChat:
    """ChatProvider that prints to the terminal.

    Edits cannot rewrite terminal history, so an edited message is printed
    again under its original id.
    """

    def __init__(self, room: str = "console", console: Console | None = None):
        self._room = room
        self.console = console or Console()
        self._ids = itertools.count(1)
        self._last_id: str | None = None
        self.messages: dict[str, str] = {}

    def room_id(self) -> str:
        return self._room

    async def send_message(self, content: str) -> str:
        message_id = f"{self._room}-{next(self._ids)}"
        self.messages[message_id] = content
        self._last_id = message_id
        self.console.print(Panel(Markdown(content), title=f"[dim]{message_id}[/dim]", title_align="left"))
        return message_id

    async def edit_message(self, message_id: str, content: str) -> None:
        if message_id not in self.messages:
            raise KeyError(f"Unknown message id: {message_id}")
        if self.messages[message_id] == content:
            return
        self.messages[message_id] = content
        self.console.print(
            Panel(Markdown(content), title=f"[dim]{message_id} (edited)[/dim]", title_align="left")
        )

    async def send_notification(self, content: str) -> None:
        self.console.print(f"[bold cyan]»[/bold cyan] {content}")

    async def typing(self, active: bool) -> None:
        if active:
            self.console.print("[dim]… thinking[/dim]")

    async def get_latest_event_id(self) -> str | None:
        return self._last_id
