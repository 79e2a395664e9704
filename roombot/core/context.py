"""Prompt building and chat progress reporting for the task loop.

PromptBuilder renders the per-phase instructions from package templates.
ProgressFeed keeps one editable chat message per loop and records every
delivery failure instead of dropping it silently.
"""

import logging
from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

from roombot.core.interfaces import ChatProvider
from roombot.core.models import TaskPhase

logger = logging.getLogger(__name__)


# SECURITY: Allowlist of valid template names (shipped with package)
ALLOWED_TEMPLATES = frozenset([
    "_actions.j2",
    "new_project.j2",
    "planning.j2",
    "execution.j2",
    "ask.j2",
])

PHASE_TEMPLATES: dict[TaskPhase, str] = {
    TaskPhase.NEW_PROJECT: "new_project.j2",
    TaskPhase.PLANNING: "planning.j2",
    TaskPhase.EXECUTION: "execution.j2",
    TaskPhase.DONE: "execution.j2",
}

# Project documents read into the prompt when present in the working dir
PROJECT_DOCUMENTS = ("roadmap.md", "architecture.md", "plan.md", "tasks.md", "progress.md")

DOCUMENT_CHAR_LIMIT = 8000


class PromptError(Exception):
    """Prompt template could not be rendered."""

    pass


class PromptBuilder:
    """Renders phase instructions and assembles the full model prompt."""

    def __init__(self, template_dir: Path | None = None):
        # SECURITY: Template directory is package-internal, not user-controlled
        template_dir = template_dir or Path(__file__).parent.parent / "prompts"
        if not template_dir.is_dir():
            raise PromptError(f"Prompt template directory not found: {template_dir}")

        # SECURITY: Use SandboxedEnvironment to prevent arbitrary code execution
        # StrictUndefined raises errors on undefined variables (catches typos)
        self.jinja_env = SandboxedEnvironment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            autoescape=False,  # Not HTML, no XSS concern
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.jinja_env.filters["truncate_chars"] = self._truncate_chars

    @staticmethod
    def _truncate_chars(text: str, limit: int = DOCUMENT_CHAR_LIMIT) -> str:
        if len(text) <= limit:
            return text
        return text[:limit] + f"\n... [truncated {len(text) - limit} chars]"

    def render(self, template_name: str, **kwargs: Any) -> str:
        # SECURITY: Validate template name against allowlist
        if template_name not in ALLOWED_TEMPLATES:
            raise ValueError(
                f"Unknown template '{template_name}'. "
                f"Allowed: {sorted(ALLOWED_TEMPLATES)}"
            )
        return self.jinja_env.get_template(template_name).render(**kwargs)

    def phase_instructions(
        self,
        phase: TaskPhase,
        working_dir: str,
        documents: dict[str, str] | None = None,
    ) -> str:
        return self.render(
            PHASE_TEMPLATES[phase],
            phase=phase.value,
            working_dir=working_dir,
            documents=documents or {},
        )

    @staticmethod
    def build_prompt(history: str, task: str, instructions: str) -> str:
        return f"History:\n{history}\n\nUser Question/Task: {task}\n\n{instructions}"


class ProgressFeed:
    """Live progress message for one task loop."""

    def __init__(self, chat: ChatProvider, max_lines: int = 15, message_id: str | None = None):
        self.chat = chat
        self.max_lines = max_lines
        self.message_id = message_id
        self.title = ""
        self.lines: list[str] = []
        self.dropped_notifications = 0
        self.failed_edits = 0

    def render(self) -> str:
        body = "\n".join(f"- {line}" for line in self.lines[-self.max_lines:])
        return f"**{self.title}**\n{body}" if body else f"**{self.title}**"

    async def start(self, title: str) -> str | None:
        """Post a fresh progress message."""
        self.title = title
        self.lines = []
        self.message_id = None
        await self._publish()
        return self.message_id

    async def add(self, line: str) -> None:
        self.lines.append(line)
        await self._publish()

    async def _publish(self) -> None:
        content = self.render()
        if self.message_id is not None:
            try:
                await self.chat.edit_message(self.message_id, content)
                return
            except Exception as e:
                self.failed_edits += 1
                logger.warning(f"Progress edit failed in {self.chat.room_id()}: {e}; reposting")

        try:
            self.message_id = await self.chat.send_message(content)
        except Exception as e:
            self.dropped_notifications += 1
            logger.warning(f"Dropped progress update for {self.chat.room_id()}: {e}")

    async def notify(self, content: str) -> bool:
        """Send a notification; returns False (and counts it) if delivery failed."""
        try:
            await self.chat.send_notification(content)
        except Exception as e:
            self.dropped_notifications += 1
            logger.warning(
                f"Dropped notification for {self.chat.room_id()} "
                f"({self.dropped_notifications} so far): {e}"
            )
            return False
        return True
