"""Tests for prompt rendering, progress feeds and the message catalog."""

from __future__ import annotations

import pytest
from jinja2 import UndefinedError

from roombot.core.catalog import DEFAULT_MESSAGES, MessageCatalog
from roombot.core.context import ALLOWED_TEMPLATES, ProgressFeed, PromptBuilder, PromptError
from roombot.core.models import TaskPhase


# =============================================================================
# PromptBuilder
# =============================================================================


@pytest.fixture
def prompts() -> PromptBuilder:
    return PromptBuilder()


class TestPromptBuilder:
    """Tests for template rendering."""

    @pytest.mark.parametrize("phase", list(TaskPhase))
    def test_every_phase_renders(self, prompts, phase):
        text = prompts.phase_instructions(phase, "/a1")
        assert "Working directory: /a1" in text
        # Action grammar is included in every phase
        assert "NO_MORE_STEPS" in text
        assert "```bash" in text

    def test_documents_are_included(self, prompts):
        text = prompts.phase_instructions(TaskPhase.EXECUTION, "/", {"plan.md": "1. step one"})
        assert "### plan.md" in text
        assert "1. step one" in text

    def test_long_documents_are_truncated(self, prompts):
        text = prompts.phase_instructions(TaskPhase.PLANNING, "/", {"tasks.md": "x" * 20000})
        assert "[truncated 12000 chars]" in text

    def test_unknown_template_is_rejected(self, prompts):
        with pytest.raises(ValueError, match="Unknown template"):
            prompts.render("../../etc/passwd")

    def test_missing_variable_is_an_error(self, prompts):
        with pytest.raises(UndefinedError):
            prompts.render("planning.j2", phase="planning")

    def test_missing_template_dir(self, tmp_path):
        with pytest.raises(PromptError):
            PromptBuilder(tmp_path / "nowhere")

    def test_build_prompt_layout(self):
        prompt = PromptBuilder.build_prompt("User: hi", "do it", "INSTRUCTIONS")
        assert prompt == "History:\nUser: hi\n\nUser Question/Task: do it\n\nINSTRUCTIONS"

    def test_allowlist_matches_shipped_templates(self, prompts):
        for name in ALLOWED_TEMPLATES:
            assert prompts.jinja_env.get_template(name) is not None


# =============================================================================
# ProgressFeed
# =============================================================================


class FlakyEditChat:
    """Chat whose edits always fail."""

    def __init__(self, inner):
        self.inner = inner

    def room_id(self) -> str:
        return self.inner.room_id()

    async def send_message(self, content: str) -> str:
        return await self.inner.send_message(content)

    async def edit_message(self, message_id: str, content: str) -> None:
        raise ConnectionError("edit rejected")

    async def send_notification(self, content: str) -> None:
        await self.inner.send_notification(content)


class TestProgressFeed:
    """Tests for the live progress message."""

    @pytest.mark.asyncio
    async def test_start_posts_and_add_edits(self, chat):
        feed = ProgressFeed(chat)
        message_id = await feed.start("Working on: tests")
        await feed.add("✓ Run `pytest`")

        assert chat.sent == ["**Working on: tests**"]
        assert chat.edits == [(message_id, "**Working on: tests**\n- ✓ Run `pytest`")]

    @pytest.mark.asyncio
    async def test_only_last_lines_are_shown(self, chat):
        feed = ProgressFeed(chat, max_lines=2)
        await feed.start("T")
        for i in range(5):
            await feed.add(f"line {i}")
        assert feed.render() == "**T**\n- line 3\n- line 4"

    @pytest.mark.asyncio
    async def test_failed_edit_reposts(self, chat):
        feed = ProgressFeed(FlakyEditChat(chat))
        await feed.start("T")
        await feed.add("one")

        assert feed.failed_edits == 1
        assert len(chat.sent) == 2
        assert feed.message_id == "$event2"

    @pytest.mark.asyncio
    async def test_dropped_notifications_are_counted(self, chat):
        chat.fail_notifications = True
        feed = ProgressFeed(chat)

        assert not await feed.notify("first")
        assert not await feed.notify("second")
        assert feed.dropped_notifications == 2

    @pytest.mark.asyncio
    async def test_delivered_notification(self, chat):
        feed = ProgressFeed(chat)
        assert await feed.notify("hello")
        assert chat.notifications == ["hello"]
        assert feed.dropped_notifications == 0


# =============================================================================
# MessageCatalog
# =============================================================================


class TestMessageCatalog:
    """Tests for user-facing message lookup."""

    def test_defaults(self):
        catalog = MessageCatalog()
        assert catalog.get("task_complete") == "Task complete."
        assert catalog.get("max_steps", max_steps=7) == "Reached the step limit (7). Use .resume to continue."
        assert catalog.keys() == sorted(DEFAULT_MESSAGES)

    def test_override(self):
        catalog = MessageCatalog({"task_complete": "Fertig."})
        assert catalog.get("task_complete") == "Fertig."

    def test_unknown_override_is_ignored(self, caplog):
        catalog = MessageCatalog({"not_a_key": "x"})
        assert "not_a_key" not in catalog.keys()
        assert "Ignoring unknown message override" in caplog.text

    def test_bad_placeholder_falls_back_to_default(self):
        catalog = MessageCatalog({"task_set": "Task: {nonsense}"})
        assert catalog.get("task_set", task="build") == "Task set: build"

    def test_unknown_key_raises(self):
        with pytest.raises(KeyError):
            MessageCatalog().get("no_such_message")

    def test_instances_are_independent(self):
        MessageCatalog({"task_complete": "changed"})
        assert MessageCatalog().get("task_complete") == "Task complete."
