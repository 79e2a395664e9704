"""Tests for chat command dispatch."""

from __future__ import annotations

import asyncio

import pytest

from roombot.core.models import LoopOutcome, TaskPhase


async def send(router, chat, message: str, sender: str = "bob") -> str:
    """Dispatch a message and return the last reply."""
    await router.dispatch(chat, sender, message)
    return chat.sent[-1] if chat.sent else ""


async def finish(router, chat) -> LoopOutcome | None:
    return await asyncio.wait_for(router.engine.wait(chat.room_id()), timeout=5.0)


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    """Tests for message classification."""

    @pytest.mark.asyncio
    async def test_plain_message_is_not_a_command(self, router, chat):
        assert not await router.dispatch(chat, "bob", "hello everyone")
        assert chat.sent == []

    @pytest.mark.asyncio
    async def test_unknown_command(self, router, chat):
        assert await router.dispatch(chat, "bob", ".frobnicate now")
        assert "Unknown command" in chat.sent[-1]

    @pytest.mark.asyncio
    async def test_commands_are_case_insensitive(self, router, chat):
        reply = await send(router, chat, ".HELP")
        assert "**Commands**" in reply

    def test_command_table(self, router):
        assert {".new", ".project", ".task", ".start", ".stop", ".status", ".run"} <= set(router.commands)


# =============================================================================
# Projects
# =============================================================================


class TestProjects:
    """Tests for .new, .project and .list."""

    @pytest.mark.asyncio
    async def test_new_creates_project_and_enters_it(self, router, chat, store, projects_dir):
        reply = await send(router, chat, ".new webapp")

        assert (projects_dir / "webapp").is_dir()
        assert "Created project **webapp** at `/webapp`" in reply
        room = await store.snapshot(chat.room_id())
        assert room.project_root == str((projects_dir / "webapp").resolve())
        assert room.phase == TaskPhase.NEW_PROJECT
        assert not router.engine.is_running(chat.room_id())

    @pytest.mark.asyncio
    async def test_new_with_requirements_starts_loop(self, router, chat, model):
        await send(router, chat, ".new todo a todo app in rust")

        assert await finish(router, chat) == LoopOutcome.DONE
        assert "User Question/Task: a todo app in rust" in model.prompts[0]
        assert "Mode: new_project" in model.prompts[0]

    @pytest.mark.asyncio
    async def test_new_without_name_generates_one(self, router, chat, projects_dir):
        await send(router, chat, ".new")
        assert [p.name for p in projects_dir.iterdir() if p.name.startswith("project-")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["../evil", "-rf", "a/b", ".hidden"])
    async def test_new_rejects_bad_names(self, router, chat, projects_dir, name):
        reply = await send(router, chat, f".new {name}")
        assert "Invalid project name" in reply
        assert list(projects_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_new_existing_project(self, router, chat, project_root):
        reply = await send(router, chat, ".new a1")
        assert "already exists" in reply

    @pytest.mark.asyncio
    @pytest.mark.parametrize("form", ["a1", "/a1"])
    async def test_project_by_name_or_virtual_path(self, router, chat, store, project_root, form):
        reply = await send(router, chat, f".project {form}")

        assert "Switched to project `/a1`" in reply
        room = await store.snapshot(chat.room_id())
        assert room.project_root == str(project_root)
        assert room.phase == TaskPhase.PLANNING

    @pytest.mark.asyncio
    async def test_project_by_host_path(self, router, chat, store, project_root):
        await send(router, chat, f".project {project_root}")
        assert (await store.snapshot(chat.room_id())).project_root == str(project_root)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["nope", "/etc", "..", "/"])
    async def test_project_not_found(self, router, chat, store, project_root, target):
        reply = await send(router, chat, f".project {target}")
        assert "Project not found" in reply
        assert (await store.snapshot(chat.room_id())).project_root is None

    @pytest.mark.asyncio
    async def test_project_usage(self, router, chat):
        assert "Usage: .project" in await send(router, chat, ".project")

    @pytest.mark.asyncio
    async def test_list(self, router, chat, project_root, projects_dir):
        (projects_dir / "b2").mkdir()
        (projects_dir / "notes.txt").write_text("")
        reply = await send(router, chat, ".list")
        assert reply == "**Projects**\n- a1\n- b2"

    @pytest.mark.asyncio
    async def test_list_empty(self, router, chat):
        assert await send(router, chat, ".list") == "No projects found."


# =============================================================================
# Task lifecycle
# =============================================================================


class TestTaskLifecycle:
    """Tests for .task, .start, .stop and .resume."""

    @pytest.mark.asyncio
    async def test_task_requires_project(self, router, chat):
        assert "No active project" in await send(router, chat, ".task add tests")

    @pytest.mark.asyncio
    async def test_task_plans_in_current_project(self, router, chat, store, model, project_root):
        await send(router, chat, ".project a1")
        await send(router, chat, ".task add a --verbose flag")

        assert await finish(router, chat) == LoopOutcome.DONE
        room = await store.snapshot(chat.room_id())
        assert room.active_task == "add a --verbose flag"
        assert "Mode: planning" in model.prompts[0]
        assert any("Planning complete" in n for n in chat.notifications)

    @pytest.mark.asyncio
    async def test_start_requires_task(self, router, chat):
        assert "No active task" in await send(router, chat, ".start")

    @pytest.mark.asyncio
    async def test_start_executes_plan(self, router, chat, store, model, project_root):
        await send(router, chat, ".project a1")
        await send(router, chat, ".task build it")
        await finish(router, chat)

        model.script = ["```bash\ntouch built.txt\n```\nDONE"]
        await send(router, chat, ".start")

        assert await finish(router, chat) == LoopOutcome.DONE
        assert (project_root / "built.txt").exists()
        assert "Mode: execution" in model.prompts[-1]
        assert "Task complete." in chat.notifications

    @pytest.mark.asyncio
    async def test_stop_with_nothing_running(self, router, chat):
        assert "No task is running" in await send(router, chat, ".stop")

    @pytest.mark.asyncio
    async def test_cancel_is_stop_alias(self, router, chat):
        assert router._handlers[".cancel"] == router.handle_stop
        assert "No task is running" in await send(router, chat, ".cancel")

    @pytest.mark.asyncio
    async def test_resume_requires_task(self, router, chat):
        assert "No active task" in await send(router, chat, ".resume")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("alias", [".resume", ".continue", ".ok"])
    async def test_resume_aliases_restart_loop(self, router, chat, store, model, project_root, alias):
        await send(router, chat, ".project a1")
        await send(router, chat, ".task investigate")
        await finish(router, chat)
        await store.update(chat.room_id(), lambda r: setattr(r, "phase", TaskPhase.EXECUTION))

        await router.dispatch(chat, "bob", alias)

        assert await finish(router, chat) == LoopOutcome.DONE
        assert model.calls == 2


# =============================================================================
# Status, agent, model
# =============================================================================


class TestRoomSettings:
    """Tests for .status, .agent and .model."""

    @pytest.mark.asyncio
    async def test_status(self, router, chat, project_root):
        await send(router, chat, ".project a1")
        reply = await send(router, chat, ".status")

        assert "Project: `/a1`" in reply
        assert "Phase: planning" in reply
        assert "Agent: fake" in reply
        assert "Running: no" in reply

    @pytest.mark.asyncio
    async def test_status_without_project(self, router, chat):
        assert "Project: `(none)`" in await send(router, chat, ".status")

    @pytest.mark.asyncio
    async def test_agent_show_and_set(self, router, chat, store):
        assert "Current agent: **fake**" in await send(router, chat, ".agent")
        assert "Agent set to **fake**" in await send(router, chat, ".agent fake")
        assert (await store.snapshot(chat.room_id())).active_agent == "fake"

    @pytest.mark.asyncio
    async def test_unknown_agent(self, router, chat, store):
        reply = await send(router, chat, ".agent gpt-99")
        assert "Unknown agent `gpt-99`. Available: fake" in reply
        assert (await store.snapshot(chat.room_id())).active_agent is None

    @pytest.mark.asyncio
    async def test_model_show_and_set(self, router, chat, store):
        assert "(default)" in await send(router, chat, ".model")
        assert "Model set to **big-model**" in await send(router, chat, ".model big-model")
        assert (await store.snapshot(chat.room_id())).active_model == "big-model"


# =============================================================================
# Inspection and raw shell
# =============================================================================


class TestInspection:
    """Tests for .read, .ask and .run."""

    @pytest.mark.asyncio
    async def test_read(self, router, chat, project_root):
        await send(router, chat, ".project a1")
        assert await send(router, chat, ".read README.md") == "# a1\n"

    @pytest.mark.asyncio
    async def test_read_outside_project(self, router, chat, project_root):
        await send(router, chat, ".project a1")
        assert "Cannot read `/etc/passwd`" in await send(router, chat, ".read /etc/passwd")

    @pytest.mark.asyncio
    async def test_read_requires_project(self, router, chat):
        assert "No active project" in await send(router, chat, ".read README.md")

    @pytest.mark.asyncio
    async def test_ask(self, router, chat, model, project_root):
        await send(router, chat, ".project a1")
        model.script = ["It prints hello."]
        assert await send(router, chat, ".ask what does main.py do?") == "It prints hello."

    @pytest.mark.asyncio
    async def test_run_denied_for_non_admin(self, router, chat, project_root, mocker):
        spawn = mocker.patch("asyncio.create_subprocess_exec")
        reply = await send(router, chat, ".run ls", sender="mallory")
        assert "mallory is not an admin" in reply
        spawn.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sender", ["Alice", "alice", "ALICE"])
    async def test_run_admin_is_case_insensitive(self, router, chat, project_root, sender):
        await send(router, chat, ".project a1")
        reply = await send(router, chat, ".run ls", sender=sender)
        assert "README.md" in reply

    @pytest.mark.asyncio
    async def test_comma_shortcut_runs_shell(self, router, chat, project_root):
        await send(router, chat, ".project a1")
        assert await router.dispatch(chat, "alice", ",echo shortcut")
        assert "shortcut" in chat.sent[-1]

    @pytest.mark.asyncio
    async def test_run_rejects_unsafe_command(self, router, chat, project_root):
        await send(router, chat, ".project a1")
        reply = await send(router, chat, ".run cat /etc/passwd", sender="alice")
        assert reply.startswith("Command rejected:")

    @pytest.mark.asyncio
    async def test_run_usage(self, router, chat):
        assert "Usage: .run" in await send(router, chat, ".run", sender="alice")
