"""Chat command surface.

Messages starting with '.' are commands; ',<cmd>' is the admin raw-shell
shortcut. Anything else is ignored so the bot can share a room with people.
Long-running work (the task loop) is spawned through the engine and never
awaited here.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path

from roombot.core.catalog import MessageCatalog
from roombot.core.config import AppConfig
from roombot.core.engine import ExecutionEngine
from roombot.core.interfaces import ChatProvider
from roombot.core.models import TaskPhase
from roombot.core.state import PersistenceError, RoomState, StateStore
from roombot.sandbox.executor import ExecError, ToolExecutor
from roombot.sandbox.policy import SandboxPolicy, SandboxViolation

logger = logging.getLogger(__name__)

PROJECT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")

RAW_SHELL_PREFIX = ","

Handler = Callable[[ChatProvider, str, str], Awaitable[None]]


class CommandRouter:
    """Dispatches chat commands to state changes and engine calls."""

    def __init__(
        self,
        config: AppConfig,
        store: StateStore,
        engine: ExecutionEngine,
        catalog: MessageCatalog | None = None,
    ):
        self.config = config
        self.store = store
        self.engine = engine
        self.catalog = catalog or engine.catalog
        self.projects_dir = config.projects_path
        self._handlers: dict[str, Handler] = {
            ".new": self.handle_new,
            ".project": self.handle_project,
            ".list": self.handle_list,
            ".task": self.handle_task,
            ".start": self.handle_start,
            ".stop": self.handle_stop,
            ".cancel": self.handle_stop,
            ".resume": self.handle_resume,
            ".continue": self.handle_resume,
            ".ok": self.handle_resume,
            ".status": self.handle_status,
            ".agent": self.handle_agent,
            ".model": self.handle_model,
            ".ask": self.handle_ask,
            ".read": self.handle_read,
            ".run": self.handle_run,
            ".exec": self.handle_run,
            ".help": self.handle_help,
        }

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, chat: ChatProvider, sender: str, message: str) -> bool:
        """Handle one chat message. Returns False if it was not a command."""
        msg = message.strip()
        if msg.startswith(RAW_SHELL_PREFIX):
            await self.handle_run(chat, sender, msg[len(RAW_SHELL_PREFIX):].strip())
            return True
        if not msg.startswith("."):
            return False

        cmd, _, args = msg.partition(" ")
        cmd = cmd.lower()
        args = args.strip()
        logger.info(f"Dispatching cmd='{cmd}' args='{args}' sender='{sender}' room='{chat.room_id()}'")

        handler = self._handlers.get(cmd)
        if handler is None:
            await self._reply(chat, self.catalog.get("unknown_command"))
            return True
        await handler(chat, sender, args)
        return True

    # --- Helpers ---

    async def _reply(self, chat: ChatProvider, content: str) -> None:
        try:
            await chat.send_message(content)
        except Exception as e:
            logger.warning(f"Dropped reply to {chat.room_id()}: {e}")

    async def _update(self, chat: ChatProvider, mutator: Callable[[RoomState], object]) -> None:
        try:
            await self.store.update(chat.room_id(), mutator)
        except PersistenceError as e:
            logger.error(f"Room {chat.room_id()}: {e}")
            await self._reply(chat, self.catalog.get("persistence_failed", error=e))

    def _projects_tools(self) -> ToolExecutor:
        self.projects_dir.mkdir(parents=True, exist_ok=True)
        return ToolExecutor(SandboxPolicy(self.projects_dir))

    async def _start(self, chat: ChatProvider) -> None:
        if not await self.engine.start_loop(chat):
            await self._reply(chat, self.catalog.get("loop_already_running"))

    # --- Projects ---

    async def handle_new(self, chat: ChatProvider, sender: str, args: str) -> None:
        parts = args.split(None, 1)
        name = parts[0] if parts else f"project-{datetime.now():%Y%m%d-%H%M%S}"
        requirements = parts[1].strip() if len(parts) > 1 else ""

        if not PROJECT_NAME_PATTERN.match(name):
            await self._reply(chat, self.catalog.get("invalid_project_name", name=name))
            return
        if self.engine.is_running(chat.room_id()):
            await self._reply(chat, self.catalog.get("loop_already_running"))
            return

        tools = self._projects_tools()
        project = self.projects_dir / name
        if project.exists():
            await self._reply(
                chat, self.catalog.get("project_exists", name=name, path=self.engine.display_path(project))
            )
            return
        try:
            project = await tools.create_dir(name)
        except (SandboxViolation, ExecError) as e:
            await self._reply(chat, self.catalog.get("command_failed", error=e))
            return

        def _enter(room: RoomState) -> None:
            room.project_root = str(project)
            room.working_dir = str(project)
            room.phase = TaskPhase.NEW_PROJECT
            room.active_task = requirements or None
            room.history = ""
            room.stop_requested = False

        await self._update(chat, _enter)
        await self._reply(
            chat, self.catalog.get("project_created", name=name, path=self.engine.display_path(project))
        )
        logger.info(f"Created project {project} for room {chat.room_id()}")

        if requirements:
            await self._start(chat)

    async def handle_project(self, chat: ChatProvider, sender: str, args: str) -> None:
        if not args:
            await self._reply(chat, self.catalog.get("usage_project"))
            return
        if self.engine.is_running(chat.room_id()):
            await self._reply(chat, self.catalog.get("loop_already_running"))
            return

        policy = SandboxPolicy(self.projects_dir)
        # Host path inside projects_dir, or the /<name> form shown by .status
        candidates = [args, args.lstrip("/")] if Path(args).is_absolute() else [args]
        project = None
        for candidate in candidates:
            try:
                project = policy.validate_path(candidate)
                break
            except SandboxViolation:
                continue

        if project is None or not project.is_dir() or project == policy.root:
            await self._reply(chat, self.catalog.get("project_not_found", path=args))
            return

        def _switch(room: RoomState) -> None:
            room.project_root = str(project)
            room.working_dir = str(project)
            room.phase = TaskPhase.PLANNING
            room.history = ""
            room.stop_requested = False

        await self._update(chat, _switch)
        await self._reply(chat, self.catalog.get("project_switched", path=self.engine.display_path(project)))

    async def handle_list(self, chat: ChatProvider, sender: str, args: str) -> None:
        if not self.projects_dir.is_dir():
            await self._reply(chat, self.catalog.get("project_list_empty"))
            return
        names = sorted(
            p.name for p in self.projects_dir.iterdir() if p.is_dir() and not p.name.startswith(".")
        )
        if not names:
            await self._reply(chat, self.catalog.get("project_list_empty"))
            return
        listing = "\n".join(f"- {name}" for name in names)
        await self._reply(chat, self.catalog.get("project_list", projects=listing))

    # --- Task lifecycle ---

    async def handle_task(self, chat: ChatProvider, sender: str, args: str) -> None:
        if not args:
            await self._reply(chat, self.catalog.get("usage_task"))
            return
        room = await self.store.snapshot(chat.room_id())
        if not room.project_root:
            await self._reply(chat, self.catalog.get("no_project"))
            return
        if self.engine.is_running(chat.room_id()):
            await self._reply(chat, self.catalog.get("loop_already_running"))
            return

        def _set_task(r: RoomState) -> None:
            r.active_task = args
            r.phase = TaskPhase.PLANNING
            r.history = ""

        await self._update(chat, _set_task)
        await self._reply(chat, self.catalog.get("task_set", task=args))
        await self._start(chat)

    async def handle_start(self, chat: ChatProvider, sender: str, args: str) -> None:
        room = await self.store.snapshot(chat.room_id())
        if not room.active_task:
            await self._reply(chat, self.catalog.get("no_task"))
            return
        if self.engine.is_running(chat.room_id()):
            await self._reply(chat, self.catalog.get("loop_already_running"))
            return

        await self._update(chat, lambda r: setattr(r, "phase", TaskPhase.EXECUTION))
        await self._start(chat)

    async def handle_resume(self, chat: ChatProvider, sender: str, args: str) -> None:
        room = await self.store.snapshot(chat.room_id())
        if not room.active_task:
            await self._reply(chat, self.catalog.get("no_task"))
            return
        await self._start(chat)

    async def handle_stop(self, chat: ChatProvider, sender: str, args: str) -> None:
        running = await self.engine.request_stop(chat.room_id())
        key = "stop_requested" if running else "nothing_running"
        await self._reply(chat, self.catalog.get(key))

    async def handle_status(self, chat: ChatProvider, sender: str, args: str) -> None:
        room = await self.store.snapshot(chat.room_id())
        agent = room.active_agent or self.engine.providers.default_agent or "(none)"
        await self._reply(
            chat,
            self.catalog.get(
                "status",
                project=self.engine.display_path(room.project_root),
                working_dir=self.engine.display_path(room.working_dir),
                task=room.active_task or "(none)",
                agent=agent,
                model=room.active_model or "(default)",
                phase=room.phase.value,
                running="yes" if self.engine.is_running(chat.room_id()) else "no",
            ),
        )

    # --- Agent / model ---

    async def handle_agent(self, chat: ChatProvider, sender: str, args: str) -> None:
        available = ", ".join(self.engine.providers.names()) or "(none)"
        if not args:
            room = await self.store.snapshot(chat.room_id())
            agent = room.active_agent or self.engine.providers.default_agent or "(none)"
            await self._reply(chat, self.catalog.get("agent_current", agent=agent, available=available))
            return
        if args not in self.engine.providers:
            await self._reply(chat, self.catalog.get("agent_unknown", agent=args, available=available))
            return

        def _set_agent(room: RoomState) -> None:
            room.active_agent = args
            room.active_model = None

        await self._update(chat, _set_agent)
        await self._reply(chat, self.catalog.get("agent_set", agent=args))

    async def handle_model(self, chat: ChatProvider, sender: str, args: str) -> None:
        if not args:
            room = await self.store.snapshot(chat.room_id())
            await self._reply(chat, self.catalog.get("model_current", model=room.active_model or "(default)"))
            return
        await self._update(chat, lambda r: setattr(r, "active_model", args))
        await self._reply(chat, self.catalog.get("model_set", model=args))

    # --- Project inspection ---

    async def handle_ask(self, chat: ChatProvider, sender: str, args: str) -> None:
        if not args:
            await self._reply(chat, self.catalog.get("usage_ask"))
            return
        await self.engine.ask(chat, args)

    async def handle_read(self, chat: ChatProvider, sender: str, args: str) -> None:
        if not args:
            await self._reply(chat, self.catalog.get("usage_read"))
            return
        room = await self.store.snapshot(chat.room_id())
        if not room.project_root:
            await self._reply(chat, self.catalog.get("no_project"))
            return
        tools = self.engine.tools_for(room)
        try:
            content = await tools.read_file(args, self.engine.working_dir_for(room, tools))
        except (SandboxViolation, ExecError) as e:
            await self._reply(chat, self.catalog.get("read_failed", path=args, error=e))
            return
        await self._reply(chat, content)

    async def handle_run(self, chat: ChatProvider, sender: str, args: str) -> None:
        """Admin-only raw shell in the room's working directory."""
        if not self.config.system.is_admin(sender):
            logger.warning(f"Non-admin {sender} tried to run a shell command")
            await self._reply(chat, self.catalog.get("admin_only", sender=sender))
            return
        if not args:
            await self._reply(chat, self.catalog.get("usage_run"))
            return

        room = await self.store.snapshot(chat.room_id())
        tools = self.engine.tools_for(room)
        try:
            result = await tools.execute_command(args, self.engine.working_dir_for(room, tools))
        except SandboxViolation as e:
            await self._reply(chat, self.catalog.get("command_rejected", error=e))
            return
        except ExecError as e:
            await self._reply(chat, self.catalog.get("command_failed", error=e))
            return
        await self._reply(chat, f"```\n{result.output}\n```")

    async def handle_help(self, chat: ChatProvider, sender: str, args: str) -> None:
        await self._reply(chat, self.catalog.get("help"))
