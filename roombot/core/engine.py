"""Execution engine: the per-room phase loop.

Each iteration:
1. Honor stop_requested.
2. Build the phase prompt and call the room's model provider through
   execute_with_retry (rate limited, cancellable by the room's stop event).
3. Parse actions and run them strictly in order through a ToolExecutor
   rooted at the room's project. Sandbox rejections and command failures are
   written into history for the model to see; they never end the loop.
4. Handle SwitchMode (re-prompt under the new phase) and Done (terminal).
5. Persist after every step.

Room state is never held locked across a provider call or tool execution:
the loop works from snapshots and writes results back with short updates.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from roombot.core.catalog import MessageCatalog
from roombot.core.context import PROJECT_DOCUMENTS, ProgressFeed, PromptBuilder
from roombot.core.interfaces import ChatProvider, ProviderError
from roombot.core.models import (
    Action,
    Done,
    Find,
    ListDir,
    LoopOutcome,
    ReadFile,
    ShellCommand,
    SwitchMode,
    TaskPhase,
    WriteFile,
    describe_action,
    phase_from_name,
)
from roombot.core.parser import ActionParser, clean_agent_thought
from roombot.core.retry import (
    RateLimiter,
    RetryCancelledError,
    RetryExhaustedError,
    RetryPolicy,
    execute_with_retry,
)
from roombot.core.state import PersistenceError, RoomState, StateStore
from roombot.providers.registry import ProviderRegistry
from roombot.sandbox.executor import CommandTimeouts, ExecError, ToolExecutor
from roombot.sandbox.policy import SandboxPolicy, SandboxViolation, sanitize_path

logger = logging.getLogger(__name__)

# Writable file types while planning
PLANNING_WRITE_SUFFIXES = frozenset([".md", ".txt", ".yaml", ".yml", ".json"])
PLANNING_PHASES = frozenset([TaskPhase.NEW_PROJECT, TaskPhase.PLANNING])

THOUGHT_PREVIEW_CHARS = 200


class EngineError(Exception):
    """Error in execution engine."""

    pass


@dataclass
class _LoopContext:
    room_id: str
    chat: ChatProvider
    feed: ProgressFeed
    stop_event: asyncio.Event
    persistence_reported: bool = False


@dataclass
class _BatchResult:
    switched_to: TaskPhase | None = None
    done: bool = False
    stopped: bool = False
    traces: list[str] = field(default_factory=list)


class ExecutionEngine:
    """Drives model calls, action parsing and sandboxed execution per room."""

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        projects_dir: str | Path | None,
        catalog: MessageCatalog | None = None,
        prompts: PromptBuilder | None = None,
        parser: ActionParser | None = None,
        retry_policy: RetryPolicy | None = None,
        timeouts: CommandTimeouts | None = None,
        max_steps: int = 20,
        max_history_chars: int = 60_000,
        max_output_bytes: int = 64 * 1024,
    ):
        self.store = store
        self.providers = providers
        self.projects_dir = Path(projects_dir).resolve() if projects_dir else None
        self.catalog = catalog or MessageCatalog()
        self.prompts = prompts or PromptBuilder()
        self.parser = parser or ActionParser()
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeouts = timeouts or CommandTimeouts()
        self.max_steps = max_steps
        self.max_history_chars = max_history_chars
        self.max_output_bytes = max_output_bytes

    @property
    def rate_limiter(self) -> RateLimiter:
        return self.providers.rate_limiter

    # --- Room helpers ---

    def tools_for(self, room: RoomState) -> ToolExecutor:
        """ToolExecutor confined to the room's project (or the projects dir)."""
        root = room.project_root or self.projects_dir
        return ToolExecutor(
            SandboxPolicy(root),
            timeouts=self.timeouts,
            max_output_bytes=self.max_output_bytes,
        )

    @staticmethod
    def working_dir_for(room: RoomState, tools: ToolExecutor) -> str | None:
        if room.working_dir:
            return room.working_dir
        if tools.policy.root is not None:
            return str(tools.policy.root)
        return None

    def display_path(self, path: str | Path | None) -> str:
        if path is None:
            return "(none)"
        return sanitize_path(path, self.projects_dir)

    def _append_history(self, room: RoomState, text: str) -> None:
        history = room.history + text
        if len(history) > self.max_history_chars:
            history = history[-self.max_history_chars:]
        room.history = history

    async def _persist(self, ctx: _LoopContext, mutator: Callable[[RoomState], object]) -> None:
        try:
            await self.store.update(ctx.room_id, mutator)
        except PersistenceError as e:
            logger.error(f"Room {ctx.room_id}: {e}")
            if not ctx.persistence_reported:
                ctx.persistence_reported = True
                await ctx.feed.notify(self.catalog.get("persistence_failed", error=e))

    async def _typing(self, chat: ChatProvider, active: bool) -> None:
        try:
            await chat.typing(active)
        except Exception as e:
            logger.debug(f"Typing indicator failed in {chat.room_id()}: {e}")

    async def _read_documents(self, tools: ToolExecutor, cwd: str | None) -> dict[str, str]:
        documents: dict[str, str] = {}
        if cwd is None:
            return documents
        for name in PROJECT_DOCUMENTS:
            if not (Path(cwd) / name).is_file():
                continue
            try:
                documents[name] = await tools.read_file(name, cwd)
            except (SandboxViolation, ExecError) as e:
                logger.debug(f"Skipping {name}: {e}")
        return documents

    async def _complete(self, room: RoomState, prompt: str, abort: asyncio.Event) -> str:
        resolved = self.providers.resolve(room.active_agent)
        model = room.active_model or resolved.model
        return await execute_with_retry(
            lambda: resolved.provider.completion(prompt, model),
            self.retry_policy,
            rate_limiter=self.rate_limiter,
            provider_key=resolved.key,
            abort=abort,
        )

    # --- Loop control ---

    def is_running(self, room_id: str) -> bool:
        return self.store.runtime(room_id).is_running

    async def start_loop(self, chat: ChatProvider) -> bool:
        """Spawn the room's task loop. Returns False if one is already live."""
        room_id = chat.room_id()
        runtime = self.store.runtime(room_id)
        if runtime.is_running:
            return False

        def _clear_stop(room: RoomState) -> None:
            room.stop_requested = False

        try:
            await self.store.update(room_id, _clear_stop)
        except PersistenceError as e:
            logger.error(f"Room {room_id}: {e}")

        # Another start may have won the race during the save
        if runtime.is_running:
            return False
        runtime.stop_event.clear()
        runtime.task = asyncio.create_task(self.run_loop(chat), name=f"roombot-loop-{room_id}")
        return True

    async def wait(self, room_id: str) -> LoopOutcome | None:
        """Await the room's loop, if any, and return its outcome."""
        task = self.store.runtime(room_id).task
        if task is None:
            return None
        return await task

    async def request_stop(self, room_id: str) -> bool:
        """Set the cooperative stop flag. Returns True if a loop is live."""

        def _request(room: RoomState) -> None:
            room.stop_requested = True

        runtime = self.store.runtime(room_id)
        if not runtime.is_running:
            logger.info(f"Stop requested for idle room {room_id}")
            return False

        runtime.stop_event.set()
        try:
            await self.store.update(room_id, _request)
        except PersistenceError as e:
            logger.error(f"Room {room_id}: {e}")
        logger.info(f"Stop requested for room {room_id}")
        return runtime.is_running

    async def run_loop(self, chat: ChatProvider) -> LoopOutcome:
        """Run the phase loop until Done, stop, failure, idle or step budget."""
        room_id = chat.room_id()
        runtime = self.store.runtime(room_id)
        room = await self.store.snapshot(room_id)
        feed = ProgressFeed(chat)
        ctx = _LoopContext(room_id=room_id, chat=chat, feed=feed, stop_event=runtime.stop_event)

        title = self.catalog.get("loop_started", task=room.active_task or "(no task)")
        message_id = await feed.start(title)
        await self._persist(ctx, lambda r: setattr(r, "feed_message_id", message_id))

        try:
            outcome = await self._loop(ctx)
        except Exception as e:
            logger.exception(f"Task loop crashed in room {room_id}")
            await feed.notify(self.catalog.get("provider_failed", error=e))
            outcome = LoopOutcome.PROVIDER_FAILED

        logger.info(f"Room {room_id} loop finished: {outcome.value}")
        return outcome

    async def _loop(self, ctx: _LoopContext) -> LoopOutcome:
        for step in range(self.max_steps):
            room = await self.store.snapshot(ctx.room_id)
            if room.stop_requested or ctx.stop_event.is_set():
                return await self._acknowledge_stop(ctx)

            if room.phase == TaskPhase.DONE:
                await ctx.feed.notify(self.catalog.get("task_complete"))
                return LoopOutcome.DONE

            tools = self.tools_for(room)
            cwd = self.working_dir_for(room, tools)
            documents = await self._read_documents(tools, cwd)
            instructions = self.prompts.phase_instructions(
                room.phase, self.display_path(cwd), documents
            )
            prompt = self.prompts.build_prompt(room.history, room.active_task or "", instructions)

            logger.info(f"Room {ctx.room_id} step {step + 1}/{self.max_steps} ({room.phase.value})")
            await self._typing(ctx.chat, True)
            try:
                response = await self._complete(room, prompt, ctx.stop_event)
            except RetryCancelledError:
                return await self._acknowledge_stop(ctx)
            except (RetryExhaustedError, ProviderError) as e:
                logger.error(f"Room {ctx.room_id} provider failure: {e}")
                await ctx.feed.notify(self.catalog.get("provider_failed", error=e))
                return LoopOutcome.PROVIDER_FAILED
            finally:
                await self._typing(ctx.chat, False)

            await self._persist(ctx, lambda r: self._append_history(r, f"\n\nAgent: {response}"))

            thought = clean_agent_thought(response)
            actions = self.parser.parse(response)
            if not actions:
                # Conversational reply: show it and wait for the user
                if thought:
                    await self._send(ctx, thought)
                else:
                    await ctx.feed.notify(self.catalog.get("awaiting_input"))
                return LoopOutcome.AWAITING_INPUT

            if thought:
                preview = thought.splitlines()[0][:THOUGHT_PREVIEW_CHARS]
                await ctx.feed.add(preview)

            batch = await self._run_actions(ctx, room.phase, tools, cwd, actions)

            if batch.stopped:
                return await self._acknowledge_stop(ctx)

            if batch.done:
                return await self._finish(ctx, room.phase)

            if batch.switched_to is not None:
                await ctx.feed.add(self.catalog.get("phase_switched", phase=batch.switched_to.value))

        await ctx.feed.notify(self.catalog.get("max_steps", max_steps=self.max_steps))
        return LoopOutcome.MAX_STEPS

    async def _send(self, ctx: _LoopContext, content: str) -> None:
        try:
            await ctx.chat.send_message(content)
        except Exception as e:
            ctx.feed.dropped_notifications += 1
            logger.warning(f"Dropped message for {ctx.room_id}: {e}")

    async def _acknowledge_stop(self, ctx: _LoopContext) -> LoopOutcome:
        def _clear(room: RoomState) -> None:
            room.stop_requested = False

        ctx.stop_event.clear()
        await self._persist(ctx, _clear)
        await ctx.feed.notify(self.catalog.get("task_stopped"))
        return LoopOutcome.STOPPED

    async def _finish(self, ctx: _LoopContext, phase: TaskPhase) -> LoopOutcome:
        await self._persist(ctx, lambda r: setattr(r, "phase", TaskPhase.DONE))
        key = "planning_complete" if phase in PLANNING_PHASES else "task_complete"
        await ctx.feed.notify(self.catalog.get(key))
        return LoopOutcome.DONE

    # --- Actions ---

    async def _run_actions(
        self,
        ctx: _LoopContext,
        phase: TaskPhase,
        tools: ToolExecutor,
        cwd: str | None,
        actions: list[Action],
    ) -> _BatchResult:
        """Execute one response's actions strictly in order."""
        result = _BatchResult()
        for index, action in enumerate(actions):
            if index > 0 and await self._stop_pending(ctx):
                result.stopped = True
                return result

            if isinstance(action, Done):
                result.done = True
                return result

            if isinstance(action, SwitchMode):
                target = phase_from_name(action.phase)
                if target is None:
                    trace = "\nSystem: " + self.catalog.get("invalid_mode", mode=action.phase)
                    await self._persist(ctx, lambda r, t=trace: self._append_history(r, t))
                    continue

                def _switch(room: RoomState, new_phase: TaskPhase = target) -> None:
                    room.phase = new_phase
                    self._append_history(room, f"\nSystem: Switched to {new_phase.value} mode.")

                await self._persist(ctx, _switch)
                result.switched_to = target
                # Remaining actions were written for the old phase
                return result

            trace, ok = await self.execute_action(action, phase, tools, cwd)
            result.traces.append(trace)
            await self._persist(ctx, lambda r, t=trace: self._append_history(r, t))
            await ctx.feed.add(f"{'✓' if ok else '✗'} {describe_action(action)}")

        if await self._stop_pending(ctx):
            result.stopped = True
        return result

    async def _stop_pending(self, ctx: _LoopContext) -> bool:
        if ctx.stop_event.is_set():
            return True
        room = await self.store.snapshot(ctx.room_id)
        return room.stop_requested

    def check_permission(self, action: Action, phase: TaskPhase) -> str | None:
        """Denial message if the phase forbids the action, else None."""
        if phase not in PLANNING_PHASES:
            return None
        if isinstance(action, ShellCommand):
            return self.catalog.get("permission_denied_shell", phase=phase.value)
        if isinstance(action, WriteFile):
            if Path(action.path).suffix.lower() not in PLANNING_WRITE_SUFFIXES:
                return self.catalog.get(
                    "permission_denied_write", phase=phase.value, path=action.path
                )
        return None

    async def execute_action(
        self,
        action: Action,
        phase: TaskPhase,
        tools: ToolExecutor,
        cwd: str | None,
    ) -> tuple[str, bool]:
        """Run one action; returns (history trace, succeeded)."""
        header = f"\n{describe_action(action)}"
        denial = self.check_permission(action, phase)
        if denial is not None:
            logger.info(f"Denied in {phase.value}: {describe_action(action)}")
            return f"{header}\nSystem: {denial}", False

        try:
            if isinstance(action, ShellCommand):
                outcome = await tools.execute_command(action.command, cwd)
                return f"{header}\nOutput:\n{outcome.output}", outcome.ok
            if isinstance(action, WriteFile):
                written = await tools.write_file(action.path, action.content, cwd)
                return f"{header}\nSystem: Wrote {tools.policy.display(written)}", True
            if isinstance(action, ReadFile):
                content = await tools.read_file(action.path, cwd)
                return f"{header}\nOutput:\n{content}", True
            if isinstance(action, ListDir):
                listing = await tools.list_dir(action.path, cwd)
                return f"{header}\nOutput:\n{listing}", True
            if isinstance(action, Find):
                found = await tools.find_files(action.path, action.pattern, cwd)
                return f"{header}\nOutput:\n{found}", True
        except SandboxViolation as e:
            logger.warning(f"Sandbox rejected {describe_action(action)}: {e}")
            return f"{header}\nSystem: " + self.catalog.get("sandbox_rejected", error=e), False
        except ExecError as e:
            return f"{header}\nSystem: " + self.catalog.get("action_failed", error=e), False

        raise EngineError(f"Unsupported action: {action!r}")

    # --- Single-shot questions ---

    async def ask(self, chat: ChatProvider, question: str) -> str | None:
        """Answer a question with one model call; no actions are executed."""
        room_id = chat.room_id()
        room = await self.store.snapshot(room_id)
        tools = self.tools_for(room)
        cwd = self.working_dir_for(room, tools)
        documents = await self._read_documents(tools, cwd)
        instructions = self.prompts.render(
            "ask.j2", working_dir=self.display_path(cwd), documents=documents
        )
        prompt = self.prompts.build_prompt(room.history, question, instructions)

        runtime = self.store.runtime(room_id)
        await self._typing(chat, True)
        try:
            response = await self._complete(room, prompt, runtime.stop_event)
        except (RetryExhaustedError, RetryCancelledError, ProviderError) as e:
            logger.error(f"Room {room_id} ask failed: {e}")
            await ProgressFeed(chat).notify(self.catalog.get("provider_failed", error=e))
            return None
        finally:
            await self._typing(chat, False)

        answer = clean_agent_thought(response) or response.strip()

        def _record(r: RoomState) -> None:
            self._append_history(r, f"\n\nUser: {question}\n\nAgent: {answer}")

        try:
            await self.store.update(room_id, _record)
        except PersistenceError as e:
            logger.error(f"Room {room_id}: {e}")
        await chat.send_message(answer)
        return answer
