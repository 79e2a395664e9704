# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the roombot test suite.

Provides:
- Sandboxed project directories under tmp_path
- Fake chat and model providers that record calls
- A wired StateStore / ExecutionEngine / CommandRouter

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from roombot.core.catalog import MessageCatalog
from roombot.core.config import AppConfig, SystemConfig
from roombot.core.engine import ExecutionEngine
from roombot.core.retry import RetryPolicy
from roombot.core.router import CommandRouter
from roombot.core.state import StateStore
from roombot.providers.registry import ProviderRegistry
from roombot.sandbox.executor import CommandTimeouts, ToolExecutor
from roombot.sandbox.policy import SandboxPolicy


# =============================================================================
# Fake collaborators
# =============================================================================


class FakeChat:
    """ChatProvider that records everything sent to the room."""

    def __init__(self, room: str = "!room:test"):
        self._room = room
        self.messages: dict[str, str] = {}
        self.sent: list[str] = []
        self.edits: list[tuple[str, str]] = []
        self.notifications: list[str] = []
        self.typing_calls: list[bool] = []
        self.fail_notifications = False
        self._counter = 0

    def room_id(self) -> str:
        return self._room

    async def send_message(self, content: str) -> str:
        self._counter += 1
        message_id = f"$event{self._counter}"
        self.messages[message_id] = content
        self.sent.append(content)
        return message_id

    async def edit_message(self, message_id: str, content: str) -> None:
        self.messages[message_id] = content
        self.edits.append((message_id, content))

    async def send_notification(self, content: str) -> None:
        if self.fail_notifications:
            raise ConnectionError("chat server unavailable")
        self.notifications.append(content)

    async def typing(self, active: bool) -> None:
        self.typing_calls.append(active)

    async def get_latest_event_id(self) -> str | None:
        return f"$event{self._counter}" if self._counter else None

    def all_text(self) -> str:
        return "\n".join(self.sent + self.notifications + [c for _, c in self.edits])


class FakeModel:
    """ModelProvider returning scripted responses.

    Each script entry is a string (returned) or an exception (raised).
    A callable entry is invoked with the prompt and its result returned.
    """

    def __init__(self, script: list | None = None):
        self.script = list(script or [])
        self.prompts: list[str] = []
        self.models: list[str | None] = []

    async def completion(self, prompt: str, model: str | None = None) -> str:
        self.prompts.append(prompt)
        self.models.append(model)
        if not self.script:
            return "Nothing more to do. NO_MORE_STEPS"
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(prompt)
        return item

    @property
    def calls(self) -> int:
        return len(self.prompts)


# =============================================================================
# Filesystem fixtures
# =============================================================================


@pytest.fixture
def projects_dir(tmp_path: Path) -> Path:
    path = tmp_path / "projects"
    path.mkdir()
    return path


@pytest.fixture
def project_root(projects_dir: Path) -> Path:
    """A small project inside projects_dir."""
    root = projects_dir / "a1"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.py").write_text("print('hello')\n")
    (root / "README.md").write_text("# a1\n")
    return root.resolve()


@pytest.fixture
def policy(project_root: Path) -> SandboxPolicy:
    return SandboxPolicy(project_root)


@pytest.fixture
def tools(policy: SandboxPolicy) -> ToolExecutor:
    return ToolExecutor(policy, timeouts=CommandTimeouts(default=10.0, long=20.0))


# =============================================================================
# Engine fixtures
# =============================================================================


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def make_chat() -> Callable[[str], FakeChat]:
    return FakeChat


@pytest.fixture
def model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def state_file(tmp_path: Path) -> Path:
    return tmp_path / "data" / "state.json"


@pytest.fixture
def store(state_file: Path) -> StateStore:
    return StateStore.load(state_file)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay=0.0, jitter=0.0)


@pytest.fixture
def registry(model: FakeModel) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("fake", model, model="fake-model-1")
    return registry


@pytest.fixture
def make_engine(
    store: StateStore, registry: ProviderRegistry, projects_dir: Path, fast_retry: RetryPolicy
) -> Callable[..., ExecutionEngine]:
    def _make(**overrides) -> ExecutionEngine:
        kwargs = dict(
            store=store,
            providers=registry,
            projects_dir=projects_dir,
            retry_policy=fast_retry,
            timeouts=CommandTimeouts(default=10.0, long=20.0),
            max_steps=5,
        )
        kwargs.update(overrides)
        return ExecutionEngine(**kwargs)

    return _make


@pytest.fixture
def engine(make_engine: Callable[..., ExecutionEngine]) -> ExecutionEngine:
    return make_engine()


@pytest.fixture
def app_config(projects_dir: Path, state_file: Path) -> AppConfig:
    return AppConfig(
        system=SystemConfig(
            projects_dir=str(projects_dir),
            state_file=str(state_file),
            admins=["Alice"],
        ),
    )


@pytest.fixture
def router(app_config: AppConfig, store: StateStore, engine: ExecutionEngine) -> CommandRouter:
    return CommandRouter(app_config, store, engine, MessageCatalog())
