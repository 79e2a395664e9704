"""Pydantic models for agent actions and task phases."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict


class TaskPhase(str, Enum):
    """Named stage of a room's task loop."""

    NEW_PROJECT = "new_project"
    PLANNING = "planning"
    EXECUTION = "execution"
    DONE = "done"


class LoopOutcome(str, Enum):
    """Why a task loop stopped."""

    DONE = "done"  # Done action seen; phase is terminal
    STOPPED = "stopped"  # stop_requested honored; resumable
    AWAITING_INPUT = "awaiting_input"  # response had no actions
    PROVIDER_FAILED = "provider_failed"  # retries exhausted or fatal provider error
    MAX_STEPS = "max_steps"  # step budget used up; resumable


# SwitchMode target names accepted from the model
PHASE_ALIASES: dict[str, TaskPhase] = {
    "planning": TaskPhase.PLANNING,
    "architect": TaskPhase.PLANNING,
    "execution": TaskPhase.EXECUTION,
    "execute": TaskPhase.EXECUTION,
    "developer": TaskPhase.EXECUTION,
}


def phase_from_name(name: str) -> TaskPhase | None:
    return PHASE_ALIASES.get(name.strip().lower())


# --- Actions ---


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True)


class ShellCommand(_Action):
    kind: Literal["shell"] = "shell"
    command: str


class WriteFile(_Action):
    kind: Literal["write"] = "write"
    path: str
    content: str


class ReadFile(_Action):
    kind: Literal["read"] = "read"
    path: str


class ListDir(_Action):
    kind: Literal["list"] = "list"
    path: str


class Find(_Action):
    kind: Literal["find"] = "find"
    path: str
    pattern: str


class SwitchMode(_Action):
    kind: Literal["switch_mode"] = "switch_mode"
    phase: str


class Done(_Action):
    kind: Literal["done"] = "done"


Action = ShellCommand | WriteFile | ReadFile | ListDir | Find | SwitchMode | Done


def describe_action(action: Action) -> str:
    """One-line summary for progress feeds and logs."""
    if isinstance(action, ShellCommand):
        first_line = action.command.splitlines()[0] if action.command else ""
        return f"Run `{first_line}`"
    if isinstance(action, WriteFile):
        return f"Write `{action.path}`"
    if isinstance(action, ReadFile):
        return f"Read `{action.path}`"
    if isinstance(action, ListDir):
        return f"List `{action.path}`"
    if isinstance(action, Find):
        return f"Find `{action.pattern}` in `{action.path}`"
    if isinstance(action, SwitchMode):
        return f"Switch mode to {action.phase}"
    return "Done"
