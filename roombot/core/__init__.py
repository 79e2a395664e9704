"""Core modules for the roombot task agent."""

from roombot.core.models import Action, LoopOutcome, TaskPhase
from roombot.core.parser import ActionParser
from roombot.core.retry import RateLimiter, RetryPolicy, execute_with_retry
from roombot.core.state import BotState, RoomState, StateStore

__all__ = [
    "Action",
    "ActionParser",
    "BotState",
    "LoopOutcome",
    "RateLimiter",
    "RetryPolicy",
    "RoomState",
    "StateStore",
    "TaskPhase",
    "execute_with_retry",
]
