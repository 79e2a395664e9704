"""Sandbox boundary and tool execution for agent-initiated actions."""

from roombot.sandbox.executor import CommandTimeout, ExecError, ExecutionResult, ToolExecutor
from roombot.sandbox.policy import SandboxPolicy, SandboxViolation, sanitize_path

__all__ = [
    "CommandTimeout",
    "ExecError",
    "ExecutionResult",
    "SandboxPolicy",
    "SandboxViolation",
    "ToolExecutor",
    "sanitize_path",
]
