"""User-facing message catalog.

A MessageCatalog instance is passed to the engine and router; there is no
module-level singleton. Deployments override individual entries through the
`messages:` section of the config file.
"""

import logging
from collections.abc import Mapping

logger = logging.getLogger(__name__)


DEFAULT_MESSAGES: dict[str, str] = {
    # Commands
    "unknown_command": "Unknown command. Type .help for the command list.",
    "help": (
        "**Commands**\n"
        "- `.new [name] [requirements]` create a project and start planning\n"
        "- `.project <name|path>` switch to an existing project\n"
        "- `.list` list projects\n"
        "- `.task <description>` plan a task in the current project\n"
        "- `.start` execute the plan\n"
        "- `.stop` (`.cancel`) stop the running task\n"
        "- `.resume` continue the task in its current phase\n"
        "- `.status` show room status\n"
        "- `.agent [name]` show or select the agent\n"
        "- `.model [name]` show or select the model\n"
        "- `.ask <question>` ask about the project without running actions\n"
        "- `.read <path>` show a project file\n"
        "- `.run <cmd>` / `,<cmd>` run a shell command (admins only)"
    ),
    "usage_project": "Usage: .project <name|path>",
    "usage_task": "Usage: .task <description>",
    "usage_ask": "Usage: .ask <question>",
    "usage_read": "Usage: .read <path>",
    "usage_run": "Usage: .run <command>",
    "no_project": "No active project. Use .new or .project first.",
    "no_task": "No active task. Use .task <description> first.",
    "admin_only": "Permission denied: {sender} is not an admin.",
    "project_created": "Created project **{name}** at `{path}`.",
    "project_exists": "Project **{name}** already exists at `{path}`.",
    "invalid_project_name": "Invalid project name `{name}`. Use letters, digits, dot, dash or underscore.",
    "project_switched": "Switched to project `{path}`.",
    "project_not_found": "Project not found: `{path}`",
    "project_list": "**Projects**\n{projects}",
    "project_list_empty": "No projects found.",
    "task_set": "Task set: {task}",
    "agent_current": "Current agent: **{agent}** (available: {available})",
    "agent_set": "Agent set to **{agent}**.",
    "agent_unknown": "Unknown agent `{agent}`. Available: {available}",
    "model_current": "Current model: **{model}**",
    "model_set": "Model set to **{model}**.",
    "status": (
        "**Status**\n"
        "- Project: `{project}`\n"
        "- Working dir: `{working_dir}`\n"
        "- Task: {task}\n"
        "- Agent: {agent}\n"
        "- Model: {model}\n"
        "- Phase: {phase}\n"
        "- Running: {running}"
    ),
    "read_failed": "Cannot read `{path}`: {error}",
    "command_rejected": "Command rejected: {error}",
    "command_failed": "Command failed: {error}",
    # Loop lifecycle
    "loop_started": "Working on: {task}",
    "loop_already_running": "A task is already running in this room. Use .stop first.",
    "stop_requested": "Stop requested. The task will stop after the current step.",
    "nothing_running": "No task is running; stop flag set for the next run.",
    "task_stopped": "Task stopped. Use .resume to continue.",
    "planning_complete": "Planning complete. Review the plan and use .start to execute it.",
    "task_complete": "Task complete.",
    "max_steps": "Reached the step limit ({max_steps}). Use .resume to continue.",
    "awaiting_input": "Waiting for further instructions.",
    "provider_failed": "Model call failed: {error}",
    "persistence_failed": "Could not save room state: {error}",
    "phase_switched": "Switched to {phase} mode.",
    # Fed back to the model
    "permission_denied_shell": (
        "PERMISSION DENIED: shell commands are not allowed in {phase} mode. "
        "Use switch_mode execution first."
    ),
    "permission_denied_write": (
        "PERMISSION DENIED: only documentation files (.md, .txt, .yaml, .json) "
        "can be written in {phase} mode: {path}"
    ),
    "invalid_mode": "Invalid mode '{mode}'. Valid modes: planning, execution.",
    "sandbox_rejected": "Sandbox rejected action: {error}",
    "action_failed": "Action failed: {error}",
}


class MessageCatalog:
    """Lookup table for user-facing strings with str.format placeholders."""

    def __init__(self, overrides: Mapping[str, str] | None = None):
        self._messages = dict(DEFAULT_MESSAGES)
        for key, value in (overrides or {}).items():
            if key not in DEFAULT_MESSAGES:
                logger.warning(f"Ignoring unknown message override: {key}")
                continue
            self._messages[key] = value

    def get(self, key: str, **kwargs: object) -> str:
        template = self._messages[key]
        if not kwargs:
            return template
        try:
            return template.format(**kwargs)
        except (KeyError, IndexError) as e:
            # A bad override must not take the room down
            logger.warning(f"Message '{key}' has a bad placeholder: {e}")
            return DEFAULT_MESSAGES[key].format(**kwargs)

    def keys(self) -> list[str]:
        return sorted(self._messages)
