"""CLI entry point for roombot.

Commands:
- roombot init: Write a default roombot.yaml
- roombot chat: Drive a room from the terminal
- roombot status: Show persisted room state
- roombot check-command: Evaluate a shell command against a sandbox root
- roombot version: Show version
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from roombot import __version__
from roombot.chat.console import ConsoleChat
from roombot.core.catalog import MessageCatalog
from roombot.core.config import DEFAULT_CONFIG_NAME, AppConfig, ConfigError, load_config
from roombot.core.engine import ExecutionEngine
from roombot.core.router import CommandRouter
from roombot.core.state import StateStore
from roombot.providers.registry import ProviderRegistry
from roombot.sandbox.policy import SandboxPolicy

console = Console()

EXIT_WORDS = frozenset(["quit", "exit", ".quit", ".exit"])

DEFAULT_CONFIG = """# roombot configuration
system:
  projects_dir: ./projects
  state_file: data/state.json
  admins: []
  max_steps: 20

agents:
  claude:
    provider: claude
    model: null
    api_key_env: null
    requests_per_minute: 10

default_agent: claude

commands:
  timeouts:
    default: 30
    long: 600
    long_commands: [cargo, npm, pip, pytest, make, docker, yarn, go, mvn, gradle]

retry:
  max_attempts: 3
  initial_delay: 2.0
  backoff_multiplier: 2.0
  max_delay: 60.0

# Override any user-facing message by key
messages: {}
"""


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


def _load(ctx: click.Context) -> AppConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def build_router(config: AppConfig) -> tuple[StateStore, ExecutionEngine, CommandRouter]:
    """Wire store, providers, engine and router from config."""
    store = StateStore.load(config.system.state_file)
    catalog = MessageCatalog(config.messages)
    engine = ExecutionEngine(
        store=store,
        providers=ProviderRegistry.from_config(config),
        projects_dir=config.projects_path,
        catalog=catalog,
        retry_policy=config.retry_policy(),
        timeouts=config.command_timeouts(),
        max_steps=config.system.max_steps,
        max_history_chars=config.system.max_history_chars,
        max_output_bytes=config.commands.max_output_bytes,
    )
    return store, engine, CommandRouter(config, store, engine, catalog)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Roombot - chat-driven autonomous task agent.

    Turns chat requests into model-generated actions and runs them inside a
    per-project sandbox.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    _setup_logging(verbose)


@main.command()
@click.option("--force", is_flag=True, help="Overwrite an existing config")
def init(force: bool) -> None:
    """Write a default roombot.yaml in the current directory."""
    config_path = Path.cwd() / DEFAULT_CONFIG_NAME
    if config_path.exists() and not force:
        console.print(f"[yellow]{DEFAULT_CONFIG_NAME} already exists[/yellow]")
        return

    config_path.write_text(DEFAULT_CONFIG)
    (Path.cwd() / "projects").mkdir(exist_ok=True)
    console.print(
        Panel(
            f"[green]Created {DEFAULT_CONFIG_NAME}[/green]\n\n"
            "Next steps:\n"
            f"1. Add your chat handle to system.admins in {DEFAULT_CONFIG_NAME}\n"
            "2. Run: roombot chat",
            title="Roombot",
        )
    )


@main.command()
@click.option("--room", default="console", help="Room id to use")
@click.option("--sender", default="console", help="Sender identity for admin checks")
@click.pass_context
def chat(ctx: click.Context, room: str, sender: str) -> None:
    """Interactive room in the terminal. Type .help for commands, quit to exit."""
    config = _load(ctx)
    store, engine, router = build_router(config)
    chat_provider = ConsoleChat(room=room, console=console)

    async def run() -> None:
        console.print(f"[bold]Room {room}[/bold] - type .help for commands, quit to exit")
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold green]> [/bold green]")
            except (EOFError, KeyboardInterrupt):
                break
            if line.strip().lower() in EXIT_WORDS:
                break
            if not await router.dispatch(chat_provider, sender, line):
                console.print("[dim]Not a command. Type .help for the command list.[/dim]")

        if engine.is_running(room):
            console.print("[yellow]Stopping running task...[/yellow]")
            await engine.request_stop(room)
            await engine.wait(room)
        await store.save()

    asyncio.run(run())


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show persisted room state."""
    config = _load(ctx)
    store = StateStore.load(config.system.state_file)

    room_ids = store.room_ids()
    if not room_ids:
        console.print("[yellow]No rooms recorded yet[/yellow]")
        return

    async def collect() -> list:
        return [(room_id, await store.snapshot(room_id)) for room_id in room_ids]

    table = Table(title="Rooms")
    table.add_column("Room", style="cyan")
    table.add_column("Project")
    table.add_column("Task")
    table.add_column("Agent")
    table.add_column("Phase", style="magenta")
    table.add_column("Stop", style="red")
    table.add_column("Updated")

    for room_id, room in asyncio.run(collect()):
        task = room.active_task or "-"
        table.add_row(
            room_id,
            room.project_root or "-",
            task[:40] + "..." if len(task) > 40 else task,
            room.active_agent or config.default_agent or "-",
            room.phase.value,
            "yes" if room.stop_requested else "",
            room.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@main.command("check-command")
@click.argument("root")
@click.argument("command")
def check_command(root: str, command: str) -> None:
    """Check COMMAND against the sandbox rooted at ROOT."""
    policy = SandboxPolicy(root or None)
    if policy.is_command_safe(command):
        console.print(f"[green]SAFE[/green] {command}")
    else:
        console.print(f"[red]UNSAFE[/red] {command}")
        sys.exit(1)


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"roombot version {__version__}")


if __name__ == "__main__":
    main()
