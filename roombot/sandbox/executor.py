"""Tool execution inside the sandbox boundary.

ToolExecutor is the only component that touches the host filesystem or
spawns processes on the agent's behalf. Every operation validates its target
through SandboxPolicy first; a rejection short-circuits before any I/O.

Command failures (non-zero exit) are returned as data in ExecutionResult so the
engine can feed them back to the model. Only sandbox rejections, timeouts and
spawn failures raise.
"""

import asyncio
import fnmatch
import logging
import os
import shutil
import signal
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel

from roombot.sandbox.policy import SandboxError, SandboxPolicy, SandboxViolation

logger = logging.getLogger(__name__)


class ExecError(SandboxError):
    """A command could not be run to completion."""

    pass


class CommandTimeout(ExecError):
    """A command exceeded its timeout and was killed."""

    pass


STDERR_SEPARATOR = "\n--- STDERR ---\n"
NO_OUTPUT = "(no output)"
NO_MATCHES = "No matching files found."

FIND_MAX_DEPTH = 10
FIND_MAX_RESULTS = 200


class ExecutionResult(BaseModel):
    """Result of a sandboxed command."""

    command: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def error_payload(self) -> str:
        """stderr, or stdout when stderr is empty."""
        return self.stderr if self.stderr.strip() else self.stdout

    @property
    def output(self) -> str:
        """Combined text fed back to the model."""
        text = self.stdout
        if self.stderr:
            text += STDERR_SEPARATOR + self.stderr
        if self.returncode != 0:
            text += f"\n[Exit Code: {self.returncode}]"
        return text if text.strip() else NO_OUTPUT


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed.

    Prevents downstream memory issues from unbounded command output.
    """
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Truncate by bytes, ensuring we don't cut in the middle of a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


@dataclass
class CommandTimeouts:
    """Per-command timeout selection."""

    default: float = 30.0
    long: float = 600.0
    long_commands: list[str] = field(
        default_factory=lambda: [
            "cargo", "npm", "pip", "pytest", "make", "docker", "yarn", "go", "mvn", "gradle",
        ]
    )

    def for_command(self, command: str) -> float:
        words = command.split()
        if words and Path(words[0]).name in self.long_commands:
            return self.long
        return self.default


class ToolExecutor:
    """Filesystem and shell operations confined to a SandboxPolicy."""

    def __init__(
        self,
        policy: SandboxPolicy,
        timeouts: CommandTimeouts | None = None,
        max_output_bytes: int = 64 * 1024,
    ):
        self.policy = policy
        self.timeouts = timeouts or CommandTimeouts()
        self.max_output_bytes = max_output_bytes

    # --- Shell ---

    async def execute_command(
        self,
        command: str,
        workdir: str | Path | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run command text verbatim under `sh -c` in a validated directory.

        Raises:
            SandboxViolation: Unsafe command or working directory.
            CommandTimeout: The process was killed after the timeout.
            ExecError: The shell could not be started.
        """
        command = command.strip()
        if not command:
            raise ExecError("Empty command")

        cwd = self.policy.validate_path(workdir if workdir is not None else ".")
        self.policy.check_command(command)
        if not cwd.is_dir():
            raise ExecError(f"Working directory does not exist: {self.policy.display(cwd)}")

        effective_timeout = timeout if timeout is not None else self.timeouts.for_command(command)
        logger.info(f"Executing in {cwd}: {command}")

        try:
            proc = await asyncio.create_subprocess_exec(
                "sh",
                "-c",
                command,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own process group so a timeout kills the whole pipeline
                start_new_session=True,
            )
        except OSError as e:
            raise ExecError(f"Failed to start shell: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.warning(f"Command timed out after {effective_timeout}s: {command}")
            raise CommandTimeout(f"Command timed out after {effective_timeout:g}s: {command}")

        result = ExecutionResult(
            command=command,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=_truncate_output(stdout.decode("utf-8", errors="replace"), self.max_output_bytes),
            stderr=_truncate_output(stderr.decode("utf-8", errors="replace"), self.max_output_bytes),
        )
        if not result.ok:
            logger.info(f"Command exited with {result.returncode}: {command}")
        return result

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()
        await proc.wait()

    # --- Files ---

    async def read_file(self, path: str | Path, cwd: str | Path | None = None) -> str:
        target = self.policy.resolve(path, cwd)
        try:
            content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            raise ExecError(f"Cannot read {self.policy.display(target)}: {e.strerror or e}") from e
        return _truncate_output(content, self.max_output_bytes)

    async def write_file(
        self, path: str | Path, content: str, cwd: str | Path | None = None
    ) -> Path:
        """Write content, creating parent directories. Returns the written path."""
        target = self.policy.resolve(path, cwd)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise ExecError(f"Cannot write {self.policy.display(target)}: {e.strerror or e}") from e
        logger.info(f"Wrote {len(content)} chars to {target}")
        return target

    async def list_dir(self, path: str | Path = ".", cwd: str | Path | None = None) -> str:
        target = self.policy.resolve(path, cwd)

        def _list() -> str:
            lines = []
            for entry in sorted(target.iterdir(), key=lambda p: p.name):
                kind = "DIR" if entry.is_dir() else "FILE"
                lines.append(f"{entry.name} [{kind}]")
            return "\n".join(lines)

        try:
            listing = await asyncio.to_thread(_list)
        except OSError as e:
            raise ExecError(f"Cannot list {self.policy.display(target)}: {e.strerror or e}") from e
        return listing or "(empty directory)"

    async def create_dir(self, path: str | Path, cwd: str | Path | None = None) -> Path:
        target = self.policy.resolve(path, cwd)
        try:
            await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise ExecError(f"Cannot create {self.policy.display(target)}: {e.strerror or e}") from e
        return target

    async def delete(self, path: str | Path, cwd: str | Path | None = None) -> None:
        target = self.policy.resolve(path, cwd)
        if target == self.policy.root:
            raise SandboxViolation("Refusing to delete the project root")

        def _delete() -> None:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()

        try:
            await asyncio.to_thread(_delete)
        except OSError as e:
            raise ExecError(f"Cannot delete {self.policy.display(target)}: {e.strerror or e}") from e
        logger.info(f"Deleted {target}")

    async def find_files(
        self, path: str | Path, pattern: str, cwd: str | Path | None = None
    ) -> str:
        """Glob search below path.

        Patterns containing '/' match the path relative to the search root,
        others match the file name. Symlinks are never followed.
        """
        base = self.policy.resolve(path, cwd)
        match_relative = "/" in pattern

        def _walk() -> list[str]:
            matches: list[str] = []
            for dirpath, dirnames, filenames in os.walk(base, followlinks=False):
                current = Path(dirpath)
                depth = len(current.relative_to(base).parts)
                if depth >= FIND_MAX_DEPTH:
                    dirnames[:] = []
                dirnames.sort()
                for name in sorted(filenames):
                    relative = (current / name).relative_to(base).as_posix()
                    subject = relative if match_relative else name
                    if fnmatch.fnmatch(subject, pattern):
                        matches.append(relative)
                        if len(matches) >= FIND_MAX_RESULTS:
                            return matches
            return matches

        if not base.is_dir():
            raise ExecError(f"Not a directory: {self.policy.display(base)}")
        matches = await asyncio.to_thread(_walk)
        return "\n".join(matches) if matches else NO_MATCHES
