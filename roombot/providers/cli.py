"""Model provider that drives an AI CLI (claude, codex, gemini) as a subprocess.

Each call builds its own argument list and environment mapping; the process
environment is never mutated, so concurrent calls for different agents cannot
see each other's credentials.
"""

import asyncio
import json
import logging
import os
import re
import shutil

from roombot.core.interfaces import (
    FatalProviderError,
    MissingCredentialError,
    ProviderError,
    TransientProviderError,
)
from roombot.core.retry import ErrorClassifier, ErrorKind

logger = logging.getLogger(__name__)

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


# --- Output adapters: extract model text from CLI-specific formats ---


class CLIAdapter:
    """Base adapter: stdout IS the model text."""

    def extract_text(self, stdout: str) -> str:
        return stdout


class ClaudeAdapter(CLIAdapter):
    """Claude Code with -p outputs raw markdown (no JSON wrapper)."""

    pass


class CodexAdapter(CLIAdapter):
    """Codex with --json emits JSONL events; text is in the 'result' event."""

    def extract_text(self, stdout: str) -> str:
        for line in reversed(stdout.strip().split("\n")):
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(event, dict) and event.get("type") == "result":
                # {"type": "result", "payload": {"text": "..."}}
                payload = event.get("payload", {})
                model_text = payload.get("text") or payload.get("output") or ""
                if model_text:
                    return model_text

        raise TransientProviderError("Malformed response: no 'result' event in Codex JSONL output")


class GeminiAdapter(CLIAdapter):
    """Gemini with -o json outputs {"output": "..."} or {"text": "..."}."""

    def extract_text(self, stdout: str) -> str:
        try:
            envelope = json.loads(stdout)
        except json.JSONDecodeError:
            # Not JSON: assume raw markdown
            return stdout
        if isinstance(envelope, dict):
            model_text = envelope.get("output") or envelope.get("text") or envelope.get("response")
            if model_text:
                return model_text
        raise TransientProviderError("Malformed response: Gemini envelope has no text")


def get_adapter(cli: str) -> CLIAdapter:
    """Get appropriate adapter for CLI type."""
    adapters: dict[str, CLIAdapter] = {
        "claude": ClaudeAdapter(),
        "codex": CodexAdapter(),
        "gemini": GeminiAdapter(),
    }
    return adapters.get(cli, CLIAdapter())


class CliModelProvider:
    """ModelProvider backed by a locally installed AI CLI."""

    def __init__(
        self,
        cli_name: str,
        api_key_env: str | None = None,
        timeout: float = 600.0,
        extra_env: dict[str, str] | None = None,
    ):
        self.cli_name = cli_name
        self.api_key_env = api_key_env
        self.timeout = timeout
        self.extra_env = dict(extra_env or {})
        self.adapter = get_adapter(cli_name)
        self._classifier = ErrorClassifier()

    def __repr__(self) -> str:
        return f"CliModelProvider({self.cli_name!r})"

    def _get_cli_config(self, model: str | None) -> tuple[list[str], bool]:
        """Get CLI command and whether it uses stdin for prompt.

        Returns:
            Tuple of (command_args, uses_stdin).
            If uses_stdin=False, prompt is appended as final argument.

        Model flag formats:
        - claude: --model <model_id> (before -p)
        - codex: --model <model_id> (after exec)
        - gemini: --model <model_id> (before -o)
        """
        base_configs: dict[str, tuple[list[str], bool]] = {
            # Claude Code CLI: prompt must be argument, not stdin
            "claude": (["claude", "-p"], False),
            "codex": (["codex", "exec", "--json", "--stdin"], True),
            "gemini": (["gemini", "-o", "json"], True),
        }

        cmd_args, uses_stdin = base_configs.get(self.cli_name, ([self.cli_name], True))

        if model:
            model_flag = ["--model", model]
            if self.cli_name == "codex":
                cmd_args = cmd_args[:2] + model_flag + cmd_args[2:]
            else:
                cmd_args = cmd_args[:1] + model_flag + cmd_args[1:]

        return cmd_args, uses_stdin

    def _build_env(self) -> dict[str, str]:
        """Fresh environment for one call.

        Raises:
            MissingCredentialError: The configured API key variable is unset.
        """
        env = dict(os.environ)
        if self.api_key_env and not env.get(self.api_key_env):
            raise MissingCredentialError(
                f"Missing credential: environment variable {self.api_key_env} "
                f"is not set for '{self.cli_name}'"
            )
        env.update(self.extra_env)
        return env

    async def completion(self, prompt: str, model: str | None = None) -> str:
        cmd_args, uses_stdin = self._get_cli_config(model)
        if shutil.which(cmd_args[0]) is None:
            raise MissingCredentialError(f"CLI '{cmd_args[0]}' not found on PATH")

        env = self._build_env()
        if not uses_stdin:
            cmd_args = cmd_args + [prompt]

        logger.debug(f"Calling {self.cli_name} (model={model or 'default'})")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd_args,
                stdin=asyncio.subprocess.PIPE if uses_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise MissingCredentialError(f"Cannot start '{cmd_args[0]}': {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(prompt.encode("utf-8") if uses_stdin else None),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TransientProviderError(f"{self.cli_name} timed out after {self.timeout:g}s")

        out_text = _ANSI_PATTERN.sub("", stdout.decode("utf-8", errors="replace"))
        err_text = _ANSI_PATTERN.sub("", stderr.decode("utf-8", errors="replace")).strip()

        if proc.returncode != 0:
            message = f"{self.cli_name} exited with {proc.returncode}: {err_text or out_text.strip()}"
            if self._classifier.classify(ProviderError(message)) == ErrorKind.FATAL:
                raise FatalProviderError(message)
            raise TransientProviderError(message)

        text = self.adapter.extract_text(out_text).strip()
        if not text:
            raise TransientProviderError(f"Malformed response: {self.cli_name} returned no text")
        return text
