"""Sandbox boundary checks for agent-initiated paths and shell commands.

Every filesystem or process operation requested by the model goes through
SandboxPolicy before it touches the host. The policy is a static text/path
guard, not kernel isolation:

- validate_path(): resolve symlinks and '.', then require the result to be the
  root or a descendant of it (component-wise, so /a1 never admits /a1foo).
- is_command_safe(): whitespace-tokenize a shell command and reject tokens
  that traverse upward or name absolute paths outside the root, including
  glued redirections in either direction. A bare `cd` is rejected as well.

Payloads encoded to defeat token inspection (base64, variable expansion,
command substitution) are not detected.
"""

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)


class SandboxError(Exception):
    """Error in sandboxed execution."""

    pass


class SandboxViolation(SandboxError):
    """A path or command was rejected by the sandbox boundary."""

    pass


# Exactly two dots not glued to a word or another dot: "..", "../x", "..;",
# "(cd ..)", ">../x", "--out=../x". Ranges (A..B) and ellipses (x...) pass.
_TRAVERSAL_PATTERN = re.compile(r"(?<![\w.])\.\.(?![\w.])")

# Redirection glued to its target: >/x, >>/x, 2>/x, &>/x, </x
_REDIRECT_PATTERN = re.compile(r"[0-9&]?(?:<|>>?)\|?(?P<target>\S+)")

# Boundaries between simple commands: ; & | && || newline, subshells and groups
_COMMAND_SEPARATOR = re.compile(r"[;&|\n(){}]")

# Words that may precede a command inside a compound statement
_SHELL_KEYWORDS = {"!", "then", "else", "do", "time"}

_QUOTE_CHARS = "'\""


def _strip_quotes(token: str) -> str:
    for quote in _QUOTE_CHARS:
        token = token.replace(quote, "")
    return token


def _is_within(path: Path, root: Path) -> bool:
    """Component-wise containment: path is root or below it."""
    return path == root or path.is_relative_to(root)


def sanitize_path(path: str | Path, projects_dir: str | Path | None) -> str:
    """Map a host path to the virtual view shown in chat.

    The projects root itself becomes "/", paths below it become "/<rel>",
    anything else is returned unchanged.
    """
    text = str(path)
    if not projects_dir:
        return text

    root = Path(projects_dir)
    candidate = Path(text)
    if not candidate.is_absolute() or not _is_within(candidate, root):
        return text

    relative = candidate.relative_to(root)
    if relative == Path("."):
        return "/"
    return "/" + relative.as_posix()


class SandboxPolicy:
    """Filesystem boundary for one execution context.

    Read-only after construction and safe to share between rooms.
    """

    def __init__(self, root: str | Path | None):
        # Resolve once so comparisons are against the canonical root,
        # e.g. /tmp -> /private/tmp on macOS.
        self.root: Path | None = Path(root).resolve() if root else None

    def __repr__(self) -> str:
        return f"SandboxPolicy(root={self.root!s})"

    def validate_path(self, candidate: str | Path) -> Path:
        """Return the normalized path if it stays inside the root.

        Relative candidates are taken relative to the root. Paths that do not
        exist yet are resolved through their nearest existing ancestor, so a
        symlinked parent cannot smuggle a new file outside the boundary.

        Raises:
            SandboxViolation: No root configured, traversal segment in the raw
                input, or the normalized path is outside the root.
        """
        raw = str(candidate)
        if not raw.strip():
            raise SandboxViolation("Empty path")

        if ".." in Path(raw).parts:
            raise SandboxViolation(f"Path traversal is not allowed: {raw}")

        if self.root is None:
            raise SandboxViolation(f"No sandbox root configured; access denied: {raw}")

        path = Path(raw).expanduser() if raw.startswith("~") else Path(raw)
        if not path.is_absolute():
            path = self.root / path

        # resolve(strict=False) canonicalizes the existing prefix and
        # re-appends the missing tail
        normalized = path.resolve()
        if not _is_within(normalized, self.root):
            raise SandboxViolation(f"Path is outside the project root: {raw}")
        return normalized

    def resolve(self, path: str | Path, cwd: str | Path | None = None) -> Path:
        """Validate a model-supplied path relative to a working directory."""
        raw = str(path).strip()
        if not raw:
            raise SandboxViolation("Empty path")
        if ".." in Path(raw).parts:
            raise SandboxViolation(f"Path traversal is not allowed: {raw}")
        if not Path(raw).is_absolute() and cwd is not None:
            base = self.validate_path(cwd)
            return self.validate_path(base / raw)
        return self.validate_path(raw)

    def is_path_allowed(self, candidate: str | Path) -> bool:
        try:
            self.validate_path(candidate)
        except SandboxViolation:
            return False
        return True

    def check_command(self, command: str) -> None:
        """Raise SandboxViolation describing the first unsafe token, if any."""
        if self._has_bare_cd(command):
            raise SandboxViolation("cd without a target changes to the home directory")

        for raw_token in command.split():
            token = _strip_quotes(raw_token)
            if not token:
                continue

            if _TRAVERSAL_PATTERN.search(token):
                raise SandboxViolation(f"Parent directory traversal in command: {raw_token}")

            if token.startswith("~"):
                raise SandboxViolation(f"Home directory reference in command: {raw_token}")

            for target in self._absolute_targets(token):
                if not self.is_path_allowed(target):
                    raise SandboxViolation(
                        f"Command references a path outside the project root: {target}"
                    )

    def is_command_safe(self, command: str) -> bool:
        try:
            self.check_command(command)
        except SandboxViolation as e:
            logger.warning(f"Rejected command {command!r}: {e}")
            return False
        return True

    def display(self, path: str | Path) -> str:
        return sanitize_path(path, self.root)

    @staticmethod
    def _has_bare_cd(command: str) -> bool:
        """True if any simple command is `cd` with no argument."""
        for segment in _COMMAND_SEPARATOR.split(command):
            words = [w for w in map(_strip_quotes, segment.split()) if w]
            while words and words[0] in _SHELL_KEYWORDS:
                words.pop(0)
            if words == ["cd"]:
                return True
        return False

    @staticmethod
    def _absolute_targets(token: str) -> list[str]:
        """Absolute paths named by one token.

        Covers the bare token, --opt=/path values and redirection targets
        with no whitespace before them.
        """
        targets = []
        if token.startswith("/"):
            targets.append(token)

        if "=" in token:
            value = token.split("=", 1)[1]
            if value.startswith("/"):
                targets.append(value)

        for match in _REDIRECT_PATTERN.finditer(token):
            target = match.group("target").lstrip("<>|")
            if target.startswith("/"):
                targets.append(target)
        return targets
