"""Action extraction from free-form model responses.

PERMISSIVE MODE: unrecognized text is ignored, never an error. A response with
no recognized blocks yields an empty action list, which callers treat as
"await further instruction".

Recognized forms:
    ```bash / ```sh / ```shell / ```run_command   -> ShellCommand
    ````write <path> (4 backticks) / ```write <path> -> WriteFile
    ```read <path>``` / `read <path>`             -> ReadFile
    **Action**: Read `<path>`                     -> ReadFile
    ```list <path>``` / `list <path>`             -> ListDir
    ```find <path> <pattern>``` / `find ...`      -> Find
    ```switch_mode <phase>``` / `switch_mode ...` -> SwitchMode
    NO_MORE_STEPS or DONE anywhere                -> Done (appended last)
"""

import logging
import re
from collections.abc import Callable

from roombot.core.models import (
    Action,
    Done,
    Find,
    ListDir,
    ReadFile,
    ShellCommand,
    SwitchMode,
    WriteFile,
)

logger = logging.getLogger(__name__)


COMPLETION_PATTERN = re.compile(r"\b(?:NO_MORE_STEPS|DONE)\b")

SHELL_TAGS = ("bash", "sh", "shell", "run_command")


def _fenced(keyword: str) -> re.Pattern[str]:
    """```keyword args``` on one line, closing fence optional newline."""
    return re.compile(rf"(?<!`)```{keyword}[ \t]+(?P<args>[^\n`]+?)[ \t]*\n?```")


def _inline(keyword: str) -> re.Pattern[str]:
    """`keyword args` in running text."""
    return re.compile(rf"(?<!`)`{keyword}[ \t]+(?P<args>[^`\n]+?)`(?!`)")


WRITE_4_PATTERN = re.compile(
    r"````write[ \t]+(?P<path>[^\n`]+?)[ \t]*\n(?P<content>[\s\S]*?)````"
)
WRITE_3_PATTERN = re.compile(
    r"(?<!`)```write[ \t]+(?P<path>[^\n`]+?)[ \t]*\n(?P<content>[\s\S]*?)```"
)
SHELL_PATTERN = re.compile(
    r"(?<!`)```(?:" + "|".join(SHELL_TAGS) + r")[ \t]*\n(?P<body>[\s\S]*?)```"
)
READ_ACTION_PATTERN = re.compile(r"\*\*Action\*\*:\s*Read\s+`(?P<args>[^`\n]+)`", re.IGNORECASE)


def _split_find_args(args: str) -> Find:
    parts = args.split(None, 1)
    if len(parts) == 1:
        return Find(path=".", pattern=parts[0])
    return Find(path=parts[0], pattern=parts[1].strip())


# (pattern, builder) pairs; builder returns None to skip a match
_Builder = Callable[[re.Match[str]], Action | None]


def _build_write(match: re.Match[str]) -> Action | None:
    return WriteFile(path=match.group("path").strip(), content=match.group("content"))


def _build_shell(match: re.Match[str]) -> Action | None:
    command = match.group("body").strip()
    return ShellCommand(command=command) if command else None


def _build_read(match: re.Match[str]) -> Action | None:
    return ReadFile(path=match.group("args").strip())


def _build_list(match: re.Match[str]) -> Action | None:
    return ListDir(path=match.group("args").strip())


def _build_find(match: re.Match[str]) -> Action | None:
    return _split_find_args(match.group("args").strip())


def _build_switch(match: re.Match[str]) -> Action | None:
    return SwitchMode(phase=match.group("args").strip())


# Order matters only for matches starting at the same offset.
ACTION_PATTERNS: list[tuple[re.Pattern[str], _Builder]] = [
    (WRITE_4_PATTERN, _build_write),
    (WRITE_3_PATTERN, _build_write),
    (SHELL_PATTERN, _build_shell),
    (_fenced("read"), _build_read),
    (_inline("read"), _build_read),
    (READ_ACTION_PATTERN, _build_read),
    (_fenced("list"), _build_list),
    (_inline("list"), _build_list),
    (_fenced("find"), _build_find),
    (_inline("find"), _build_find),
    (_fenced("switch_mode"), _build_switch),
    (_inline("switch_mode"), _build_switch),
]


def _find_spans(text: str) -> list[tuple[int, int, Action | None]]:
    """All non-overlapping action matches in text order.

    A match that starts inside an earlier accepted match is dropped, so a
    fence quoted inside a 4-backtick write body is never executed.
    """
    candidates: list[tuple[int, int, int, Action | None]] = []
    for priority, (pattern, build) in enumerate(ACTION_PATTERNS):
        for match in pattern.finditer(text):
            candidates.append((match.start(), priority, match.end(), build(match)))

    candidates.sort(key=lambda c: (c[0], c[1]))

    accepted: list[tuple[int, int, Action | None]] = []
    last_end = -1
    for start, _priority, end, action in candidates:
        if start < last_end:
            continue
        accepted.append((start, end, action))
        last_end = end
    return accepted


class ActionParser:
    """Converts raw model output into an ordered list of actions."""

    def parse(self, text: str) -> list[Action]:
        if not text:
            return []

        actions = [action for _, _, action in _find_spans(text) if action is not None]

        if COMPLETION_PATTERN.search(text):
            actions.append(Done())

        if not actions and "Action:" in text:
            logger.warning("Response mentions 'Action:' but no action block was recognized")

        return actions


def parse_actions(text: str) -> list[Action]:
    return ActionParser().parse(text)


def clean_agent_thought(text: str) -> str:
    """Response prose with action blocks and completion sentinels removed."""
    if not text:
        return ""

    pieces = []
    cursor = 0
    for start, end, _ in _find_spans(text):
        pieces.append(text[cursor:start])
        cursor = end
    pieces.append(text[cursor:])

    thought = COMPLETION_PATTERN.sub("", "".join(pieces))
    thought = re.sub(r"\n{3,}", "\n\n", thought)
    return thought.strip()
