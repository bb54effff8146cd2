"""Submitting a branch for review and reading back what the server said.

The push runs with ``--porcelain``: per-ref outcomes arrive on stdout as
``<flag>\\t<from>:<to>\\t[<reason>]`` records, and anything the server wants
the user to see arrives on stderr as ``remote: <payload>`` lines.
"""

from __future__ import annotations

import logging
import re
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from delivery_engine.errors import DeliveryError, ErrorKind
from delivery_engine.git_tools import DELIVERY_REMOTE, git_command
from delivery_engine.process import ProcessRunner

logger = logging.getLogger(__name__)

_REMOTE_PREFIX = "remote: "
# Some git versions append ESC[K to every remote line.
_ERASE_LINE = "\x1b[K"
_PORCELAIN_RE = re.compile(r"^(.)\t(.+):(.+)\t\[(.+)\]$")
_CHANGE_ID_RE = re.compile(r"/([a-f0-9]{8}-(?:[a-f0-9]{4}-){3}[a-f0-9]{12})")


class PushResultFlag(str, Enum):
    FAST_FORWARD = "FastForward"
    FORCED_UPDATE = "ForcedUpdate"
    DELETED_REF = "DeletedRef"
    NEW_REF = "NewRef"
    REJECTED = "Rejected"
    UP_TO_DATE = "UpToDate"


_FLAGS: dict[str, PushResultFlag] = {
    " ": PushResultFlag.FAST_FORWARD,
    "+": PushResultFlag.FORCED_UPDATE,
    "-": PushResultFlag.DELETED_REF,
    "*": PushResultFlag.NEW_REF,
    "!": PushResultFlag.REJECTED,
    "=": PushResultFlag.UP_TO_DATE,
}


@dataclass(frozen=True, slots=True)
class PushResult:
    flag: PushResultFlag
    reason: str


@dataclass(frozen=True, slots=True)
class ReviewResult:
    """Outcome of one review push.

    ``url`` is the last remote line that looked like a link; ``change_id``
    is the change UUID embedded in that link, when there is one.
    """

    push_results: tuple[PushResult, ...] = ()
    messages: tuple[str, ...] = ()
    url: str | None = None
    change_id: str | None = None


@dataclass(frozen=True, slots=True)
class DisplayPreferences:
    """How review output should be presented to the user."""

    color: bool = True
    quiet: bool = False


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _remote_payload(line: str) -> str | None:
    if not line.startswith(_REMOTE_PREFIX):
        return None
    payload = line[len(_REMOTE_PREFIX):].replace(_ERASE_LINE, "").strip()
    return payload or None


def change_id_from_url(url: str) -> str | None:
    match = _CHANGE_ID_RE.search(url)
    if match is None:
        logger.warning("No change id found in review URL %s", url)
        return None
    return match.group(1)


def parse_git_push_output(stdout: str, stderr: str) -> ReviewResult:
    """Turn the two output channels of a porcelain push into a :class:`ReviewResult`.

    Any stdout record that isn't a banner line and doesn't match the porcelain
    shape raises ``BadGitOutputMatch``; nothing is silently dropped.
    """
    messages: list[str] = []
    url: str | None = None
    for line in stderr.splitlines():
        payload = _remote_payload(line)
        if payload is None:
            continue
        if payload.startswith(("http://", "https://")):
            url = payload
        else:
            messages.append(payload)

    results: list[PushResult] = []
    for line in stdout.splitlines():
        if not line.strip() or line.startswith(("To", "Done")):
            continue
        match = _PORCELAIN_RE.match(line)
        if match is None:
            raise DeliveryError(ErrorKind.BAD_GIT_OUTPUT_MATCH, f"Failed to match: {line}")
        flag = _FLAGS.get(match.group(1))
        if flag is None:
            raise DeliveryError(
                ErrorKind.BAD_GIT_OUTPUT_MATCH,
                f"Unknown result flag {match.group(1)!r} in: {line}",
            )
        results.append(PushResult(flag=flag, reason=match.group(4)))

    return ReviewResult(
        push_results=tuple(results),
        messages=tuple(messages),
        url=url,
        change_id=change_id_from_url(url) if url else None,
    )


# ---------------------------------------------------------------------------
# Pushing
# ---------------------------------------------------------------------------


def review_refspec(local_branch: str, target_pipeline: str) -> str:
    return f"{local_branch}:_for/{target_pipeline}/{local_branch}"


def verify_pipeline_on_remote(
    runner: ProcessRunner, pipeline: str, *, cwd: Path, remote: str = DELIVERY_REMOTE
) -> None:
    """Raise ``BranchNotFoundOnDeliveryRemote`` unless *pipeline* exists on *remote*."""
    ref = f"refs/heads/{pipeline}"
    result = git_command(runner, ["ls-remote", remote, ref], cwd=cwd)
    if ref not in result.stdout:
        raise DeliveryError(
            ErrorKind.BRANCH_NOT_FOUND_ON_DELIVERY_REMOTE,
            f"A pipeline or branch named {pipeline} was not found on the {remote} remote",
        )


def push_review(
    runner: ProcessRunner,
    local_branch: str,
    target_pipeline: str,
    *,
    cwd: Path,
    remote: str = DELIVERY_REMOTE,
) -> ReviewResult:
    """Push *local_branch* for review against *target_pipeline*."""
    logger.info("Submitting %s for review against %s", local_branch, target_pipeline)
    result = git_command(
        runner,
        [
            "push",
            "--porcelain",
            "--progress",
            "--verbose",
            remote,
            review_refspec(local_branch, target_pipeline),
        ],
        cwd=cwd,
    )
    return parse_git_push_output(result.stdout, result.stderr)


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------

_ANSI = {
    "red": "\x1b[31m",
    "green": "\x1b[32m",
    "yellow": "\x1b[33m",
    "magenta": "\x1b[35m",
    "white": "\x1b[37m",
}
_ANSI_RESET = "\x1b[0m"

_RESULT_LINES: dict[PushResultFlag, tuple[str, str]] = {
    PushResultFlag.FAST_FORWARD: ("green", "Updated change: {reason}"),
    PushResultFlag.FORCED_UPDATE: ("green", "Force updated change: {reason}"),
    PushResultFlag.DELETED_REF: ("red", "Deleted change: {reason}"),
    PushResultFlag.NEW_REF: ("green", "Created change: {reason}"),
    PushResultFlag.REJECTED: ("red", "Rejected change: {reason}"),
    PushResultFlag.UP_TO_DATE: ("yellow", "Nothing added to the existing change"),
}


def paint(text: str, color: str, prefs: DisplayPreferences) -> str:
    if not prefs.color or color not in _ANSI:
        return text
    return f"{_ANSI[color]}{text}{_ANSI_RESET}"


def push_result_messages(
    results: tuple[PushResult, ...] | list[PushResult],
    prefs: DisplayPreferences | None = None,
) -> list[str]:
    """One user-facing line per push result, in push order."""
    prefs = prefs or DisplayPreferences(color=False)
    lines = []
    for result in results:
        color, template = _RESULT_LINES[result.flag]
        lines.append(paint(template.format(reason=result.reason), color, prefs))
    return lines


def review_report_lines(review: ReviewResult, prefs: DisplayPreferences) -> list[str]:
    """Everything worth showing after a review push; empty when quiet."""
    if prefs.quiet:
        return []
    lines = push_result_messages(review.push_results, prefs)
    lines.extend(paint(message, "white", prefs) for message in review.messages)
    if review.url:
        lines.append(paint(review.url, "magenta", prefs))
    return lines


def handle_review_result(
    review: ReviewResult,
    no_open: bool,
    *,
    opener: Callable[[str], bool] = webbrowser.open,
) -> str | None:
    """Open the review URL in a browser unless *no_open*; return the URL.

    Failing to open a browser is not an error: the URL is still returned so
    the caller can print it.
    """
    if review.url is None:
        return None
    if no_open:
        return review.url
    try:
        opened = opener(review.url)
    except webbrowser.Error as exc:
        logger.warning("Could not open %s in a browser: %s", review.url, exc)
        return review.url
    if not opened:
        logger.warning(
            "Could not open %s in a browser; pass --no-open to skip this step", review.url
        )
    return review.url
