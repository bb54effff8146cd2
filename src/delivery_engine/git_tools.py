"""Git helper utilities for workspace checkouts and the delivery remote."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from pathlib import Path

from delivery_engine.errors import DeliveryError, ErrorKind
from delivery_engine.process import CommandResult, ProcessRunner, run_checked, run_command

logger = logging.getLogger(__name__)

DELIVERY_REMOTE = "delivery"
DEFAULT_GIT_PORT = "8989"

_BRANCH_LINE_RE = re.compile(r"^(.) (.+)$")


def git_command(runner: ProcessRunner, args: Sequence[str], *, cwd: Path) -> CommandResult:
    """Run ``git <args>`` in *cwd*; a non-zero exit raises ``GitFailed``."""
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    return run_checked(runner, "git", args, cwd=cwd, kind=ErrorKind.GIT_FAILED)


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def parse_get_head(stdout: str) -> str:
    """Return the current branch from ``git branch`` output."""
    for line in stdout.splitlines():
        if not line.strip():
            continue
        match = _BRANCH_LINE_RE.match(line)
        if match is None:
            raise DeliveryError(ErrorKind.BAD_GIT_OUTPUT_MATCH, f"Failed to match: {line}")
        if match.group(1) == "*":
            return match.group(2)
    raise DeliveryError(ErrorKind.NOT_ON_A_BRANCH)


def get_head(runner: ProcessRunner, repo: str | Path) -> str:
    """Return the name of the branch checked out in *repo*."""
    return parse_get_head(git_command(runner, ["branch"], cwd=Path(repo)).stdout)


def checkout_branch_name(change: str, patchset: str) -> str:
    """Local branch name used when checking out a review patchset."""
    if patchset == "latest":
        return change
    return f"{change}/{patchset}"


def delivery_ssh_url(
    user: str,
    server: str,
    enterprise: str,
    organization: str,
    project: str,
    *,
    port: str | None = DEFAULT_GIT_PORT,
) -> str:
    """Build the ssh clone URL of a project hosted on the delivery server."""
    host = f"{server}:{port}" if port else server
    return f"ssh://{user}@{enterprise}@{host}/{enterprise}/{organization}/{project}"


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def ensure_git_identity(runner: ProcessRunner, repo: str | Path) -> None:
    """Ensure the repo has a committer identity so merges can record a commit.

    Only ``user.name``/``user.email`` values missing from the effective config
    are set, and only in the repo-local config.
    """
    cwd = Path(repo)
    for key, fallback in [
        ("user.name", "Delivery Job"),
        ("user.email", "delivery-job@localhost"),
    ]:
        result = run_command(runner, "git", ["config", key], cwd=cwd)
        if result.returncode != 0 or not result.stdout.strip():
            git_command(runner, ["config", key, fallback], cwd=cwd)
            logger.info("Set %s = %s in %s", key, fallback, cwd)
