"""External process capability shared by every stage of a job.

All copy/move/ownership/clone/vendor/runner invocations go through a
:class:`ProcessRunner` so the decision logic around them can be exercised
with a fake runner instead of real subprocesses.
"""

from __future__ import annotations

import abc
import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from delivery_engine.errors import DeliveryError, ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_BUILD_USER = "dbuild"


class RunAs(str, Enum):
    """Identity a subprocess should run under."""

    CURRENT = "current"
    BUILD_USER = "build_user"


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit status and captured output of one external command."""

    program: str
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def output_detail(self) -> str:
        return f"STDOUT: {self.stdout}\nSTDERR: {self.stderr}\n"


class ProcessRunner(abc.ABC):
    """Common interface for running external programs to completion."""

    @abc.abstractmethod
    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        run_as: RunAs = RunAs.CURRENT,
    ) -> CommandResult:
        """Run *program* in *cwd* and return its exit status and output.

        Parameters
        ----------
        env:
            Variables added on top of the current environment.
        run_as:
            Identity to launch the program under.

        Raises ``OSError`` when the program cannot be spawned at all, and
        ``subprocess.TimeoutExpired`` when it outlives a configured timeout.
        """


def _subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that prevent child console events from reaching the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


class SubprocessRunner(ProcessRunner):
    """:class:`ProcessRunner` backed by :func:`subprocess.run`.

    ``RunAs.BUILD_USER`` launches the child under ``build_user``/``build_group``,
    which only works when the current process is privileged.
    """

    def __init__(
        self,
        *,
        build_user: str = DEFAULT_BUILD_USER,
        build_group: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.build_user = build_user
        self.build_group = build_group or build_user
        self.timeout = timeout

    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        run_as: RunAs = RunAs.CURRENT,
    ) -> CommandResult:
        cmd = [program, *args]
        logger.debug("%s (cwd=%s, run_as=%s)", " ".join(cmd), cwd, run_as.value)
        kwargs: dict[str, object] = dict(_subprocess_isolation_kwargs())
        if env:
            kwargs["env"] = {**os.environ, **env}
        if run_as is RunAs.BUILD_USER:
            kwargs["user"] = self.build_user
            kwargs["group"] = self.build_group
        completed = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=self.timeout,
            **kwargs,
        )
        result = CommandResult(
            program=program,
            args=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        logger.debug("%s exited %s", program, result.returncode)
        if result.stdout:
            logger.debug("%s stdout: %s", program, result.stdout)
        if result.stderr:
            logger.debug("%s stderr: %s", program, result.stderr)
        return result


def _output_text(data: str | bytes | None) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data or ""


def run_command(
    runner: ProcessRunner,
    program: str,
    args: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    run_as: RunAs = RunAs.CURRENT,
) -> CommandResult:
    """Run a command and return its result whatever the exit status.

    A program that cannot be spawned, or that is killed after the runner's
    timeout, raises ``FailedToExecute``.
    """
    try:
        return runner.run(program, args, cwd=cwd, env=env, run_as=run_as)
    except OSError as exc:
        raise DeliveryError(
            ErrorKind.FAILED_TO_EXECUTE, f"failed to execute {program}: {exc}"
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise DeliveryError(
            ErrorKind.FAILED_TO_EXECUTE,
            f"{program} timed out after {exc.timeout}s\n"
            f"STDOUT: {_output_text(exc.stdout)}\nSTDERR: {_output_text(exc.stderr)}\n",
        ) from exc


def run_checked(
    runner: ProcessRunner,
    program: str,
    args: Sequence[str],
    *,
    cwd: Path,
    kind: ErrorKind,
    env: Mapping[str, str] | None = None,
    run_as: RunAs = RunAs.CURRENT,
) -> CommandResult:
    """Run a command and raise ``DeliveryError(kind)`` when it exits non-zero.

    Launch failures are reported by :func:`run_command`.
    """
    result = run_command(runner, program, args, cwd=cwd, env=env, run_as=run_as)
    if not result.success:
        raise DeliveryError(kind, result.output_detail())
    return result


def privileged_process() -> bool:
    """Return True when running as root."""
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() == 0


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def copy_recursive(runner: ProcessRunner, source: Path, destination: Path) -> None:
    run_checked(
        runner,
        "cp",
        ["-R", "-a", str(source), str(destination)],
        cwd=destination.parent,
        kind=ErrorKind.COPY_FAILED,
    )


def move(runner: ProcessRunner, source: Path, destination: Path, *, cwd: Path) -> None:
    run_checked(
        runner,
        "mv",
        [str(source), str(destination)],
        cwd=cwd,
        kind=ErrorKind.MOVE_FAILED,
    )


def remove_recursive(runner: ProcessRunner, path: Path) -> None:
    """Best-effort ``rm -rf``; only a launch failure is reported."""
    result = run_command(runner, "rm", ["-rf", str(path)], cwd=path.parent)
    if not result.success:
        logger.debug("rm -rf %s exited %s: %s", path, result.returncode, result.stderr.strip())


def chown_all(runner: ProcessRunner, who: str, paths: Sequence[Path]) -> None:
    run_checked(
        runner,
        "chown",
        ["-R", who, *(str(p) for p in paths)],
        cwd=paths[0].parent if paths else Path.cwd(),
        kind=ErrorKind.CHOWN_FAILED,
    )


def chmod(runner: ProcessRunner, path: Path, setting: str) -> None:
    run_checked(
        runner,
        "chmod",
        [setting, str(path)],
        cwd=path.parent,
        kind=ErrorKind.CHMOD_FAILED,
    )
