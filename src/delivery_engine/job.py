"""Running one or more phases of a change inside a fresh workspace.

:class:`JobRunner` walks a job through a fixed sequence of states::

    WorkspaceBuilt -> RepoSynced -> CookbookResolved -> Vendored
        -> JobConfigured -> PhaseRunning -> Succeeded | Failed

Any failure stops the walk at that point, records ``Failed`` and re-raises
the underlying :class:`~delivery_engine.errors.DeliveryError` unchanged.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from delivery_engine import cookbook
from delivery_engine import workspace as workspace_mod
from delivery_engine.cookbook import Credentials
from delivery_engine.delivery_config import BuildCookbookSpec, build_cookbook_spec, load_config
from delivery_engine.errors import DeliveryError, ErrorKind
from delivery_engine.git_tools import get_head
from delivery_engine.process import (
    DEFAULT_BUILD_USER,
    CommandResult,
    ProcessRunner,
    RunAs,
    chmod,
    chown_all,
    privileged_process,
    remove_recursive,
    run_checked,
)
from delivery_engine.schemas import Change, ProjectConfig
from delivery_engine.workspace import Workspace

logger = logging.getLogger(__name__)

DEFAULT_PHASE = "default"
PHASE_RUNNER = "chef-client"


class JobState(str, Enum):
    WORKSPACE_BUILT = "WorkspaceBuilt"
    REPO_SYNCED = "RepoSynced"
    COOKBOOK_RESOLVED = "CookbookResolved"
    VENDORED = "Vendored"
    JOB_CONFIGURED = "JobConfigured"
    PHASE_RUNNING = "PhaseRunning"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass(frozen=True, slots=True)
class JobRequest:
    """Everything needed to run a job, already resolved by the caller.

    ``change.git_url`` is the clone URL and ``change.phase`` the space
    separated phase list. ``change_ref`` is what gets fetched and merged
    (ignored when ``change.sha`` is set).
    """

    job_root: Path
    change: Change
    change_ref: str
    credentials: Credentials | None = None
    skip_default: bool = False
    build_user: str = DEFAULT_BUILD_USER
    build_id: str | None = None

    @property
    def phases(self) -> list[str]:
        return split_phases(self.change.phase)


def split_phases(phases: str) -> list[str]:
    return [p for p in phases.split(" ") if p]


# ---------------------------------------------------------------------------
# Job root and change ref
# ---------------------------------------------------------------------------


def workspace_home(*, privileged: bool | None = None) -> Path:
    """Base directory under which job roots are created.

    Builders run jobs as root with ``$HOME`` pointing at their workspace area;
    anyone else gets ``$HOME/.delivery`` so job files don't land in ``$HOME``.
    """
    home = os.environ.get("HOME", "").strip()
    if not home:
        raise DeliveryError(ErrorKind.NO_HOMEDIR)
    if privileged is None:
        privileged = privileged_process()
    return Path(home) if privileged else Path(home) / ".delivery"


def job_root_path(
    *,
    server: str,
    enterprise: str,
    organization: str,
    project: str,
    pipeline: str,
    stage: str,
    phases: str,
    job_root: str | Path | None = None,
    privileged: bool | None = None,
) -> Path:
    """Return where the workspace for this job lives."""
    if job_root:
        return Path(job_root)
    phase_dir = "-".join(split_phases(phases))
    base = workspace_home(privileged=privileged)
    return base.joinpath(server, enterprise, organization, project, pipeline, stage, phase_dir)


def resolve_change_ref(
    runner: ProcessRunner,
    *,
    pipeline: str,
    cwd: Path,
    branch: str = "",
    change: str = "",
    patchset: str = "",
    sha: str = "",
) -> tuple[str, bool]:
    """Return ``(change_ref, local_change)`` for the job.

    An explicit branch wins, then a review change, then a bare sha (which
    needs no ref). With none of those, the branch checked out in *cwd* is
    used and the job is a local change.
    """
    if branch:
        return branch, False
    if change:
        return f"_reviews/{pipeline}/{change}/{patchset or 'latest'}", False
    if sha:
        return "", False
    return get_head(runner, cwd), True


# ---------------------------------------------------------------------------
# Phase runner
# ---------------------------------------------------------------------------


def run_phases(
    runner: ProcessRunner,
    workspace: Workspace,
    cookbook_name: str,
    phases: Sequence[str],
    *,
    run_as: RunAs = RunAs.CURRENT,
) -> CommandResult:
    """Run *phases* of the build cookbook in a single runner invocation."""
    recipes = ",".join(f"{cookbook_name}::{phase}" for phase in phases)
    args = [
        "-z",
        "-j",
        str(workspace.job_data_path),
        "-c",
        str(workspace.runner_config_path),
        "-r",
        recipes,
    ]
    logger.info("Running %s (%s)", recipes, run_as.value)
    return run_checked(
        runner,
        PHASE_RUNNER,
        args,
        cwd=workspace.repo,
        kind=ErrorKind.CHEF_FAILED,
        env={"HOME": str(workspace.cache)},
        run_as=run_as,
    )


@dataclass
class JobRunner:
    """Drive a :class:`JobRequest` through every job state, in order."""

    runner: ProcessRunner
    request: JobRequest
    privileged: bool = field(default_factory=privileged_process)
    state: JobState | None = None
    history: list[JobState] = field(default_factory=list)
    workspace: Workspace | None = None
    config: ProjectConfig | None = None
    spec: BuildCookbookSpec | None = None

    def _advance(self, state: JobState) -> None:
        logger.info("Job %s: %s -> %s", self.request.job_root, self.state, state.value)
        self.state = state
        self.history.append(state)

    def run(self) -> JobState:
        try:
            self._run()
        except DeliveryError as exc:
            logger.error("Job failed in state %s: %s", self.state, exc.kind.value)
            self._advance(JobState.FAILED)
            raise
        self._advance(JobState.SUCCEEDED)
        return JobState.SUCCEEDED

    def _run(self) -> None:
        request = self.request
        change = request.change

        ws = workspace_mod.build(request.job_root)
        self.workspace = ws
        self._advance(JobState.WORKSPACE_BUILT)

        workspace_mod.setup_repo_for_change(
            self.runner,
            ws,
            change.git_url,
            request.change_ref,
            change.pipeline,
            change.sha,
        )
        self._advance(JobState.REPO_SYNCED)

        self.config = load_config(ws.repo)
        self.spec = build_cookbook_spec(self.config)
        remove_recursive(self.runner, ws.build_cookbook_dir)
        remove_recursive(self.runner, ws.cookbooks_dir)
        cookbook.resolve(self.runner, ws, self.spec, request.credentials)
        self._advance(JobState.COOKBOOK_RESOLVED)

        cookbook.vendor(self.runner, ws, self.spec)
        self._advance(JobState.VENDORED)

        workspace_mod.setup_chef_for_job(
            ws,
            change,
            self.config,
            build_user=request.build_user,
            build_id=request.build_id,
        )
        self._advance(JobState.JOB_CONFIGURED)

        self._advance(JobState.PHASE_RUNNING)
        if self.privileged:
            self._drop_privileges(ws)
            if not request.skip_default:
                logger.info("Setting up the builder")
                run_phases(self.runner, ws, self.spec.name, [DEFAULT_PHASE])
            run_phases(
                self.runner, ws, self.spec.name, request.phases, run_as=RunAs.BUILD_USER
            )
        else:
            run_phases(self.runner, ws, self.spec.name, request.phases)

    def _drop_privileges(self, ws: Workspace) -> None:
        owner = f"{self.request.build_user}:{self.request.build_user}"
        chown_all(self.runner, owner, [ws.repo, ws.cookbooks_dir, ws.cache])
        # The build user has to traverse into chef/ to read job data.
        chmod(self.runner, ws.root, "0755")
        chmod(self.runner, ws.chef, "0755")
