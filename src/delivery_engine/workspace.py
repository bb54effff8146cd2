"""Disposable per-job workspace: directory layout, repository sync, job data.

A workspace root holds four directories::

    <root>/chef    job data, runner config, build cookbook, vendored cookbooks
    <root>/cache   scratch space and $HOME for the phase runner
    <root>/repo    the project repository, checked out at the change under test

The caller owns the root: it is never shared between concurrent jobs and is
removed by the caller when the job is done.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from delivery_engine.errors import DeliveryError, ErrorKind
from delivery_engine.file_io import atomic_write_text, write_json
from delivery_engine.git_tools import ensure_git_identity, git_command
from delivery_engine.process import DEFAULT_BUILD_USER, ProcessRunner
from delivery_engine.schemas import BuilderCompat, Change, JobData, JobTop, ProjectConfig

logger = logging.getLogger(__name__)

BUILD_COOKBOOK_DIR = "build_cookbook"
COOKBOOKS_DIR = "cookbooks"
JOB_DATA_FILE = "dna.json"
RUNNER_CONFIG_FILE = "config.rb"

_RUNNER_CONFIG = """\
file_cache_path File.expand_path(File.join(File.dirname(__FILE__), '..', 'cache'))
cache_type 'BasicFile'
cache_options(:path => File.join(file_cache_path, 'checksums'))
cookbook_path File.expand_path(File.join(File.dirname(__FILE__), 'cookbooks'))
file_backup_path File.expand_path(File.join(File.dirname(__FILE__), '..', 'cache', 'job-backup'))
"""


@dataclass(frozen=True, slots=True)
class Workspace:
    root: Path
    chef: Path
    cache: Path
    repo: Path

    @classmethod
    def new(cls, root: str | Path) -> Workspace:
        base = Path(root).expanduser().absolute()
        return cls(root=base, chef=base / "chef", cache=base / "cache", repo=base / "repo")

    @property
    def build_cookbook_dir(self) -> Path:
        return self.chef / BUILD_COOKBOOK_DIR

    @property
    def cookbooks_dir(self) -> Path:
        return self.chef / COOKBOOKS_DIR

    @property
    def job_data_path(self) -> Path:
        return self.chef / JOB_DATA_FILE

    @property
    def runner_config_path(self) -> Path:
        return self.chef / RUNNER_CONFIG_FILE

    def as_dict(self) -> dict[str, str]:
        return {
            "root": str(self.root),
            "chef": str(self.chef),
            "cache": str(self.cache),
            "repo": str(self.repo),
        }


def build(root: str | Path) -> Workspace:
    """Create the workspace directories under *root*.

    Existing directories are left as they are, so building twice is harmless.
    """
    workspace = Workspace.new(root)
    for directory in (workspace.root, workspace.chef, workspace.cache, workspace.repo):
        try:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise DeliveryError(ErrorKind.IO_ERROR, f"{directory}: {exc}") from exc
    logger.info("Workspace ready at %s", workspace.root)
    return workspace


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


def reset_repo(runner: ProcessRunner, workspace: Workspace, git_ref: str) -> None:
    """Hard-reset the checkout to *git_ref* and drop untracked and ignored files."""
    git_command(runner, ["reset", "--hard", git_ref], cwd=workspace.repo)
    git_command(runner, ["clean", "-x", "-f", "-d", "-q"], cwd=workspace.repo)


def setup_repo_for_change(
    runner: ProcessRunner,
    workspace: Workspace,
    clone_url: str,
    change_ref: str,
    pipeline: str,
    sha: str = "",
) -> None:
    """Leave ``workspace.repo`` holding the change on top of the pipeline tip.

    With a non-empty *sha* the checkout lands exactly on that commit and
    *change_ref* is ignored. Otherwise *change_ref* is fetched from origin and
    merged into the pipeline; a conflict surfaces as ``GitFailed``.
    """
    repo = workspace.repo
    if not (repo / ".git").is_dir():
        logger.info("Cloning %s into %s", clone_url, repo)
        git_command(runner, ["clone", clone_url, "."], cwd=repo)
    git_command(runner, ["remote", "update"], cwd=repo)
    reset_repo(runner, workspace, "HEAD")
    git_command(runner, ["checkout", pipeline], cwd=repo)
    reset_repo(runner, workspace, f"remotes/origin/{pipeline}")
    if sha:
        logger.info("Resetting %s to %s", repo, sha)
        reset_repo(runner, workspace, sha)
        return
    logger.info("Merging %s into %s", change_ref, pipeline)
    git_command(runner, ["fetch", "origin", change_ref], cwd=repo)
    ensure_git_identity(runner, repo)
    git_command(runner, ["merge", "--strategy", "resolve", "FETCH_HEAD"], cwd=repo)


# ---------------------------------------------------------------------------
# Job data
# ---------------------------------------------------------------------------


def build_job_data(
    workspace: Workspace,
    change: Change,
    config: ProjectConfig,
    *,
    build_user: str = DEFAULT_BUILD_USER,
    build_id: str | None = None,
) -> JobData:
    return JobData(
        delivery=JobTop(
            workspace=workspace.as_dict(),
            change=change,
            config=config.to_document(),
        ),
        delivery_builder=BuilderCompat(
            workspace=str(workspace.root),
            repo=str(workspace.repo),
            cache=str(workspace.cache),
            build_id=build_id or uuid.uuid4().hex,
            build_user=build_user,
        ),
    )


def setup_chef_for_job(
    workspace: Workspace,
    change: Change,
    config: ProjectConfig,
    *,
    build_user: str = DEFAULT_BUILD_USER,
    build_id: str | None = None,
) -> Path:
    """Write the runner config and the job data document; return the job data path."""
    job_data = build_job_data(
        workspace, change, config, build_user=build_user, build_id=build_id
    )
    try:
        atomic_write_text(workspace.runner_config_path, _RUNNER_CONFIG)
        write_json(workspace.job_data_path, job_data.model_dump(mode="json"))
    except OSError as exc:
        raise DeliveryError(ErrorKind.IO_ERROR, str(exc)) from exc
    logger.debug("Wrote job data to %s", workspace.job_data_path)
    return workspace.job_data_path
