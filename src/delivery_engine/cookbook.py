"""Fetching the build cookbook into a workspace and vendoring its dependencies.

Whatever the source, the cookbook always lands in ``chef/build_cookbook``;
:func:`vendor` then turns that into the ``chef/cookbooks`` tree the phase
runner loads cookbooks from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from delivery_engine.delivery_config import (
    BuildCookbookSpec,
    ChefServerCookbook,
    DeliveryCookbook,
    GitCookbook,
    LocalCookbook,
    SupermarketCookbook,
)
from delivery_engine.errors import DeliveryError, ErrorKind
from delivery_engine.git_tools import DEFAULT_GIT_PORT, delivery_ssh_url, git_command
from delivery_engine.process import (
    ProcessRunner,
    copy_recursive,
    move,
    remove_recursive,
    run_checked,
)
from delivery_engine.workspace import BUILD_COOKBOOK_DIR, Workspace

logger = logging.getLogger(__name__)

VENDOR_MANIFEST = "Berksfile"
_CHEF_SERVER_STAGING_DIR = "tmp_build_cookbook"


@dataclass(frozen=True, slots=True)
class Credentials:
    """Who to authenticate as when cloning from the delivery server."""

    user: str
    server: str
    git_port: str | None = DEFAULT_GIT_PORT
    knife_config: str | None = None


def resolve(
    runner: ProcessRunner,
    workspace: Workspace,
    spec: BuildCookbookSpec,
    credentials: Credentials | None = None,
) -> Path:
    """Materialize the build cookbook described by *spec*; return its directory."""
    destination = workspace.build_cookbook_dir
    logger.info("Fetching build cookbook %s from %s", spec.name, spec.location.value)
    if isinstance(spec, LocalCookbook):
        copy_recursive(runner, workspace.repo / spec.path, destination)
    elif isinstance(spec, GitCookbook):
        git_command(runner, ["clone", spec.url, BUILD_COOKBOOK_DIR], cwd=workspace.chef)
        git_command(runner, ["checkout", spec.branch], cwd=destination)
    elif isinstance(spec, SupermarketCookbook):
        _fetch_from_supermarket(runner, workspace, spec)
    elif isinstance(spec, ChefServerCookbook):
        _fetch_from_chef_server(runner, workspace, spec, credentials)
    elif isinstance(spec, DeliveryCookbook):
        if credentials is None:
            raise DeliveryError(
                ErrorKind.MISSING_BUILD_COOKBOOK_FIELD,
                "cloning a build cookbook from the delivery server requires credentials",
            )
        url = delivery_ssh_url(
            credentials.user,
            credentials.server,
            spec.enterprise,
            spec.organization,
            spec.name,
            port=credentials.git_port,
        )
        git_command(runner, ["clone", url, BUILD_COOKBOOK_DIR], cwd=workspace.chef)
    else:
        raise DeliveryError(ErrorKind.NO_VALID_BUILD_COOKBOOK, repr(spec))
    return destination


def _fetch_from_supermarket(
    runner: ProcessRunner, workspace: Workspace, spec: SupermarketCookbook
) -> None:
    tarball = workspace.chef / f"{spec.name}.tgz"
    run_checked(
        runner,
        "knife",
        ["supermarket", "download", spec.name, "--file", str(tarball)],
        cwd=workspace.chef,
        kind=ErrorKind.SUPERMARKET_FAILED,
    )
    run_checked(
        runner,
        "tar",
        ["-xzf", str(tarball)],
        cwd=workspace.chef,
        kind=ErrorKind.TAR_FAILED,
    )
    if spec.name != BUILD_COOKBOOK_DIR:
        move(runner, workspace.chef / spec.name, workspace.build_cookbook_dir, cwd=workspace.chef)


def _fetch_from_chef_server(
    runner: ProcessRunner,
    workspace: Workspace,
    spec: ChefServerCookbook,
    credentials: Credentials | None,
) -> None:
    staging = workspace.chef / _CHEF_SERVER_STAGING_DIR
    args = ["download", f"/cookbooks/{spec.name}", "--chef-repo-path", str(staging)]
    if credentials is not None and credentials.knife_config:
        args += ["--config", credentials.knife_config]
    run_checked(runner, "knife", args, cwd=workspace.chef, kind=ErrorKind.CHEF_SERVER_FAILED)
    move(
        runner,
        staging / "cookbooks" / spec.name,
        workspace.build_cookbook_dir,
        cwd=workspace.chef,
    )
    remove_recursive(runner, staging)


def vendor(runner: ProcessRunner, workspace: Workspace, spec: BuildCookbookSpec) -> Path:
    """Populate ``chef/cookbooks`` from the fetched build cookbook.

    With a Berksfile the dependencies are vendored by ``berks``; without one
    the cookbook is self-contained and is moved to ``chef/cookbooks/<name>``.
    """
    source = workspace.build_cookbook_dir
    cookbooks = workspace.cookbooks_dir
    if (source / VENDOR_MANIFEST).is_file():
        logger.info("Vendoring build cookbook dependencies into %s", cookbooks)
        run_checked(
            runner,
            "berks",
            ["vendor", str(cookbooks)],
            cwd=source,
            kind=ErrorKind.BERKS_FAILED,
        )
        return cookbooks

    try:
        cookbooks.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise DeliveryError(ErrorKind.IO_ERROR, f"{cookbooks}: {exc}") from exc
    target = cookbooks / spec.name
    logger.info("No %s in build cookbook; moving it to %s", VENDOR_MANIFEST, target)
    move(runner, source, target, cwd=workspace.chef)
    return cookbooks
