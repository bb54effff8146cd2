"""CLI entrypoint for Delivery Engine."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from delivery_engine.cookbook import Credentials
from delivery_engine.delivery_config import default_config, detect_project_type, write_config
from delivery_engine.errors import DeliveryError
from delivery_engine.git_tools import DEFAULT_GIT_PORT, delivery_ssh_url, get_head
from delivery_engine.job import JobRequest, JobRunner, job_root_path, resolve_change_ref
from delivery_engine.process import DEFAULT_BUILD_USER, SubprocessRunner
from delivery_engine.review import (
    DisplayPreferences,
    handle_review_result,
    push_review,
    review_report_lines,
    verify_pipeline_on_remote,
)
from delivery_engine.schemas import Change

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE = "master"


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so settings are found regardless of cwd."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()


def _setting(value: str | None, env_name: str, default: str = "") -> str:
    """Command-line value, else environment variable, else *default*."""
    if value:
        return value
    return os.environ.get(env_name, "").strip() or default


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported commands."""
    p = argparse.ArgumentParser(
        prog="delivery-engine",
        description="Delivery Engine - run pipeline phases for a change and submit reviews.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    # Job sub-command
    job_p = sub.add_parser("job", help="Run one or more phases of a change in a fresh workspace.")
    job_p.add_argument("stage", help="Stage the phases belong to (e.g. verify, build).")
    job_p.add_argument("phases", help="Phase name, or several separated by spaces.")
    job_p.add_argument("--change", default="", help="Review change to merge.")
    job_p.add_argument("--patchset", default="", help="Patchset of --change (default: latest).")
    job_p.add_argument("--change-id", default="", help="Change id recorded in job data.")
    job_p.add_argument("--branch", default="", help="Branch to merge instead of a review change.")
    job_p.add_argument("--shasum", default="", help="Run against exactly this commit.")
    job_p.add_argument("--git-url", default="", help="Clone URL of the project repository.")
    job_p.add_argument("--job-root", default="", help="Workspace root (default: derived).")
    job_p.add_argument(
        "--local",
        action="store_true",
        help="Clone from the current directory instead of the delivery server.",
    )
    job_p.add_argument(
        "--skip-default",
        action="store_true",
        help="Do not run the 'default' builder setup phase.",
    )
    _add_server_arguments(job_p)
    job_p.add_argument(
        "--build-user",
        default="",
        help=f"Unprivileged user phases run as (env DELIVERY_BUILD_USER, default {DEFAULT_BUILD_USER}).",
    )

    # Review sub-command
    review_p = sub.add_parser("review", help="Submit the current branch for review.")
    review_p.add_argument(
        "--for",
        dest="pipeline",
        default="",
        help=f"Target pipeline (env DELIVERY_PIPELINE, default {DEFAULT_PIPELINE}).",
    )
    review_p.add_argument(
        "--no-open", action="store_true", help="Don't open the review in a browser."
    )
    review_p.add_argument("--no-color", action="store_true", help="Disable colored output.")
    review_p.add_argument("--quiet", "-q", action="store_true", help="Print nothing on success.")
    review_p.add_argument(
        "--skip-verify",
        action="store_true",
        help="Don't check that the pipeline exists on the delivery remote first.",
    )

    # Init sub-command
    init_p = sub.add_parser("init", help="Write a starter .delivery/config.json.")
    init_p.add_argument("--repo", default=".", help="Project root (default: cwd).")
    return p


def _add_server_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--for", dest="pipeline", default="", help="Target pipeline.")
    parser.add_argument("--server", default="", help="Delivery server host.")
    parser.add_argument("--ent", default="", help="Enterprise.")
    parser.add_argument("--org", default="", help="Organization.")
    parser.add_argument("--project", default="", help="Project (default: cwd name).")
    parser.add_argument("--user", default="", help="Delivery user.")
    parser.add_argument("--git-port", default="", help=f"SSH git port (default {DEFAULT_GIT_PORT}).")


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        if args.command == "job":
            return _run_job(args)
        if args.command == "review":
            return _run_review(args)
        if args.command == "init":
            return _run_init(args)
    except DeliveryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    parser.print_help()
    print(
        "\nTip: run 'delivery-engine job <stage> <phases>' to run a job,\n"
        "     or 'delivery-engine review --for <pipeline>' to submit a change.",
        file=sys.stderr,
    )
    return 1


def _run_job(args: argparse.Namespace) -> int:
    cwd = Path.cwd()
    server = _setting(args.server, "DELIVERY_SERVER")
    enterprise = _setting(args.ent, "DELIVERY_ENTERPRISE")
    organization = _setting(args.org, "DELIVERY_ORGANIZATION")
    project = _setting(args.project, "DELIVERY_PROJECT", cwd.name)
    pipeline = _setting(args.pipeline, "DELIVERY_PIPELINE", DEFAULT_PIPELINE)
    user = _setting(args.user, "DELIVERY_USER")
    git_port = _setting(args.git_port, "DELIVERY_GIT_PORT", DEFAULT_GIT_PORT)
    build_user = _setting(args.build_user, "DELIVERY_BUILD_USER", DEFAULT_BUILD_USER)

    runner = SubprocessRunner(build_user=build_user)
    change_ref, local_change = resolve_change_ref(
        runner,
        pipeline=pipeline,
        cwd=cwd,
        branch=args.branch,
        change=args.change,
        patchset=args.patchset,
        sha=args.shasum,
    )

    if args.git_url:
        clone_url = args.git_url
    elif local_change or args.local:
        clone_url = str(cwd)
    else:
        missing = [
            name
            for name, value in (
                ("--server", server),
                ("--ent", enterprise),
                ("--org", organization),
                ("--user", user),
            )
            if not value
        ]
        if missing:
            print(
                f"Error: {', '.join(missing)} required to clone from the delivery server "
                "(or pass --git-url / --local).",
                file=sys.stderr,
            )
            return 1
        clone_url = delivery_ssh_url(user, server, enterprise, organization, project, port=git_port)

    root = job_root_path(
        server=server,
        enterprise=enterprise,
        organization=organization,
        project=project,
        pipeline=pipeline,
        stage=args.stage,
        phases=args.phases,
        job_root=args.job_root or None,
    )
    change = Change(
        enterprise=enterprise,
        organization=organization,
        project=project,
        pipeline=pipeline,
        stage=args.stage,
        phase=args.phases,
        git_url=clone_url,
        sha=args.shasum,
        patchset_branch=change_ref,
        change_id=args.change_id,
        patchset_number=args.patchset or "latest",
    )
    credentials = (
        Credentials(user=user, server=server, git_port=git_port) if user and server else None
    )
    request = JobRequest(
        job_root=root,
        change=change,
        change_ref=change_ref,
        credentials=credentials,
        skip_default=args.skip_default,
        build_user=build_user,
    )
    print(f"Starting job for {project} {args.stage} {args.phases}")
    print(f"Workspace: {root}")
    state = JobRunner(runner, request).run()
    print(f"Job {state.value}")
    return 0


def _run_review(args: argparse.Namespace) -> int:
    cwd = Path.cwd()
    pipeline = _setting(args.pipeline, "DELIVERY_PIPELINE", DEFAULT_PIPELINE)
    prefs = DisplayPreferences(
        color=not args.no_color and sys.stdout.isatty(),
        quiet=args.quiet,
    )
    runner = SubprocessRunner()
    head = get_head(runner, cwd)
    if not prefs.quiet:
        print(f"Review for change {head} targeted for pipeline {pipeline}")
    if not args.skip_verify:
        verify_pipeline_on_remote(runner, pipeline, cwd=cwd)
    review = push_review(runner, head, pipeline, cwd=cwd)
    for line in review_report_lines(review, prefs):
        print(line)
    handle_review_result(review, args.no_open)
    return 0


def _run_init(args: argparse.Namespace) -> int:
    repo = Path(args.repo).resolve()
    if not repo.is_dir():
        print(f"Error: repo path does not exist: {repo}", file=sys.stderr)
        return 1
    written = write_config(repo, default_config(detect_project_type(repo)))
    if written is None:
        print("Project config already exists; leaving it untouched.")
    else:
        print(f"Wrote {written}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
