"""Unit tests for git_tools helpers."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from delivery_engine.errors import DeliveryError, ErrorKind
from delivery_engine.git_tools import (
    checkout_branch_name,
    delivery_ssh_url,
    ensure_git_identity,
    get_head,
    git_command,
    parse_get_head,
)

if TYPE_CHECKING:
    from conftest import FakeRunner


def test_parse_get_head_returns_starred_branch():
    assert parse_get_head("  master\n* feature/login\n  other\n") == "feature/login"


def test_parse_get_head_without_current_branch_is_not_on_a_branch():
    with pytest.raises(DeliveryError) as exc_info:
        parse_get_head("  master\n  other\n")
    assert exc_info.value.kind is ErrorKind.NOT_ON_A_BRANCH


def test_parse_get_head_rejects_unrecognized_lines():
    with pytest.raises(DeliveryError) as exc_info:
        parse_get_head("garbage\n")
    assert exc_info.value.kind is ErrorKind.BAD_GIT_OUTPUT_MATCH
    assert "garbage" in exc_info.value.detail


def test_get_head_runs_git_branch_in_repo(fake_runner: FakeRunner, tmp_path: Path):
    fake_runner.on("git", "branch", stdout="* main\n")
    assert get_head(fake_runner, tmp_path) == "main"
    assert fake_runner.calls[0].cwd == tmp_path


def test_git_command_failure_carries_output(fake_runner: FakeRunner, tmp_path: Path):
    fake_runner.on("git", "merge", returncode=1, stdout="CONFLICT (content)", stderr="")
    with pytest.raises(DeliveryError) as exc_info:
        git_command(fake_runner, ["merge", "FETCH_HEAD"], cwd=tmp_path)
    assert exc_info.value.kind is ErrorKind.GIT_FAILED
    assert "CONFLICT (content)" in exc_info.value.detail


@pytest.mark.parametrize(
    ("change", "patchset", "expected"),
    [("feature", "latest", "feature"), ("feature", "3", "feature/3")],
)
def test_checkout_branch_name(change: str, patchset: str, expected: str):
    assert checkout_branch_name(change, patchset) == expected


def test_delivery_ssh_url_uses_default_port():
    assert (
        delivery_ssh_url("alice", "delivery.example.com", "acme", "infra", "web")
        == "ssh://alice@acme@delivery.example.com:8989/acme/infra/web"
    )


def test_delivery_ssh_url_without_port():
    assert (
        delivery_ssh_url("alice", "delivery.example.com", "acme", "infra", "web", port=None)
        == "ssh://alice@acme@delivery.example.com/acme/infra/web"
    )


def test_ensure_git_identity_sets_only_missing_values(fake_runner: FakeRunner, tmp_path: Path):
    fake_runner.on("git", "config", "user.name", exact=True, stdout="Existing Person\n")
    fake_runner.on("git", "config", "user.email", exact=True, returncode=1)

    ensure_git_identity(fake_runner, tmp_path)

    assert fake_runner.argvs() == [
        ["git", "config", "user.name"],
        ["git", "config", "user.email"],
        ["git", "config", "user.email", "delivery-job@localhost"],
    ]


def test_ensure_git_identity_reports_missing_git(fake_runner: FakeRunner, tmp_path: Path):
    fake_runner.on("git", raises=FileNotFoundError(2, "No such file", "git"))

    with pytest.raises(DeliveryError) as exc_info:
        ensure_git_identity(fake_runner, tmp_path)

    assert exc_info.value.kind is ErrorKind.FAILED_TO_EXECUTE
    assert fake_runner.argvs() == [["git", "config", "user.name"]]
