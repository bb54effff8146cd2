"""Tests for the review push protocol parser and presentation helpers."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from delivery_engine.errors import DeliveryError, ErrorKind
from delivery_engine.review import (
    DisplayPreferences,
    PushResult,
    PushResultFlag,
    ReviewResult,
    handle_review_result,
    parse_git_push_output,
    push_result_messages,
    push_review,
    review_report_lines,
    verify_pipeline_on_remote,
)

if TYPE_CHECKING:
    from conftest import FakeRunner

CHANGE_URL = (
    "https://delivery.example.com/e/acme/#/organizations/infra/projects/web"
    "/changes/4f3c2b1a-1234-4abc-9def-0123456789ab"
)


class TestParseGitPushOutput:
    def test_up_to_date_record(self):
        result = parse_git_push_output(
            "=\trefs/heads/foo:refs/heads/_for/master/foo\t[up to date]\n", ""
        )
        assert result.push_results == (PushResult(PushResultFlag.UP_TO_DATE, "up to date"),)
        assert result.messages == ()
        assert result.url is None
        assert result.change_id is None

    @pytest.mark.parametrize(
        ("flag", "expected"),
        [
            (" ", PushResultFlag.FAST_FORWARD),
            ("+", PushResultFlag.FORCED_UPDATE),
            ("-", PushResultFlag.DELETED_REF),
            ("*", PushResultFlag.NEW_REF),
            ("!", PushResultFlag.REJECTED),
            ("=", PushResultFlag.UP_TO_DATE),
        ],
    )
    def test_every_status_flag(self, flag: str, expected: PushResultFlag):
        stdout = f"{flag}\trefs/heads/foo:refs/heads/_for/master/foo\t[reason]\n"
        assert parse_git_push_output(stdout, "").push_results[0].flag is expected

    def test_banner_lines_are_skipped_and_order_is_kept(self):
        stdout = (
            "To ssh://alice@acme@delivery.example.com:8989/acme/infra/web\n"
            "*\trefs/heads/a:refs/heads/_for/master/a\t[new branch]\n"
            "!\trefs/heads/b:refs/heads/_for/master/b\t[rejected]\n"
            "Done\n"
        )
        result = parse_git_push_output(stdout, "")
        assert [r.flag for r in result.push_results] == [
            PushResultFlag.NEW_REF,
            PushResultFlag.REJECTED,
        ]
        assert [r.reason for r in result.push_results] == ["new branch", "rejected"]

    def test_unmatched_stdout_line_is_fatal(self):
        with pytest.raises(DeliveryError) as exc_info:
            parse_git_push_output("this is not porcelain\n", "")
        assert exc_info.value.kind is ErrorKind.BAD_GIT_OUTPUT_MATCH
        assert "this is not porcelain" in exc_info.value.detail

    def test_unknown_flag_is_fatal(self):
        with pytest.raises(DeliveryError) as exc_info:
            parse_git_push_output("?\trefs/heads/a:refs/heads/b\t[odd]\n", "")
        assert exc_info.value.kind is ErrorKind.BAD_GIT_OUTPUT_MATCH

    def test_fatal_line_after_valid_records_gives_no_partial_result(self):
        stdout = "*\trefs/heads/a:refs/heads/_for/master/a\t[new branch]\ngarbage\n"
        with pytest.raises(DeliveryError):
            parse_git_push_output(stdout, "")

    def test_remote_lines_become_messages_and_url(self):
        stderr = (
            "Pushing to ssh://delivery.example.com/acme/infra/web\n"
            "remote: \n"
            "remote: Create new change for review\x1b[K\n"
            "remote: https://delivery.example.com/e/acme/old\n"
            f"remote: {CHANGE_URL}\x1b[K\n"
            "remote: Thanks!\n"
        )
        result = parse_git_push_output("", stderr)
        assert result.messages == ("Create new change for review", "Thanks!")
        assert result.url == CHANGE_URL
        assert result.change_id == "4f3c2b1a-1234-4abc-9def-0123456789ab"

    def test_url_without_change_id(self):
        result = parse_git_push_output("", "remote: http://delivery.example.com/plain\n")
        assert result.url == "http://delivery.example.com/plain"
        assert result.change_id is None


class TestPushReview:
    def test_push_command_and_parse(self, fake_runner: FakeRunner, tmp_path: Path):
        fake_runner.on(
            "git",
            "push",
            stdout="*\trefs/heads/feat:refs/heads/_for/master/feat\t[new branch]\nDone\n",
            stderr=f"remote: {CHANGE_URL}\n",
        )

        result = push_review(fake_runner, "feat", "master", cwd=tmp_path)

        assert fake_runner.argvs() == [
            [
                "git",
                "push",
                "--porcelain",
                "--progress",
                "--verbose",
                "delivery",
                "feat:_for/master/feat",
            ]
        ]
        assert result.push_results == (PushResult(PushResultFlag.NEW_REF, "new branch"),)
        assert result.url == CHANGE_URL

    def test_failed_push_is_git_failed(self, fake_runner: FakeRunner, tmp_path: Path):
        fake_runner.on("git", "push", returncode=1, stderr="fatal: could not read from remote")
        with pytest.raises(DeliveryError) as exc_info:
            push_review(fake_runner, "feat", "master", cwd=tmp_path)
        assert exc_info.value.kind is ErrorKind.GIT_FAILED

    def test_verify_pipeline_on_remote(self, fake_runner: FakeRunner, tmp_path: Path):
        fake_runner.on("git", "ls-remote", stdout="0123abcd\trefs/heads/master\n")
        verify_pipeline_on_remote(fake_runner, "master", cwd=tmp_path)
        assert fake_runner.argvs() == [["git", "ls-remote", "delivery", "refs/heads/master"]]

    def test_verify_pipeline_missing_on_remote(self, fake_runner: FakeRunner, tmp_path: Path):
        with pytest.raises(DeliveryError) as exc_info:
            verify_pipeline_on_remote(fake_runner, "release", cwd=tmp_path)
        assert exc_info.value.kind is ErrorKind.BRANCH_NOT_FOUND_ON_DELIVERY_REMOTE


class TestPresentation:
    def test_push_result_messages(self):
        results = [
            PushResult(PushResultFlag.FAST_FORWARD, "feat"),
            PushResult(PushResultFlag.NEW_REF, "new branch"),
            PushResult(PushResultFlag.REJECTED, "non-fast-forward"),
            PushResult(PushResultFlag.UP_TO_DATE, "up to date"),
        ]
        assert push_result_messages(results) == [
            "Updated change: feat",
            "Created change: new branch",
            "Rejected change: non-fast-forward",
            "Nothing added to the existing change",
        ]

    def test_color_is_applied_only_when_enabled(self):
        results = [PushResult(PushResultFlag.REJECTED, "x")]
        colored = push_result_messages(results, DisplayPreferences(color=True))
        assert colored[0].startswith("\x1b[31m")
        assert colored[0].endswith("\x1b[0m")

    def test_report_lines(self):
        review = ReviewResult(
            push_results=(PushResult(PushResultFlag.NEW_REF, "new branch"),),
            messages=("Create new change for review",),
            url=CHANGE_URL,
        )
        prefs = DisplayPreferences(color=False)
        assert review_report_lines(review, prefs) == [
            "Created change: new branch",
            "Create new change for review",
            CHANGE_URL,
        ]
        assert review_report_lines(review, DisplayPreferences(quiet=True)) == []

    def test_handle_review_result_opens_browser(self):
        opened: list[str] = []

        def opener(url: str) -> bool:
            opened.append(url)
            return True

        review = ReviewResult(url=CHANGE_URL)
        assert handle_review_result(review, False, opener=opener) == CHANGE_URL
        assert opened == [CHANGE_URL]

    def test_handle_review_result_respects_no_open(self):
        opened: list[str] = []
        review = ReviewResult(url=CHANGE_URL)
        assert handle_review_result(review, True, opener=opened.append) == CHANGE_URL
        assert opened == []

    def test_handle_review_result_without_url(self):
        assert handle_review_result(ReviewResult(), False, opener=lambda _url: True) is None

    def test_browser_failure_still_returns_url(self):
        review = ReviewResult(url=CHANGE_URL)
        assert handle_review_result(review, False, opener=lambda _url: False) == CHANGE_URL
