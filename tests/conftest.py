"""Shared pytest configuration: markers, execution ordering, and a fake process runner."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from delivery_engine.process import CommandResult, ProcessRunner, RunAs


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@dataclass
class Call:
    program: str
    args: tuple[str, ...]
    cwd: Path
    env: dict[str, str] | None
    run_as: RunAs

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]


@dataclass
class _Rule:
    program: str
    args: tuple[str, ...]
    exact: bool
    returncode: int
    stdout: str
    stderr: str
    raises: Exception | None
    effect: Callable[[Call], None] | None

    def matches(self, program: str, args: tuple[str, ...]) -> bool:
        if program != self.program:
            return False
        if self.exact:
            return args == self.args
        return args[: len(self.args)] == self.args


@dataclass
class FakeRunner(ProcessRunner):
    """Records every invocation and answers from scripted rules.

    Unscripted commands succeed with empty output. The most recently added
    matching rule wins.
    """

    calls: list[Call] = field(default_factory=list)
    rules: list[_Rule] = field(default_factory=list)

    def on(
        self,
        program: str,
        *args: str,
        exact: bool = False,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        raises: Exception | None = None,
        effect: Callable[[Call], None] | None = None,
    ) -> FakeRunner:
        self.rules.append(
            _Rule(program, tuple(args), exact, returncode, stdout, stderr, raises, effect)
        )
        return self

    def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        run_as: RunAs = RunAs.CURRENT,
    ) -> CommandResult:
        call = Call(program, tuple(args), Path(cwd), dict(env) if env else None, run_as)
        self.calls.append(call)
        for rule in reversed(self.rules):
            if rule.matches(call.program, call.args):
                if rule.raises is not None:
                    raise rule.raises
                if rule.effect is not None:
                    rule.effect(call)
                return CommandResult(
                    program, call.args, rule.returncode, rule.stdout, rule.stderr
                )
        return CommandResult(program, call.args, 0)

    def argvs(self, program: str | None = None) -> list[list[str]]:
        return [c.argv for c in self.calls if program is None or c.program == program]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()
