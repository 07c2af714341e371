from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from replayci.config import build_run_config
from replayci.executor import CommandResult
from replayci.model import Command
from replayci.ui.console import Console, set_console


@dataclass
class Call:
    argv: Tuple[str, ...]
    env: Dict[str, str]
    cwd: Optional[Path]
    timeout: Optional[float] = None
    cancel: Optional[Any] = None


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    `script` maps a key to an outcome, or a list of outcomes consumed one per
    call (the last one repeats). Keys are matched in this order: exact argv
    tuple, longest argv-prefix tuple, program name. An outcome is an int
    (exit code), a CommandResult, an exception to raise, or a callable
    taking the Call and returning one of those. Unmatched commands exit 0.
    """

    def __init__(self, script: Optional[Dict[Any, Any]] = None):
        self.script = {k: (list(v) if isinstance(v, list) else v) for k, v in (script or {}).items()}
        self.calls: List[Call] = []
        self._lock = threading.Lock()

    def run(self, command: Command, *, env=None, cwd=None, timeout=None, cancel=None) -> CommandResult:
        call = Call(tuple(command.argv()), dict(env or {}), Path(cwd) if cwd is not None else None, timeout, cancel)
        with self._lock:
            self.calls.append(call)
            outcome = self._next(call.argv)

        if callable(outcome) and not isinstance(outcome, BaseException):
            outcome = outcome(call)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, int):
            return CommandResult(exit_code=outcome, stdout="", stderr=f"exit {outcome}" if outcome else "", duration=0.01)
        return outcome

    def _next(self, argv: Tuple[str, ...]):
        key = self._match(argv)
        if key is None:
            return 0
        value = self.script[key]
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value

    def _match(self, argv: Tuple[str, ...]):
        if argv in self.script:
            return argv
        prefixes = [k for k in self.script if isinstance(k, tuple) and argv[: len(k)] == k]
        if prefixes:
            return max(prefixes, key=len)
        if argv[0] in self.script:
            return argv[0]
        return None

    def count(self, program: str) -> int:
        return sum(1 for c in self.calls if c.argv[0] == program)

    def argvs(self) -> List[Tuple[str, ...]]:
        return [c.argv for c in self.calls]


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(exit_code=0, stdout=stdout, stderr="", duration=0.01)


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(debug=False))
    yield


@pytest.fixture
def make_config(tmp_path):
    def _make(**kwargs):
        kwargs.setdefault("repo_dir", tmp_path / "repo")
        kwargs.setdefault("build_dir", tmp_path / "build")
        return build_run_config(**kwargs)
    return _make
