from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conftest import FakeRunner, ok
from replayci.errors import ExecutionFailure, FailureKind, PrerequisiteMissing, StageFailure
from replayci.git_facts.git import SYNC_STAGE, RepositorySync
from replayci.model import TargetRef

HEAD = {
    ("git", "rev-parse", "HEAD"): ok("def456\n"),
    ("git", "log", "--oneline", "-1"): ok("def456 Add feature\n"),
}


def test_current_reports_head(tmp_path: Path) -> None:
    runner = FakeRunner({**HEAD, ("git", "rev-parse", "--abbrev-ref", "HEAD"): ok("main\n")})
    result = RepositorySync(tmp_path, runner).resolve(TargetRef.current())

    assert result.commit == "def456"
    assert result.label == "current (main)"
    assert result.summary == "def456 Add feature"
    assert not any(c.argv[:2] in (("git", "fetch"), ("git", "checkout")) for c in runner.calls)


def test_current_tolerates_non_git_directory(tmp_path: Path) -> None:
    runner = FakeRunner({"git": 128})
    result = RepositorySync(tmp_path, runner).resolve(TargetRef.current())
    assert result.commit is None
    assert "not a git repository" in result.label


def test_pr_checkout_with_gh(tmp_path: Path) -> None:
    runner = FakeRunner(HEAD)
    result = RepositorySync(tmp_path, runner).resolve(TargetRef.pr(595))

    argvs = runner.argvs()
    assert ("git", "fetch", "origin") in argvs
    assert ("git", "reset", "--hard", "origin/main") in argvs
    assert ("gh", "pr", "checkout", "595", "--force") in argvs
    assert not any(a[:2] == ("git", "fetch") and len(a) > 3 for a in argvs)
    assert argvs.index(("git", "reset", "--hard", "origin/main")) < argvs.index(("gh", "pr", "checkout", "595", "--force"))
    assert result.label == "PR #595"
    assert result.commit == "def456"
    assert all(c.cwd == tmp_path for c in runner.calls)


def test_pr_falls_back_when_gh_fails(tmp_path: Path) -> None:
    runner = FakeRunner({**HEAD, "gh": 1})
    result = RepositorySync(tmp_path, runner).resolve(TargetRef.pr(595))

    argvs = runner.argvs()
    assert ("git", "fetch", "origin", "pull/595/head:pr-595") in argvs
    assert argvs[-3:-2] == [("git", "checkout", "pr-595")]
    assert result.label == "PR #595"


def test_pr_falls_back_when_gh_is_missing(tmp_path: Path) -> None:
    missing = ExecutionFailure(kind=FailureKind.NOT_STARTED, command="gh pr checkout", message="not found")
    runner = FakeRunner({**HEAD, "gh": missing})
    RepositorySync(tmp_path, runner).resolve(TargetRef.pr(7))
    assert ("git", "checkout", "pr-7") in runner.argvs()


def test_pr_creates_local_main_when_missing(tmp_path: Path) -> None:
    runner = FakeRunner({**HEAD, ("git", "checkout", "main"): 1})
    RepositorySync(tmp_path, runner).resolve(TargetRef.pr(1))
    assert ("git", "checkout", "-b", "main", "origin/main") in runner.argvs()


def test_branch_checkout(tmp_path: Path) -> None:
    runner = FakeRunner(HEAD)
    result = RepositorySync(tmp_path, runner).resolve(TargetRef.branch("feature"))

    argvs = runner.argvs()
    assert argvs[:3] == [("git", "reset", "--hard", "HEAD"), ("git", "clean", "-fd"), ("git", "fetch", "origin")]
    assert ("git", "checkout", "feature") in argvs
    assert ("git", "reset", "--hard", "origin/feature") in argvs
    assert result.label == "branch feature"


def test_failed_checkout_raises_stage_failure(tmp_path: Path) -> None:
    runner = FakeRunner({("git", "checkout"): 1})
    with pytest.raises(StageFailure) as exc:
        RepositorySync(tmp_path, runner).resolve(TargetRef.branch("nope"))
    assert exc.value.stage == SYNC_STAGE
    assert exc.value.exit_code == 1
    assert "git checkout nope" in exc.value.command


def test_clones_missing_repository(tmp_path: Path) -> None:
    repo = tmp_path / "src" / "sycl-tla"

    def clone(call):
        repo.mkdir(parents=True)
        return 0

    runner = FakeRunner({**HEAD, ("git", "clone"): clone})
    RepositorySync(repo, runner, repo_url="https://example.invalid/repo.git").resolve(TargetRef.branch("main"))

    first = runner.calls[0]
    assert first.argv == ("git", "clone", "https://example.invalid/repo.git", str(repo))
    assert first.cwd == repo.parent


def test_missing_repository_without_url(tmp_path: Path) -> None:
    with pytest.raises(PrerequisiteMissing):
        RepositorySync(tmp_path / "missing", FakeRunner()).resolve(TargetRef.pr(1))


def test_git_not_installed(tmp_path: Path) -> None:
    missing = ExecutionFailure(kind=FailureKind.NOT_STARTED, command="git", message="not found")
    with pytest.raises(PrerequisiteMissing) as exc:
        RepositorySync(tmp_path, FakeRunner({"git": missing})).resolve(TargetRef.branch("main"))
    assert exc.value.what == "git"


def test_every_sync_command_gets_the_cancel_event(tmp_path: Path) -> None:
    cancel = threading.Event()
    runner = FakeRunner(HEAD)
    RepositorySync(tmp_path, runner).resolve(TargetRef.pr(595), cancel=cancel)

    assert runner.count("git") > 3
    assert runner.count("gh") == 1
    assert all(c.cancel is cancel for c in runner.calls)


def test_cancel_while_reading_current_head_propagates(tmp_path: Path) -> None:
    cancelled = ExecutionFailure(kind=FailureKind.CANCELLED, command="git rev-parse HEAD", message="cancelled")
    with pytest.raises(ExecutionFailure) as exc:
        RepositorySync(tmp_path, FakeRunner({"git": cancelled})).resolve(TargetRef.current(), cancel=threading.Event())
    assert exc.value.kind is FailureKind.CANCELLED
