# git.py
# Small, focused wrapper around the Git (and GitHub) CLIs.
# Every call goes through a CommandRunner so the rest of the codebase never
# needs to spawn git itself.

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from ..errors import ExecutionFailure, PrerequisiteMissing, StageFailure, FailureKind
from ..executor import CommandResult, CommandRunner
from ..model import Command, TargetRef

logger = logging.getLogger(__name__)

SYNC_STAGE = "repository-sync"


@dataclass(frozen=True)
class SyncResult:
    """Identity of the working tree the run is about to test."""
    commit: Optional[str]
    label: str
    summary: str = ""

    def to_dict(self) -> dict:
        return {"commit": self.commit, "label": self.label, "summary": self.summary}


class RepositorySync:
    """
    Brings `repo_dir` to the requested target and reports what is checked out.

    - "current": no checkout; report HEAD (tolerates a non-git directory)
    - "branch":  clean, fetch, checkout, hard reset to <remote>/<branch>
    - "pr":      clean, fetch, reset <default_branch>, then `gh pr checkout`;
                 falls back to fetching pull/<N>/head into pr-<N>
    """

    def __init__(
        self,
        repo_dir: str | Path,
        runner: CommandRunner,
        *,
        repo_url: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        remote: str = "origin",
        default_branch: str = "main",
    ):
        self.repo_dir = Path(repo_dir)
        self.runner = runner
        self.repo_url = repo_url
        self.env = env
        self.remote = remote
        self.default_branch = default_branch
        self._cancel: Optional[threading.Event] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, target: TargetRef, cancel: Optional[threading.Event] = None) -> SyncResult:
        """Check out `target`. Setting `cancel` stops whichever git/gh call is running."""
        self._cancel = cancel
        if target.kind == "current":
            return self._describe_current()

        self._ensure_clone()
        self._reset_worktree()
        self._git("fetch", self.remote)

        if target.kind == "pr":
            label = self._checkout_pr(str(target.value))
        elif target.kind == "branch":
            label = self._checkout_branch(str(target.value))
        else:
            raise ValueError(f"Unknown target kind: {target.kind!r}")

        return SyncResult(commit=self.head_sha(), label=label, summary=self.head_summary())

    def head_sha(self) -> str:
        return self._git("rev-parse", "HEAD")

    def head_summary(self) -> str:
        return self._git("log", "--oneline", "-1")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _describe_current(self) -> SyncResult:
        try:
            sha = self.head_sha()
            branch = self._git("rev-parse", "--abbrev-ref", "HEAD")
            summary = self.head_summary()
        except (StageFailure, ExecutionFailure, PrerequisiteMissing) as e:
            if isinstance(e, ExecutionFailure) and e.kind is FailureKind.CANCELLED:
                raise
            logger.warning("could not read git state of %s: %s", self.repo_dir, e)
            return SyncResult(commit=None, label="working tree (not a git repository)")
        return SyncResult(commit=sha, label=f"current ({branch})", summary=summary)

    def _ensure_clone(self) -> None:
        if self.repo_dir.is_dir():
            return
        if not self.repo_url:
            raise PrerequisiteMissing(
                what=str(self.repo_dir),
                message="Repository directory not found and no repository URL to clone from",
            )
        logger.info("cloning %s into %s", self.repo_url, self.repo_dir)
        self.repo_dir.parent.mkdir(parents=True, exist_ok=True)
        self._git("clone", self.repo_url, str(self.repo_dir), cwd=self.repo_dir.parent)

    def _reset_worktree(self) -> None:
        self._git("reset", "--hard", "HEAD")
        self._git("clean", "-fd")

    def _checkout_branch(self, branch: str) -> str:
        self._git("checkout", branch)
        self._git("reset", "--hard", f"{self.remote}/{branch}")
        return f"branch {branch}"

    def _checkout_pr(self, number: str) -> str:
        base = self.default_branch
        if not self._try_git("checkout", base).ok:
            self._git("checkout", "-b", base, f"{self.remote}/{base}")
        self._git("reset", "--hard", f"{self.remote}/{base}")
        self._git("config", "advice.diverging", "false")

        gh = self._try(Command("gh", ("pr", "checkout", number, "--force")))
        if gh is not None and gh.ok:
            return f"PR #{number}"

        logger.warning("gh pr checkout %s failed, fetching pull/%s/head directly", number, number)
        pr_branch = f"pr-{number}"
        self._git("fetch", self.remote, f"pull/{number}/head:{pr_branch}")
        self._git("checkout", pr_branch)
        return f"PR #{number}"

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _try(self, command: Command, cwd: Optional[Path] = None) -> Optional[CommandResult]:
        """Run a command whose failure has a fallback. None if it could not start."""
        try:
            return self.runner.run(command, env=self.env, cwd=cwd or self.repo_dir, cancel=self._cancel)
        except ExecutionFailure as e:
            if e.kind is not FailureKind.NOT_STARTED:
                raise
            logger.warning("%s", e)
            return None

    def _try_git(self, *args: str) -> CommandResult:
        result = self._try(Command("git", args))
        if result is None:
            raise PrerequisiteMissing.tool("git")
        return result

    def _git(self, *args: str, cwd: Optional[Path] = None) -> str:
        """Run git and return stripped stdout; non-zero exit raises StageFailure."""
        command = Command("git", args)
        try:
            result = self.runner.run(command, env=self.env, cwd=cwd or self.repo_dir, cancel=self._cancel)
        except ExecutionFailure as e:
            if e.kind is FailureKind.NOT_STARTED and (cwd or self.repo_dir).is_dir():
                raise PrerequisiteMissing.tool("git") from e
            raise
        if not result.ok:
            raise StageFailure(
                stage=SYNC_STAGE,
                command=str(command),
                exit_code=result.exit_code,
                stderr=result.stderr_tail,
            )
        return result.stdout.strip()
