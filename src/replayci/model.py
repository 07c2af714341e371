# model.py
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple

if TYPE_CHECKING:
    from .config import RunConfig


class FailurePolicy(str, Enum):
    """What the engine does when a stage fails."""
    FATAL = "fatal"
    WARN_CONTINUE = "warn-continue"
    RETRY_THEN_FATAL = "retry-then-fatal"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCESS, StageStatus.FAILED, StageStatus.SKIPPED)


class RunStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Command:
    """A program plus its argument list. Never passed through a shell."""
    program: str
    args: Tuple[str, ...] = ()

    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return shlex.join(self.argv())


@dataclass(frozen=True)
class TargetRef:
    """
    What the repository should be checked out to before the first stage.

    kind is one of:
      - "current": use the working tree as it is
      - "branch":  value is a branch name
      - "pr":      value is a pull request number (digits only)
    """
    kind: str = "current"
    value: Optional[str] = None

    @classmethod
    def current(cls) -> TargetRef:
        return cls("current")

    @classmethod
    def branch(cls, name: str) -> TargetRef:
        return cls("branch", name)

    @classmethod
    def pr(cls, number: str | int) -> TargetRef:
        return cls("pr", str(number))

    @property
    def label(self) -> str:
        if self.kind == "pr":
            return f"PR #{self.value}"
        if self.kind == "branch":
            return f"branch {self.value}"
        return "current working tree"


@dataclass(frozen=True)
class StageDefinition:
    """
    One pipeline stage.

    `needs` lists stages that must finish successfully first. When
    `allow_skipped_needs` is set, a dependency that was skipped on request
    (its own skip predicate) also counts as satisfied.

    `retries` only applies to FailurePolicy.RETRY_THEN_FATAL.
    """
    name: str
    command: Command
    needs: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    skip_if: Optional[Callable[["RunConfig"], bool]] = field(default=None, compare=False)
    policy: FailurePolicy = FailurePolicy.FATAL
    retries: int = 1
    cwd: Optional[str] = None
    timeout: Optional[float] = None
    device_exclusive: bool = False
    allow_skipped_needs: bool = False
    description: str = ""

    def should_skip(self, config: "RunConfig") -> bool:
        if self.skip_if is None:
            return False
        return bool(self.skip_if(config))

    @property
    def max_attempts(self) -> int:
        if self.policy is FailurePolicy.RETRY_THEN_FATAL:
            return 1 + max(0, self.retries)
        return 1
