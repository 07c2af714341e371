# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

# Reserved exit codes for failures that have no process exit code of their own.
EXIT_ORCHESTRATION = 1
EXIT_TIMED_OUT = 124
EXIT_NOT_STARTED = 127
EXIT_CANCELLED = 130
EXIT_SIGNAL_BASE = 128

STDERR_TAIL = 4000


TOOL_HINTS = {
    "cmake": "Install CMake (e.g., apt install cmake) or fix PATH.",
    "ninja": "Install Ninja (e.g., apt install ninja-build) or fix PATH.",
    "icpx": "Source the oneAPI environment (setvars.sh) so the DPC++ compiler is on PATH.",
    "icx": "Source the oneAPI environment (setvars.sh) so the oneAPI C compiler is on PATH.",
    "sycl-ls": "Source the oneAPI environment (setvars.sh) to get sycl-ls.",
    "git": "Install Git or fix PATH.",
    "gh": "Install the GitHub CLI (gh) and run `gh auth login`.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "bash": "A POSIX bash is needed to source the toolchain environment.",
}


def tail(text: str | None, limit: int = STDERR_TAIL) -> str:
    if not text:
        return ""
    return text[-limit:]


@dataclass(eq=False)
class ConfigurationError(Exception):
    """Invalid or conflicting user input. Raised before anything runs."""
    message: str
    details: dict = field(default_factory=dict)

    exit_code = EXIT_ORCHESTRATION

    def __str__(self) -> str:
        lines = [f"configuration error: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class PrerequisiteMissing(Exception):
    """A directory, file or tool the run depends on is not there."""
    what: str
    message: str
    hint: Optional[str] = None

    exit_code = EXIT_ORCHESTRATION

    @classmethod
    def tool(cls, name: str) -> PrerequisiteMissing:
        return cls(
            what=name,
            message=f"required tool not found: {name}",
            hint=TOOL_HINTS.get(name, f"Install {name} or fix PATH."),
        )

    def __str__(self) -> str:
        lines = [f"{self.message}", f"missing={self.what}"]
        if self.hint:
            lines.append(f"hint={self.hint}")
        return "\n".join(lines)


class FailureKind(str, Enum):
    NOT_STARTED = "not_started"
    TIMED_OUT = "timed_out"
    SIGNALED = "signaled"
    CANCELLED = "cancelled"


@dataclass(eq=False)
class ExecutionFailure(Exception):
    """
    A command could not be run to completion: it never started, ran past its
    timeout, was killed by a signal or was cancelled. A plain non-zero exit
    is not an ExecutionFailure.
    """
    kind: FailureKind
    command: str
    message: str
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    signal: Optional[int] = None

    @property
    def exit_code(self) -> int:
        if self.kind is FailureKind.NOT_STARTED:
            return EXIT_NOT_STARTED
        if self.kind is FailureKind.TIMED_OUT:
            return EXIT_TIMED_OUT
        if self.kind is FailureKind.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_SIGNAL_BASE + (self.signal or 0)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message} (cmd: {self.command})"


@dataclass(eq=False)
class StageFailure(Exception):
    """A stage's command ran and returned non-zero."""
    stage: str
    command: str
    exit_code: int
    stderr: str = ""
    attempts: int = 1

    def __str__(self) -> str:
        text = f"[{self.stage}] failed (exit={self.exit_code}): {self.command}"
        if self.attempts > 1:
            text += f" after {self.attempts} attempts"
        return text


@dataclass(eq=False)
class PersistenceError(Exception):
    """The state log (or a stage log) could not be written."""
    path: str
    message: str

    exit_code = EXIT_ORCHESTRATION

    def __str__(self) -> str:
        return f"could not write {self.path}: {self.message}"
