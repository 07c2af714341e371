# executor.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import ExecutionFailure, FailureKind, tail
from .model import Command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def stderr_tail(self) -> str:
        return tail(self.stderr)


class CommandRunner:
    """
    Runs one external command and waits for it.

    A non-zero exit code is a normal CommandResult. ExecutionFailure is raised
    only when the program cannot be started, exceeds its timeout, is killed
    by a signal, or the caller's cancel event is set. On timeout/cancel the
    whole process group gets SIGTERM, then SIGKILL after `grace_period`.

    Calls share no state, so one runner can be used from several threads.
    """

    def __init__(self, *, grace_period: float = 10.0, poll_interval: float = 0.1):
        self.grace_period = grace_period
        self.poll_interval = poll_interval

    def run(
        self,
        command: Command,
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: str | Path | None = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        argv = command.argv()
        logger.debug("exec %s (cwd=%s, timeout=%s)", command, cwd, timeout)

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            # missing executable, permission denied, bad cwd
            raise ExecutionFailure(
                kind=FailureKind.NOT_STARTED,
                command=str(command),
                message=f"could not start {command.program}: {e.strerror or e}",
            ) from e

        deadline = start + timeout if timeout is not None else None

        try:
            stdout, stderr = self._wait(proc, command, start, deadline, timeout, cancel)
        except BaseException:
            # KeyboardInterrupt and the like: the child has its own session and would outlive us
            if proc.poll() is None:
                self._stop(proc)
            raise

        duration = time.monotonic() - start
        code = proc.returncode

        if code < 0:
            signum = -code
            raise ExecutionFailure(
                kind=FailureKind.SIGNALED,
                command=str(command),
                message=f"killed by signal {_signal_name(signum)}",
                stdout=stdout or "",
                stderr=stderr or "",
                duration=duration,
                signal=signum,
            )

        logger.debug("exit %d after %.2fs: %s", code, duration, command)
        return CommandResult(exit_code=code, stdout=stdout or "", stderr=stderr or "", duration=duration)

    def _wait(
        self,
        proc: subprocess.Popen,
        command: Command,
        start: float,
        deadline: Optional[float],
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> Tuple[str, str]:
        """Wait for exit, polling for cancel and the deadline."""
        while True:
            wait_for = self.poll_interval
            if deadline is not None:
                wait_for = max(0.0, min(wait_for, deadline - time.monotonic()))
            try:
                return proc.communicate(timeout=wait_for)
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    kind, message = FailureKind.CANCELLED, "cancelled"
                elif deadline is not None and time.monotonic() >= deadline:
                    kind, message = FailureKind.TIMED_OUT, f"timed out after {timeout}s"
                else:
                    continue

            stdout, stderr = self._stop(proc)
            raise ExecutionFailure(
                kind=kind,
                command=str(command),
                message=message,
                stdout=stdout or "",
                stderr=stderr or "",
                duration=time.monotonic() - start,
            )

    def _stop(self, proc: subprocess.Popen) -> Tuple[str, str]:
        """Terminate gracefully, then kill. Returns whatever output was left."""
        _send(proc, signal.SIGTERM)
        try:
            return proc.communicate(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            logger.warning("pid %d ignored SIGTERM for %.1fs, killing", proc.pid, self.grace_period)
            _send(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            return proc.communicate()


def _send(proc: subprocess.Popen, sig: int) -> None:
    try:
        if os.name == "posix":
            # child runs in its own session, so its pid is the group id
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
