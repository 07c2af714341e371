# engine.py
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .config import RunConfig
from .dag import order_stages
from .env import compose
from .errors import (
    EXIT_CANCELLED,
    EXIT_ORCHESTRATION,
    ExecutionFailure,
    FailureKind,
    PersistenceError,
    PrerequisiteMissing,
    StageFailure,
)
from .executor import CommandRunner
from .git_facts.git import SYNC_STAGE, RepositorySync, SyncResult
from .model import FailurePolicy, RunStatus, StageDefinition, StageStatus
from .state import PipelineState, StageRecord, StateSnapshot
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)

CAUSE_REQUESTED = "skip condition met"
CAUSE_RESUMED = "resumed"
CAUSE_CANCELLED = "cancelled"
CAUSE_SYNC_FAILED = "repository sync failed"

# RunConfig.describe() entries that must match before a previous run's
# results are reused; skip flags and parallelism may differ.
RESUME_KEYS = ("target", "gpu", "sycl_target", "igc_version", "repo_dir", "build_dir")


@dataclass
class RunResult:
    run_id: str
    status: RunStatus
    exit_code: int
    records: List[StageRecord]
    sync: Optional[SyncResult] = None
    failure: Optional[BaseException] = None
    failed_stage: Optional[str] = None
    persistence_error: Optional[PersistenceError] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def record(self, stage: str) -> StageRecord:
        for r in self.records:
            if r.stage == stage:
                return r
        raise KeyError(stage)

    def statuses(self) -> Dict[str, StageStatus]:
        return {r.stage: r.status for r in self.records}


@dataclass
class _Outcome:
    record: StageRecord
    error: Optional[BaseException] = None
    fatal: bool = False


class PipelineEngine:
    """
    Runs stages in dependency order and records every transition.

    Sequential by default (declaration order breaks ties). With
    config.parallel, independent stages run on a thread pool; stages marked
    device_exclusive still never overlap each other.

    Failure handling per stage policy:
      - fatal:            stage FAILED, run aborted, later stages SKIPPED
      - warn-continue:    stage FAILED, run goes on, its dependents SKIPPED
      - retry-then-fatal: up to 1 + retries attempts, then fatal

    Setting `cancel` stops the running command (SIGTERM, then SIGKILL),
    marks it FAILED with cause "cancelled" and aborts the run.
    """

    def __init__(
        self,
        stages: Sequence[StageDefinition],
        config: RunConfig,
        *,
        runner: Optional[CommandRunner] = None,
        env_layers: Sequence[Optional[Mapping[str, str]]] = (),
        sync: Optional[RepositorySync] = None,
        state_path: str | Path | None = None,
        log_dir: str | Path | None = None,
        cancel: Optional[threading.Event] = None,
        previous: Optional[StateSnapshot] = None,
        console: Optional[Console] = None,
    ):
        self.stages = order_stages(stages)
        self.config = config
        self.runner = runner or CommandRunner()
        self.env_layers = tuple(env_layers)
        self.sync = sync
        self.state_path = Path(state_path) if state_path else config.state_file
        self.log_dir = Path(log_dir) if log_dir else config.log_dir
        self.cancel = cancel or threading.Event()
        self.previous = previous
        self.console = console or get_console()
        self.workdir = config.build_dir

        self._device_lock = threading.Lock()
        self._lock = threading.Lock()
        self._aborted: Optional[str] = None
        self._cancelled = False
        self._fatal: Optional[Tuple[str, int, BaseException]] = None
        self._warned: Optional[Tuple[str, int, BaseException]] = None
        self._carried: Set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> RunResult:
        state = PipelineState([s.name for s in self.stages], self.state_path)
        sync_result: Optional[SyncResult] = None
        persistence_error: Optional[PersistenceError] = None

        try:
            sync_result = self._sync()
            self._carried = self._carried_over(self.previous, sync_result)
            state.start(self._metadata(sync_result))
            if self._aborted is None:
                self._ensure_workdir()

            if self.config.parallel:
                self._run_parallel(state)
            else:
                self._run_sequential(state)
        except PersistenceError as e:
            logger.error("state log failure: %s", e)
            self.console.print_error("State log could not be written", str(e))
            persistence_error = e
            self._abort("state log unavailable")

        status = self._final_status(state, persistence_error)
        if state.run_status is RunStatus.IN_PROGRESS:
            try:
                state.finish(status)
            except PersistenceError as e:
                if persistence_error is None:
                    persistence_error = e
                    status = RunStatus.ABORTED
                else:
                    logger.error("could not record run end either: %s", e)

        failed = self._fatal or self._warned
        return RunResult(
            run_id=state.run_id,
            status=status,
            exit_code=self._exit_code(status, persistence_error),
            records=state.records,
            sync=sync_result,
            failure=failed[2] if failed else None,
            failed_stage=failed[0] if failed else None,
            persistence_error=persistence_error,
            cancelled=self._cancelled,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _run_sequential(self, state: PipelineState) -> None:
        for stage in self.stages:
            if self._admit(stage, state):
                self._settle(stage, self._execute(stage, state))

    def _run_parallel(self, state: PipelineState) -> None:
        pending: List[StageDefinition] = list(self.stages)
        in_flight: Dict[Future, StageDefinition] = {}

        max_workers = self.config.max_workers
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            try:
                while pending or in_flight:
                    # admit everything whose dependencies have settled; skips
                    # settle immediately and may unlock more stages
                    progressed = True
                    while progressed:
                        progressed = False
                        for stage in list(pending):
                            if not all(state.status(n).terminal for n in stage.needs):
                                continue
                            pending.remove(stage)
                            progressed = True
                            if self._admit(stage, state):
                                in_flight[pool.submit(self._execute_in_worker, stage, state)] = stage

                    if not in_flight:
                        break

                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for fut in done:
                        stage = in_flight.pop(fut)
                        self._settle(stage, fut.result())
            except PersistenceError:
                self._abort("state log unavailable")
                for fut in in_flight:
                    fut.cancel()
                raise

    def _execute_in_worker(self, stage: StageDefinition, state: PipelineState) -> _Outcome:
        if stage.device_exclusive:
            with self._device_lock:
                return self._execute_unless_blocked(stage, state)
        return self._execute_unless_blocked(stage, state)

    def _execute_unless_blocked(self, stage: StageDefinition, state: PipelineState) -> _Outcome:
        # the run may have been aborted while this stage sat in the queue
        cause = self._blocked_cause()
        if cause is not None:
            return _Outcome(self._skip(stage, state, cause))
        return self._execute(stage, state)

    # ------------------------------------------------------------------
    # Per-stage decisions
    # ------------------------------------------------------------------

    def _admit(self, stage: StageDefinition, state: PipelineState) -> bool:
        """Decide whether `stage` runs. Records the skip when it does not."""
        cause = self._blocked_cause()
        if cause is not None:
            self._skip(stage, state, cause)
            return False

        if stage.name in self._carried:
            state.transition(stage.name, StageStatus.SUCCESS, exit_code=0, attempt=0, cause=CAUSE_RESUMED)
            self.console.print_stage_skipped(stage.name, f"succeeded in run {self.previous.run_id}")
            return False

        if stage.should_skip(self.config):
            self._skip(stage, state, CAUSE_REQUESTED)
            return False

        for need in stage.needs:
            dep = state.get(need)
            if dep.status is StageStatus.SUCCESS:
                continue
            if dep.status is StageStatus.SKIPPED and dep.cause == CAUSE_REQUESTED and stage.allow_skipped_needs:
                continue
            self._skip(stage, state, f"dependency '{need}' {dep.status.value}")
            return False

        return True

    def _execute(self, stage: StageDefinition, state: PipelineState) -> _Outcome:
        env = compose([*self.env_layers, stage.env])
        cwd = self._cwd_for(stage)
        timeout = stage.timeout or self.config.stage_timeout
        max_attempts = stage.max_attempts
        total = 0.0

        attempt = 0
        while True:
            attempt += 1
            state.transition(stage.name, StageStatus.RUNNING, attempt=attempt)
            self.console.print_stage_started(stage.name, str(stage.command), attempt, stage.description)
            self.console.print_debug(f"{stage.name}: cwd={cwd} timeout={timeout} policy={stage.policy.value}")

            error: BaseException
            try:
                result = self.runner.run(stage.command, env=env, cwd=cwd, timeout=timeout, cancel=self.cancel)
            except ExecutionFailure as e:
                total += e.duration
                if e.kind is FailureKind.CANCELLED:
                    self._abort(CAUSE_CANCELLED, cancelled=True)
                    record = state.transition(
                        stage.name, StageStatus.FAILED, exit_code=e.exit_code, duration=total, cause=CAUSE_CANCELLED
                    )
                    self._write_log(stage, attempt, e.stdout, e.stderr)
                    self.console.print_failure(stage.name, str(e), exit_code=e.exit_code, stderr=e.stderr)
                    return _Outcome(record, e, fatal=True)
                error, exit_code, stderr, cause = e, e.exit_code, e.stderr, e.kind.value
                self._write_log(stage, attempt, e.stdout, e.stderr)
            else:
                total += result.duration
                if result.ok:
                    record = state.transition(stage.name, StageStatus.SUCCESS, exit_code=0, duration=total)
                    self._write_log(stage, attempt, result.stdout, result.stderr)
                    self.console.print_stage_success(stage.name, total)
                    return _Outcome(record)
                error = StageFailure(
                    stage=stage.name,
                    command=str(stage.command),
                    exit_code=result.exit_code,
                    stderr=result.stderr_tail,
                    attempts=attempt,
                )
                exit_code, stderr, cause = result.exit_code, result.stderr_tail, None
                self._write_log(stage, attempt, result.stdout, result.stderr)

            if attempt < max_attempts and not self.cancel.is_set():
                self.console.print_failure(stage.name, str(error), exit_code=exit_code, stderr=stderr, warn_only=True)
                self.console.print_retry(stage.name, attempt + 1, max_attempts)
                continue

            fatal = stage.policy is not FailurePolicy.WARN_CONTINUE
            record = state.transition(
                stage.name, StageStatus.FAILED, exit_code=exit_code, duration=total, cause=cause
            )
            self.console.print_failure(
                stage.name, str(error), exit_code=exit_code, stderr=stderr, warn_only=not fatal
            )
            return _Outcome(record, error, fatal=fatal)

    def _settle(self, stage: StageDefinition, outcome: _Outcome) -> None:
        if outcome.error is None:
            return
        entry = (stage.name, outcome.record.exit_code or EXIT_ORCHESTRATION, outcome.error)
        with self._lock:
            if outcome.fatal and self._fatal is None:
                self._fatal = entry
            elif not outcome.fatal and self._warned is None:
                self._warned = entry
        if outcome.fatal:
            self._abort(f"stage '{stage.name}' failed")

    def _skip(self, stage: StageDefinition, state: PipelineState, cause: str) -> StageRecord:
        record = state.transition(stage.name, StageStatus.SKIPPED, cause=cause)
        self.console.print_stage_skipped(stage.name, cause)
        return record

    def _blocked_cause(self) -> Optional[str]:
        if self.cancel.is_set():
            self._abort(CAUSE_CANCELLED, cancelled=True)
        with self._lock:
            return self._aborted

    def _abort(self, cause: str, *, cancelled: bool = False) -> None:
        with self._lock:
            if self._aborted is None:
                self._aborted = cause
            if cancelled:
                self._cancelled = True

    # ------------------------------------------------------------------
    # Run-level helpers
    # ------------------------------------------------------------------

    def _sync(self) -> Optional[SyncResult]:
        if self.sync is None:
            return None
        try:
            result = self.sync.resolve(self.config.target, cancel=self.cancel)
        except (StageFailure, ExecutionFailure, PrerequisiteMissing) as e:
            code = e.exit_code
            self.console.print_failure(
                SYNC_STAGE,
                str(e),
                exit_code=code,
                stderr=getattr(e, "stderr", ""),
                hint=getattr(e, "hint", None),
            )
            cancelled = isinstance(e, ExecutionFailure) and e.kind is FailureKind.CANCELLED
            with self._lock:
                self._fatal = (SYNC_STAGE, code, e)
            self._abort(CAUSE_CANCELLED if cancelled else CAUSE_SYNC_FAILED, cancelled=cancelled)
            return None

        self.console.print_sync(result.label, result.commit, result.summary)
        return result

    def _ensure_workdir(self) -> None:
        try:
            self.workdir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(path=str(self.workdir), message=e.strerror or str(e)) from e

    def _cwd_for(self, stage: StageDefinition) -> Path:
        if stage.cwd is None:
            return self.workdir
        cwd = Path(stage.cwd).expanduser()
        if not cwd.is_absolute():
            cwd = self.config.repo_dir / cwd
        return cwd

    def _write_log(self, stage: StageDefinition, attempt: int, stdout: str, stderr: str) -> None:
        """Keep full output per stage. A failure here is reported, not fatal."""
        path = self.log_dir / f"{stage.name}.log"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w" if attempt == 1 else "a", encoding="utf-8") as f:
                f.write(f"=== attempt {attempt}: {stage.command}\n")
                f.write(stdout or "")
                if stderr:
                    f.write("\n--- stderr ---\n")
                    f.write(stderr)
                f.write("\n")
        except OSError as e:
            self.console.print_warning(f"could not write stage log {path}: {e}")

    def _carried_over(self, previous: Optional[StateSnapshot], sync: Optional[SyncResult]) -> Set[str]:
        """
        Stages that succeeded last time and whose dependencies were carried too.

        Nothing is carried when the previous run built something else: a
        different variant, target, directory or checked-out commit.
        """
        carried: Set[str] = set()
        if previous is None:
            return carried

        changed = self._resume_mismatch(previous, sync)
        if changed is not None:
            self.console.print_warning(f"Not resuming run {previous.run_id}: {changed}; running every stage")
            return carried

        for stage in self.stages:
            prev = previous.records.get(stage.name)
            if prev is None or prev.status is not StageStatus.SUCCESS:
                continue
            if all(n in carried for n in stage.needs):
                carried.add(stage.name)
        return carried

    def _resume_mismatch(self, previous: StateSnapshot, sync: Optional[SyncResult]) -> Optional[str]:
        before = previous.metadata.get("config") or {}
        now = self.config.describe()
        for key in RESUME_KEYS:
            if before.get(key) != now.get(key):
                return f"{key} changed ({before.get(key)} -> {now.get(key)})"

        old_commit = (previous.metadata.get("sync") or {}).get("commit")
        new_commit = sync.commit if sync else None
        if old_commit != new_commit:
            return f"commit changed ({old_commit} -> {new_commit})"
        return None

    def _metadata(self, sync: Optional[SyncResult]) -> Dict[str, Any]:
        return {
            "config": self.config.describe(),
            "sync": sync.to_dict() if sync else None,
            "resumed_from": self.previous.run_id if self.previous else None,
            "parallel": self.config.parallel,
        }

    def _final_status(self, state: PipelineState, persistence_error: Optional[PersistenceError]) -> RunStatus:
        if persistence_error is not None or self._aborted is not None or self._cancelled:
            return RunStatus.ABORTED
        if all(r.status in (StageStatus.SUCCESS, StageStatus.SKIPPED) for r in state.records):
            return RunStatus.COMPLETED
        return RunStatus.ABORTED

    def _exit_code(self, status: RunStatus, persistence_error: Optional[PersistenceError]) -> int:
        if status is RunStatus.COMPLETED:
            return 0
        if self._fatal is not None:
            return self._fatal[1]
        if self._warned is not None:
            return self._warned[1]
        if persistence_error is not None:
            return persistence_error.exit_code
        if self._cancelled:
            return EXIT_CANCELLED
        return EXIT_ORCHESTRATION
