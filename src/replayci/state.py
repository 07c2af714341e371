# state.py
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import PersistenceError
from .model import RunStatus, StageStatus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Log format
# ---------------------------------------------------------------------
# One JSON object per line. A run is:
#   {"event": "run_started", "run_id": ..., "stages": [...], "metadata": {...}}
#   {"event": "stage", "stage": ..., "status": ..., ...}   (one per transition)
#   {"event": "run_finished", "run_id": ..., "status": ...}
#
# Every line is flushed and fsync'd before the transition returns, so a
# killed process leaves the log at its last completed transition.
# ---------------------------------------------------------------------

_ALLOWED = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED, StageStatus.SUCCESS},
    StageStatus.RUNNING: {StageStatus.RUNNING, StageStatus.SUCCESS, StageStatus.FAILED},
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class StageRecord:
    stage: str
    status: StageStatus = StageStatus.PENDING
    exit_code: Optional[int] = None
    duration: float = 0.0
    timestamp: str = field(default_factory=_now)
    attempts: int = 0
    cause: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "timestamp": self.timestamp,
            "attempts": self.attempts,
            "cause": self.cause,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StageRecord:
        return cls(
            stage=data["stage"],
            status=StageStatus(data["status"]),
            exit_code=data.get("exit_code"),
            duration=float(data.get("duration") or 0.0),
            timestamp=data.get("timestamp") or "",
            attempts=int(data.get("attempts") or 0),
            cause=data.get("cause"),
        )


class PipelineState:
    """
    Stage outcomes for the current run, persisted after every transition.

    Statuses only move forward (pending -> running -> success/failed,
    pending -> skipped); a stage never goes back once terminal. All writes
    go through one lock, so stages running on worker threads can report
    concurrently.
    """

    def __init__(self, stage_names: Iterable[str], path: str | Path | None = None, run_id: str | None = None):
        self.path = Path(path) if path is not None else None
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.run_status = RunStatus.NOT_STARTED
        self._records: Dict[str, StageRecord] = {n: StageRecord(stage=n) for n in stage_names}
        self._lock = threading.Lock()

    # ---- reads ----

    def get(self, stage: str) -> StageRecord:
        with self._lock:
            return self._records[stage]

    def status(self, stage: str) -> StageStatus:
        return self.get(stage).status

    @property
    def records(self) -> List[StageRecord]:
        with self._lock:
            return list(self._records.values())

    # ---- writes ----

    def start(self, metadata: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            if self.run_status is not RunStatus.NOT_STARTED:
                raise ValueError(f"run {self.run_id} already started")
            self.run_status = RunStatus.IN_PROGRESS
            self._write(
                {
                    "event": "run_started",
                    "run_id": self.run_id,
                    "timestamp": _now(),
                    "stages": list(self._records),
                    "metadata": metadata or {},
                },
                truncate=True,
            )

    def transition(
        self,
        stage: str,
        status: StageStatus,
        *,
        exit_code: Optional[int] = None,
        duration: Optional[float] = None,
        attempt: Optional[int] = None,
        cause: Optional[str] = None,
    ) -> StageRecord:
        """
        Move `stage` to `status` and persist it.

        The in-memory record is updated before the write, so a
        PersistenceError never hides the outcome that was just recorded.
        """
        with self._lock:
            if stage not in self._records:
                raise KeyError(f"Unknown stage: {stage!r}")
            current = self._records[stage]
            if status not in _ALLOWED.get(current.status, set()):
                raise ValueError(
                    f"Illegal transition for stage '{stage}': {current.status.value} -> {status.value}"
                )

            record = replace(
                current,
                status=status,
                exit_code=exit_code if exit_code is not None else current.exit_code,
                duration=duration if duration is not None else current.duration,
                attempts=attempt if attempt is not None else current.attempts,
                cause=cause if cause is not None else current.cause,
                timestamp=_now(),
            )
            self._records[stage] = record
            self._write({"event": "stage", "run_id": self.run_id, **record.to_dict()})
            return record

    def finish(self, status: RunStatus) -> None:
        if status not in (RunStatus.COMPLETED, RunStatus.ABORTED):
            raise ValueError(f"run cannot finish as {status.value}")
        with self._lock:
            self.run_status = status
            self._write({"event": "run_finished", "run_id": self.run_id, "timestamp": _now(), "status": status.value})

    def _write(self, event: Dict[str, Any], *, truncate: bool = False) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w" if truncate else "a", encoding="utf-8") as f:
                f.write(json.dumps(event, sort_keys=True) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise PersistenceError(path=str(self.path), message=e.strerror or str(e)) from e


# ---------------------------------------------------------------------
# Reading a log back (inspect / resume)
# ---------------------------------------------------------------------

@dataclass
class StateSnapshot:
    run_id: str
    stages: List[str]
    records: Dict[str, StageRecord]
    metadata: Dict[str, Any]
    run_status: RunStatus = RunStatus.IN_PROGRESS
    started_at: str = ""

    def succeeded(self) -> List[str]:
        return [n for n, r in self.records.items() if r.status is StageStatus.SUCCESS]


def load_state_log(path: str | Path) -> Optional[StateSnapshot]:
    """
    Return the last run recorded in `path`, or None if there is none.

    An unfinished run (no run_finished line) is reported as in_progress. A
    line that does not parse (e.g. truncated by a crash mid-write) or does
    not have the shape of an event is
    skipped.
    """
    p = Path(path)
    if not p.exists():
        return None

    snapshot: Optional[StateSnapshot] = None
    with p.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                snapshot = _apply_event(snapshot, json.loads(line))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                # JSONDecodeError is a ValueError; the rest is valid JSON of the wrong shape
                logger.warning("%s:%d: ignoring unreadable state line (%s)", p, lineno, e)

    return snapshot


def _apply_event(snapshot: Optional[StateSnapshot], event: Dict[str, Any]) -> Optional[StateSnapshot]:
    kind = event.get("event")
    if kind == "run_started":
        stages = [str(n) for n in event.get("stages") or []]
        return StateSnapshot(
            run_id=event.get("run_id", ""),
            stages=stages,
            records={n: StageRecord(stage=n, timestamp="") for n in stages},
            metadata=event.get("metadata") or {},
            started_at=event.get("timestamp", ""),
        )
    if snapshot is None:
        return None
    if kind == "stage":
        record = StageRecord.from_dict(event)
        if record.stage not in snapshot.records:
            raise KeyError(f"stage {record.stage!r} is not part of run {snapshot.run_id}")
        snapshot.records[record.stage] = record
    elif kind == "run_finished":
        snapshot.run_status = RunStatus(event["status"])
    return snapshot
