from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from replayci.errors import PersistenceError
from replayci.model import RunStatus, StageStatus
from replayci.state import PipelineState, load_state_log


def _lines(path: Path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_every_transition_is_persisted(tmp_path: Path) -> None:
    path = tmp_path / "state.jsonl"
    state = PipelineState(["build", "test"], path)
    state.start({"config": {"gpu": "BMG"}})

    state.transition("build", StageStatus.RUNNING, attempt=1)
    assert _lines(path)[-1]["status"] == "running"

    state.transition("build", StageStatus.SUCCESS, exit_code=0, duration=1.5)
    state.transition("test", StageStatus.SKIPPED, cause="skip condition met")
    state.finish(RunStatus.COMPLETED)

    events = _lines(path)
    assert [e["event"] for e in events] == ["run_started", "stage", "stage", "stage", "run_finished"]
    assert events[0]["stages"] == ["build", "test"]
    assert events[2]["exit_code"] == 0
    assert events[2]["attempts"] == 1
    assert events[-1]["status"] == "completed"


def test_load_reads_back_last_state(tmp_path: Path) -> None:
    path = tmp_path / "state.jsonl"
    state = PipelineState(["build", "test"], path)
    state.start({"resumed_from": None})
    state.transition("build", StageStatus.RUNNING, attempt=1)
    state.transition("build", StageStatus.FAILED, exit_code=2, duration=0.2)
    state.transition("test", StageStatus.SKIPPED, cause="stage 'build' failed")

    snapshot = load_state_log(path)
    assert snapshot is not None
    assert snapshot.run_id == state.run_id
    assert snapshot.run_status is RunStatus.IN_PROGRESS
    assert snapshot.records["build"].status is StageStatus.FAILED
    assert snapshot.records["build"].exit_code == 2
    assert snapshot.records["test"].cause == "stage 'build' failed"
    assert snapshot.succeeded() == []


def test_truncated_trailing_line_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "state.jsonl"
    state = PipelineState(["build"], path)
    state.start()
    state.transition("build", StageStatus.RUNNING, attempt=1)
    state.transition("build", StageStatus.SUCCESS, exit_code=0)
    with path.open("a") as f:
        f.write('{"event": "stage", "stage": "bui')

    snapshot = load_state_log(path)
    assert snapshot is not None
    assert snapshot.records["build"].status is StageStatus.SUCCESS


@pytest.mark.parametrize(
    "line",
    [
        '{"event": "stage", "stage": "build", "status": "exploded"}',
        '{"event": "stage", "status": "success"}',
        '{"event": "stage", "stage": "deploy", "status": "success"}',
        '{"event": "run_finished", "status": "sideways"}',
        "3",
        '["stage", "build"]',
    ],
)
def test_well_formed_json_with_wrong_shape_is_ignored(tmp_path: Path, line: str) -> None:
    path = tmp_path / "state.jsonl"
    state = PipelineState(["build", "test"], path)
    state.start()
    state.transition("build", StageStatus.SUCCESS, exit_code=0)
    with path.open("a") as f:
        f.write(line + "\n")
    state.transition("test", StageStatus.SKIPPED, cause="not needed")

    snapshot = load_state_log(path)
    assert snapshot is not None
    assert snapshot.run_status is RunStatus.IN_PROGRESS
    assert snapshot.records["build"].status is StageStatus.SUCCESS
    assert snapshot.records["test"].status is StageStatus.SKIPPED


def test_load_returns_last_run(tmp_path: Path) -> None:
    path = tmp_path / "state.jsonl"
    lines = [
        {"event": "run_started", "run_id": "one", "stages": ["a"], "metadata": {}},
        {"event": "stage", "stage": "a", "status": "failed", "exit_code": 1},
        {"event": "run_finished", "run_id": "one", "status": "aborted"},
        {"event": "run_started", "run_id": "two", "stages": ["a"], "metadata": {}},
        {"event": "stage", "stage": "a", "status": "success", "exit_code": 0},
        {"event": "run_finished", "run_id": "two", "status": "completed"},
    ]
    path.write_text("".join(json.dumps(line) + "\n" for line in lines))

    snapshot = load_state_log(path)
    assert snapshot.run_id == "two"
    assert snapshot.run_status is RunStatus.COMPLETED
    assert snapshot.succeeded() == ["a"]


def test_missing_log_loads_as_none(tmp_path: Path) -> None:
    assert load_state_log(tmp_path / "nope.jsonl") is None


def test_start_truncates_previous_run(tmp_path: Path) -> None:
    path = tmp_path / "state.jsonl"
    first = PipelineState(["a"], path)
    first.start()
    first.finish(RunStatus.COMPLETED)

    second = PipelineState(["a"], path)
    second.start()
    events = _lines(path)
    assert len(events) == 1
    assert events[0]["run_id"] == second.run_id


@pytest.mark.parametrize(
    "steps",
    [
        [StageStatus.SUCCESS, StageStatus.RUNNING],
        [StageStatus.SKIPPED, StageStatus.RUNNING],
        [StageStatus.RUNNING, StageStatus.SKIPPED],
        [StageStatus.RUNNING, StageStatus.FAILED, StageStatus.SUCCESS],
        [StageStatus.FAILED],
    ],
)
def test_illegal_transitions_rejected(steps) -> None:
    state = PipelineState(["a"])
    *legal, illegal = steps
    for status in legal:
        state.transition("a", status)
    with pytest.raises(ValueError):
        state.transition("a", illegal)


def test_unknown_stage_rejected() -> None:
    with pytest.raises(KeyError):
        PipelineState(["a"]).transition("b", StageStatus.RUNNING)


def test_unwritable_path_raises_persistence_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    state = PipelineState(["a"], blocker / "state.jsonl")
    with pytest.raises(PersistenceError):
        state.start()


def test_failed_write_keeps_in_memory_record(tmp_path: Path) -> None:
    path = tmp_path / "state.jsonl"
    state = PipelineState(["a"], path)
    state.start()
    state.transition("a", StageStatus.RUNNING, attempt=1)

    path.unlink()
    path.mkdir()
    with pytest.raises(PersistenceError):
        state.transition("a", StageStatus.SUCCESS, exit_code=0)
    assert state.status("a") is StageStatus.SUCCESS


def test_concurrent_transitions_write_whole_lines(tmp_path: Path) -> None:
    path = tmp_path / "state.jsonl"
    names = [f"s{i}" for i in range(20)]
    state = PipelineState(names, path)
    state.start()

    def work(name: str) -> None:
        state.transition(name, StageStatus.RUNNING, attempt=1)
        state.transition(name, StageStatus.SUCCESS, exit_code=0)

    threads = [threading.Thread(target=work, args=(n,)) for n in names]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    events = _lines(path)
    assert len(events) == 1 + 2 * len(names)
    snapshot = load_state_log(path)
    assert sorted(snapshot.succeeded()) == sorted(names)
