from __future__ import annotations

from pathlib import Path

import pytest

from replayci.config import build_run_config
from replayci.dsl import cmd, load_workflow, skip_flag, stage
from replayci.errors import ConfigurationError
from replayci.model import FailurePolicy


def test_cmd_stringifies_arguments() -> None:
    c = cmd("cmake", "--build", Path("."), "-j", 8)
    assert c.argv() == ["cmake", "--build", ".", "-j", "8"]
    assert str(cmd("echo", "a b")) == "echo 'a b'"


def test_stage_defaults() -> None:
    s = stage("build", cmd("make"))
    assert s.policy is FailurePolicy.FATAL
    assert s.needs == ()
    assert s.max_attempts == 1


def test_retries_only_apply_to_retry_policy() -> None:
    assert stage("a", cmd("x"), policy="retry-then-fatal", retries=3).max_attempts == 4
    assert stage("a", cmd("x"), policy="warn-continue", retries=3).max_attempts == 1


def test_unknown_policy_rejected() -> None:
    with pytest.raises(ConfigurationError) as exc:
        stage("a", cmd("x"), policy="ignore")
    assert "warn-continue" in exc.value.message


def test_negative_retries_rejected() -> None:
    with pytest.raises(ConfigurationError):
        stage("a", cmd("x"), retries=-1)


def test_skip_flag_reads_config() -> None:
    predicate = skip_flag("examples")
    assert predicate(build_run_config(skip=["examples"]))
    assert not predicate(build_run_config())


def test_load_workflow_with_factory(tmp_path: Path) -> None:
    path = tmp_path / "pipeline.py"
    path.write_text(
        "from replayci.dsl import wf, stage, cmd\n"
        "def stages(config):\n"
        "    return wf(stage('build', cmd('make', '-j', config.jobs)))\n"
    )
    built = load_workflow(path)(build_run_config(jobs=4))
    assert [s.name for s in built] == ["build"]
    assert built[0].command.argv() == ["make", "-j", "4"]


def test_load_workflow_with_constant(tmp_path: Path) -> None:
    path = tmp_path / "pipeline.py"
    path.write_text("from replayci.dsl import stage, cmd\nSTAGES = [stage('lint', cmd('ruff', 'check'))]\n")
    assert [s.name for s in load_workflow(path)(build_run_config())] == ["lint"]


@pytest.mark.parametrize(
    "name, body",
    [
        ("empty.py", "X = 1\n"),
        ("wrong.py", "def stages(config):\n    return ['not a stage']\n"),
        ("pipeline.yml", "stages: []\n"),
    ],
)
def test_load_workflow_rejects_bad_files(tmp_path: Path, name: str, body: str) -> None:
    path = tmp_path / name
    path.write_text(body)
    with pytest.raises(ConfigurationError):
        load_workflow(path)(build_run_config())


def test_load_workflow_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_workflow(tmp_path / "nope.py")
