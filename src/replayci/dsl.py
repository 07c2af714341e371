# src/replayci/dsl.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import ConfigurationError
from .model import Command, FailurePolicy, StageDefinition


# ---------------------------------------------------------------------
# Command helper
# ---------------------------------------------------------------------

def cmd(program: str, *args: Any) -> Command:
    """cmd("cmake", "--build", ".") -> Command. Arguments are stringified."""
    return Command(program=str(program), args=tuple(str(a) for a in args))


# ---------------------------------------------------------------------
# Stage helper
# ---------------------------------------------------------------------

def stage(
    name: str,
    command: Command,
    *,
    needs: Optional[Iterable[str]] = None,
    env: Optional[Dict[str, Any]] = None,
    skip_if: Optional[Callable[[Any], bool]] = None,
    policy: FailurePolicy | str = FailurePolicy.FATAL,
    retries: int = 1,
    cwd: str | Path | None = None,
    timeout: Optional[float] = None,
    device_exclusive: bool = False,
    allow_skipped_needs: bool = False,
    description: str = "",
) -> StageDefinition:
    try:
        policy = FailurePolicy(policy)
    except ValueError:
        known = ", ".join(p.value for p in FailurePolicy)
        raise ConfigurationError(f"stage({name!r}): unknown failure policy {policy!r} (expected one of: {known})")
    if retries < 0:
        raise ConfigurationError(f"stage({name!r}): retries cannot be negative")

    return StageDefinition(
        name=name,
        command=command,
        needs=tuple(needs or ()),
        # force values to str for env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        skip_if=skip_if,
        policy=policy,
        retries=retries,
        cwd=str(cwd) if cwd is not None else None,
        timeout=timeout,
        device_exclusive=device_exclusive,
        allow_skipped_needs=allow_skipped_needs,
        description=description,
    )


def skip_flag(name: str) -> Callable[[Any], bool]:
    """Skip predicate: true when the run config asks to skip `name`."""
    def predicate(config) -> bool:
        return config.skips(name)
    predicate.__name__ = f"skip_{name}"
    return predicate


def wf(*stages: StageDefinition) -> List[StageDefinition]:
    """
    Workflow definition helper.

        from replayci.dsl import wf, stage, cmd

        def stages(config):
            return wf(
                stage("build", cmd("make")),
                stage("test", cmd("make", "check"), needs=["build"]),
            )
    """
    return list(stages)


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

WorkflowFactory = Callable[[Any], List[StageDefinition]]


def load_workflow(path: str | Path) -> WorkflowFactory:
    """
    Load a workflow from a python file path.

    The file must define either:
      - stages(config) -> List[StageDefinition]
      - STAGES = [StageDefinition, ...]

    Returns a callable taking the RunConfig and returning the stage list.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"replayci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "stages" in globals_dict and callable(globals_dict["stages"]):
        factory = globals_dict["stages"]
    elif "STAGES" in globals_dict:
        fixed = globals_dict["STAGES"]
        factory = lambda config: fixed  # noqa: E731
    else:
        raise ConfigurationError(
            f"{wf_path.name} defines no stages. "
            "Define stages(config) -> List[StageDefinition] or STAGES = [StageDefinition, ...]."
        )

    def build(config) -> List[StageDefinition]:
        result = factory(config)
        if not isinstance(result, list) or not all(isinstance(s, StageDefinition) for s in result):
            raise ConfigurationError(f"{wf_path.name} must produce a List[StageDefinition]")
        return result

    return build
