from .dsl import cmd, stage, skip_flag, wf, load_workflow
from .engine import PipelineEngine, RunResult
from .env import EnvironmentContext, compose
from .executor import CommandRunner, CommandResult
from .model import Command, FailurePolicy, StageDefinition, StageStatus, RunStatus, TargetRef

__all__ = [
    "cmd", "stage", "skip_flag", "wf", "load_workflow",
    "PipelineEngine", "RunResult",
    "EnvironmentContext", "compose",
    "CommandRunner", "CommandResult",
    "Command", "FailurePolicy", "StageDefinition", "StageStatus", "RunStatus", "TargetRef",
]
