# cli.py
from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional

import click

from replayci.config import (
    DEFAULT_JOBS,
    DEFAULT_PIPELINE,
    DEFAULT_REPO_DIR,
    DEFAULT_REPO_URL,
    DEFAULT_TEST_FILE,
    DEFAULT_VENV,
    VARIANTS,
    RunConfig,
    build_run_config,
    check_repository,
    prepare_build_dir,
)
from replayci.dag import topo_levels
from replayci.dsl import load_workflow
from replayci.engine import PipelineEngine
from replayci.env import compose
from replayci.errors import ConfigurationError, PrerequisiteMissing
from replayci.executor import CommandRunner
from replayci.git_facts.git import RepositorySync
from replayci.model import StageDefinition
from replayci.stage_workflows import python_tests, sycl
from replayci.state import StateSnapshot, load_state_log
from replayci.toolchain import DEFAULT_SETVARS, require_tools, source_environment
from replayci.ui.console import Console, get_console, set_console


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

@contextmanager
def cancel_on_signals(cancel: threading.Event):
    """
    Turn SIGINT/SIGTERM into a cancellation request for the running
    pipeline instead of a KeyboardInterrupt in the middle of bookkeeping.
    """
    def handler(signum, frame):
        get_console().print_warning(f"Received {signal.Signals(signum).name}, cancelling the run...")
        cancel.set()

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, handler)
    try:
        yield cancel
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _fail(exc: ConfigurationError | PrerequisiteMissing) -> None:
    console = get_console()
    if isinstance(exc, ConfigurationError):
        details = [f"{k}: {v}" for k, v in exc.details.items()]
        console.print_error("Invalid configuration", exc.message, details=details or None)
    else:
        console.print_error(exc.message, exc.what, suggestion=exc.hint)
    sys.exit(exc.exit_code)


def _load_previous(config: RunConfig) -> Optional[StateSnapshot]:
    if not config.resume:
        return None
    snapshot = load_state_log(config.state_file)
    if snapshot is None:
        get_console().print_warning(f"Nothing to resume: no state log at {config.state_file}")
    else:
        get_console().print_info(
            f"Resuming after run {snapshot.run_id}; already succeeded: {', '.join(snapshot.succeeded()) or 'none'}"
        )
    return snapshot


def _base_environment(config: RunConfig, runner: CommandRunner) -> Dict[str, str]:
    base = dict(os.environ)
    if config.setvars is None:
        return base
    get_console().print_info(f"Sourcing toolchain environment: {config.setvars}")
    return source_environment(config.setvars, runner, base)


def _run_pipeline(
    config: RunConfig,
    stages: List[StageDefinition],
    layers: List[Dict[str, str]],
    runner: CommandRunner,
    *,
    print_plan: bool,
) -> None:
    console = get_console()
    previous = _load_previous(config)
    prepare_build_dir(config)

    console.print_run_started(pipeline=config.pipeline, stage_count=len(stages), settings=config.describe())
    if print_plan:
        console.print_plan(topo_levels(stages))

    cancel = threading.Event()
    engine = PipelineEngine(
        stages,
        config,
        runner=runner,
        env_layers=layers,
        sync=RepositorySync(config.repo_dir, runner, repo_url=config.repo_url, env=layers[0]),
        cancel=cancel,
        previous=previous,
    )
    with cancel_on_signals(cancel):
        result = engine.run()

    console.print_results(result.status.value, result.records, exit_code=result.exit_code)
    console.print_info(f"State log: {config.state_file}")
    console.print_info(f"Stage logs: {config.log_dir}")
    sys.exit(result.exit_code)


def common_options(f: Callable) -> Callable:
    """Options shared by every pipeline command."""
    options = [
        click.option("--repo-dir", envvar="REPO_DIR", default=DEFAULT_REPO_DIR, show_default=True, help="Repository directory path"),
        click.option("--build-dir", envvar="BUILD_DIR", default=None, help="Build directory (default: REPO_DIR/build)"),
        click.option(
            "--gpu",
            envvar="GPU",
            type=click.Choice(sorted(VARIANTS), case_sensitive=False),
            default="BMG",
            show_default=True,
            help="GPU variant",
        ),
        click.option("--setvars", envvar="ONEAPI_SETVARS", default=str(DEFAULT_SETVARS), show_default=True, help="Toolchain environment script to source"),
        click.option("--no-toolchain", is_flag=True, default=False, help="Do not source the toolchain environment script"),
        click.option("--parallel/--sequential", default=False, show_default=True, help="Run independent stages concurrently"),
        click.option("--workers", default=None, type=int, help="Worker threads for --parallel"),
        click.option("--timeout", default=None, type=float, help="Per-stage timeout in seconds"),
        click.option("--retries", default=1, show_default=True, type=int, help="Retries for retry-then-fatal stages"),
        click.option("--resume", is_flag=True, default=False, help="Reuse stages that succeeded in the previous run"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """replayci: replay a CI pipeline locally, stage by stage."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("positional", nargs=-1)
@click.option("-p", "--pr", default=None, help="Checkout and test specific PR number")
@click.option("-b", "--branch", default=None, help="Checkout and test specific branch")
@click.option("--sycl-target", envvar="SYCL_TARGET", default=None, help="SYCL target (default depends on --gpu)")
@click.option("--igc-major", envvar="IGC_VERSION_MAJOR", default=None, help="IGC major version (default depends on --gpu)")
@click.option("--igc-minor", envvar="IGC_VERSION_MINOR", default=None, help="IGC minor version (default depends on --gpu)")
@click.option("--repo-url", envvar="REPO_URL", default=DEFAULT_REPO_URL, show_default=True, help="Clone URL when the repository is missing")
@click.option("--jobs", envvar="PARALLEL_JOBS", default=DEFAULT_JOBS, show_default=True, type=int, help="Parallel build jobs for unit tests")
@click.option("--skip-build", is_flag=True, default=False, help="Skip configure and build")
@click.option("--skip-unit-tests", is_flag=True, default=False, help="Skip unit tests")
@click.option("--skip-examples", is_flag=True, default=False, help="Skip examples")
@click.option("--skip-benchmarks", is_flag=True, default=False, help="Skip benchmarks")
@click.option("--clean", is_flag=True, default=False, help="Remove the build directory before building")
@click.option("--workflow", default=None, help="Python file defining stages(config) to run instead of the built-in pipeline")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the stage plan before running")
@common_options
@click.pass_context
def run(
    ctx, positional, pr, branch, sycl_target, igc_major, igc_minor, repo_url, jobs,
    skip_build, skip_unit_tests, skip_examples, skip_benchmarks, clean, workflow, print_plan,
    repo_dir, build_dir, gpu, setvars, no_toolchain, parallel, workers, timeout, retries, resume,
):
    """
    Build and test the repository the way CI does.

    A bare numeric argument is a PR number: `replayci run 595`.
    Without a PR or branch the current working tree is used as is.
    """
    console = get_console()
    skip = [
        name
        for name, flag in (
            ("build", skip_build),
            ("unit_tests", skip_unit_tests),
            ("examples", skip_examples),
            ("benchmarks", skip_benchmarks),
        )
        if flag
    ]

    try:
        config = build_run_config(
            pr=pr,
            branch=branch,
            positional=positional,
            gpu=gpu,
            sycl_target=sycl_target,
            igc_major=igc_major,
            igc_minor=igc_minor,
            repo_dir=repo_dir,
            build_dir=build_dir,
            repo_url=repo_url,
            jobs=jobs,
            parallel=parallel,
            max_workers=workers,
            skip=skip,
            clean=clean,
            resume=resume,
            setvars=None if no_toolchain else setvars,
            stage_timeout=timeout,
            retries=retries,
            pipeline=Path(workflow).stem if workflow else DEFAULT_PIPELINE,
        )
        check_repository(config)

        runner = CommandRunner()
        base_env = _base_environment(config, runner)
        layers = [base_env, config.variant.env]

        if workflow:
            stages = load_workflow(workflow)(config)
        else:
            stages = sycl.stages(config)
            composed = compose(layers)
            require_tools(sycl.required_tools(composed), composed)

        _run_pipeline(config, stages, layers, runner, print_plan=print_plan)

    except (ConfigurationError, PrerequisiteMissing) as e:
        _fail(e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command("python-tests")
@click.option("--venv", "venv_path", envvar="VENV_PATH", default=DEFAULT_VENV, show_default=True, help="Virtual environment path")
@click.option("--python-version", envvar="PYTHON_VERSION", default="3", show_default=True, help="Python used to create the venv (pythonX)")
@click.option("--install-torch/--no-install-torch", envvar="INSTALL_TORCH", default=True, show_default=True, help="Install PyTorch with XPU support")
@click.option("--test-file", envvar="TEST_FILE", default=DEFAULT_TEST_FILE, show_default=True, help="Test script, relative to the repository")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the stage plan before running")
@common_options
@click.pass_context
def python_tests_cmd(
    ctx, venv_path, python_version, install_torch, test_file, print_plan,
    repo_dir, build_dir, gpu, setvars, no_toolchain, parallel, workers, timeout, retries, resume,
):
    """Install the Python interface into a venv and run a test script."""
    console = get_console()
    try:
        config = build_run_config(
            gpu=gpu,
            repo_dir=repo_dir,
            build_dir=build_dir,
            parallel=parallel,
            max_workers=workers,
            resume=resume,
            setvars=None if no_toolchain else setvars,
            stage_timeout=timeout,
            retries=retries,
            venv_path=venv_path,
            python=f"python{python_version}",
            install_torch=install_torch,
            test_file=test_file,
            pipeline="python-tests",
        )
        check_repository(config)
        python_tests.check_test_file(config)

        runner = CommandRunner()
        base_env = _base_environment(config, runner)
        layers = [base_env, config.variant.env]
        if not config.venv_path.is_dir():
            require_tools([config.python], base_env)

        stages = python_tests.stages(config, base_env)
        _run_pipeline(config, stages, layers, runner, print_plan=print_plan)

    except (ConfigurationError, PrerequisiteMissing) as e:
        _fail(e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--repo-dir", envvar="REPO_DIR", default=DEFAULT_REPO_DIR, show_default=True, help="Repository directory path")
@click.option("--build-dir", envvar="BUILD_DIR", default=None, help="Build directory (default: REPO_DIR/build)")
@click.option(
    "--pipeline",
    default=DEFAULT_PIPELINE,
    show_default=True,
    help="Pipeline whose log to show: sycl, python-tests, or a --workflow file's name without .py",
)
def status(repo_dir, build_dir, pipeline):
    """Show the last run recorded in the state log."""
    console = get_console()
    try:
        state_file = build_run_config(repo_dir=repo_dir, build_dir=build_dir, pipeline=pipeline).state_file
    except ConfigurationError as e:
        _fail(e)

    snapshot = load_state_log(state_file)
    if snapshot is None:
        console.print_error(
            "No state log found",
            f"Nothing recorded at {state_file}",
            suggestion="Run a pipeline first:\n  replayci run",
        )
        sys.exit(1)

    console.print_header(f"Run {snapshot.run_id} (started {snapshot.started_at})")
    config = snapshot.metadata.get("config") or {}
    for key, value in config.items():
        console.print_info(f"{key}: {value}")
    sync = snapshot.metadata.get("sync") or {}
    if sync:
        console.print_info(f"checked out: {sync.get('label')} {sync.get('commit') or ''}".rstrip())
    console.print_results(snapshot.run_status.value, [snapshot.records[n] for n in snapshot.stages])


if __name__ == "__main__":
    cli()
