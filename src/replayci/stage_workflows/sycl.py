# stage_workflows/sycl.py
from __future__ import annotations

from typing import List

from ..config import RunConfig
from ..dsl import cmd, skip_flag, stage, wf
from ..model import FailurePolicy, StageDefinition

# Tools the build stages call; checked before the run starts.
BUILD_TOOLS = ("cmake", "ninja")


def configure_command(config: RunConfig):
    return cmd(
        "cmake",
        "-G", "Ninja",
        "-DCUTLASS_ENABLE_SYCL=ON",
        f"-DDPCPP_SYCL_TARGET={config.sycl_target}",
        f"-DIGC_VERSION_MAJOR={config.igc_major}",
        f"-DIGC_VERSION_MINOR={config.igc_minor}",
        "-DCUTLASS_SYCL_RUNNING_CI=ON",
        "-DCMAKE_CXX_FLAGS=-Werror",
        str(config.repo_dir),
    )


def build_target(target: str, jobs: int | None = None):
    args: list = ["--build", ".", "--target", target]
    if jobs is not None:
        args += ["-j", jobs]
    return cmd("cmake", *args)


def stages(config: RunConfig) -> List[StageDefinition]:
    """
    Configure, build, then run unit tests, examples and benchmarks in the
    build directory. Test stages accept a skipped build: the existing build
    tree is reused.
    """
    return wf(
        stage(
            "list-devices",
            cmd("sycl-ls"),
            policy=FailurePolicy.WARN_CONTINUE,
            description="List SYCL devices visible to the runtime",
        ),
        stage(
            "configure",
            configure_command(config),
            skip_if=skip_flag("build"),
            description="Generate the Ninja build",
        ),
        stage(
            "build",
            cmd("cmake", "--build", "."),
            needs=["configure"],
            skip_if=skip_flag("build"),
        ),
        stage(
            "unit_tests",
            build_target("test_unit", config.jobs),
            needs=["build"],
            skip_if=skip_flag("unit_tests"),
            allow_skipped_needs=True,
            device_exclusive=True,
        ),
        stage(
            "examples",
            # one at a time: examples contend for the device
            build_target("test_examples", 1),
            needs=["build"],
            skip_if=skip_flag("examples"),
            allow_skipped_needs=True,
            device_exclusive=True,
        ),
        stage(
            "benchmarks",
            build_target("cutlass_benchmarks"),
            needs=["build"],
            skip_if=skip_flag("benchmarks"),
            allow_skipped_needs=True,
        ),
    )


def required_tools(env) -> List[str]:
    # test targets are built on demand, so the compiler is needed even with --skip-build
    return [env.get("CXX", "icpx"), *BUILD_TOOLS]
