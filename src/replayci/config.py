# config.py
from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Optional

from .errors import ConfigurationError, PrerequisiteMissing
from .model import TargetRef

logger = logging.getLogger(__name__)

DEFAULT_REPO_DIR = "/home/sycl-tla"
DEFAULT_REPO_URL = "https://github.com/intel/sycl-tla.git"
DEFAULT_VENV = "~/.venv/sycl-tla-test-new"
DEFAULT_TEST_FILE = "test/python/cutlass/gemm/gemm_bf16_pvc.py"
DEFAULT_JOBS = 8
STATE_DIRNAME = ".replayci"
DEFAULT_BRANCH = "main"
DEFAULT_PIPELINE = "sycl"
_PIPELINE_NAME = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9_.-]*")

SKIPPABLE_STAGES = ("build", "unit_tests", "examples", "benchmarks")


# Shared by every GPU variant; values are opaque to the engine.
SYCL_ENV: Dict[str, str] = {
    "CXX": "icpx",
    "CC": "icx",
    "ONEAPI_DEVICE_SELECTOR": "level_zero:gpu",
    "IGC_ExtraOCLOptions": "-cl-intel-256-GRF-per-thread",
    "SYCL_PROGRAM_COMPILE_OPTIONS": "-ze-opt-large-register-file -gline-tables-only",
    "IGC_VectorAliasBBThreshold": "100000000000",
}


@dataclass(frozen=True)
class Variant:
    name: str
    sycl_target: str
    igc_major: str
    igc_minor: str
    env: Dict[str, str] = field(default_factory=lambda: dict(SYCL_ENV), hash=False)


VARIANTS: Dict[str, Variant] = {
    "BMG": Variant("BMG", sycl_target="intel_gpu_bmg_g21", igc_major="2", igc_minor="18"),
    "PVC": Variant("PVC", sycl_target="intel_gpu_pvc", igc_major="2", igc_minor="11"),
}


@dataclass(frozen=True)
class RunConfig:
    """Everything the user asked for. Built once by build_run_config()."""
    target: TargetRef
    variant: Variant
    sycl_target: str
    igc_major: str
    igc_minor: str
    repo_dir: Path
    build_dir: Path
    repo_url: str = DEFAULT_REPO_URL
    jobs: int = DEFAULT_JOBS
    parallel: bool = False
    max_workers: Optional[int] = None
    skip: FrozenSet[str] = frozenset()
    clean: bool = False
    resume: bool = False
    setvars: Optional[Path] = None
    stage_timeout: Optional[float] = None
    retries: int = 1
    pipeline: str = DEFAULT_PIPELINE

    # python interface pipeline
    venv_path: Path = Path(DEFAULT_VENV).expanduser()
    python: str = "python3"
    install_torch: bool = True
    test_file: str = DEFAULT_TEST_FILE

    def skips(self, stage: str) -> bool:
        return stage in self.skip

    @property
    def state_dir(self) -> Path:
        return self.build_dir / STATE_DIRNAME

    @property
    def state_file(self) -> Path:
        return self.state_dir / f"state-{self.pipeline}.jsonl"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs" / self.pipeline

    def describe(self) -> Dict[str, str]:
        """Flat summary for the run header and the state log."""
        return {
            "target": self.target.label,
            "gpu": self.variant.name,
            "sycl_target": self.sycl_target,
            "igc_version": f"{self.igc_major}.{self.igc_minor}",
            "repo_dir": str(self.repo_dir),
            "build_dir": str(self.build_dir),
            "jobs": str(self.jobs),
            "parallel": str(self.parallel).lower(),
            "skip": ",".join(sorted(self.skip)) or "-",
        }


def _resolve_target(pr: Optional[str], branch: Optional[str], positional: Iterable[str]) -> TargetRef:
    prs = [p for p in (pr,) if p]
    for arg in positional:
        if not arg.isdigit():
            raise ConfigurationError(f"Unexpected argument: {arg!r} (only a PR number may be positional)")
        prs.append(arg)

    for p in prs:
        if not str(p).isdigit():
            raise ConfigurationError(f"PR number must be numeric, got {p!r}")
    if len(set(prs)) > 1:
        raise ConfigurationError("Conflicting PR numbers", details={"prs": ",".join(prs)})

    # --branch main next to a PR is allowed; the PR wins
    if prs and branch and branch != DEFAULT_BRANCH:
        raise ConfigurationError("Cannot specify both PR number and branch", details={"pr": prs[0], "branch": branch})
    if prs:
        return TargetRef.pr(prs[0])
    if branch:
        return TargetRef.branch(branch)
    return TargetRef.current()


def build_run_config(
    *,
    pr: Optional[str] = None,
    branch: Optional[str] = None,
    positional: Iterable[str] = (),
    gpu: str = "BMG",
    sycl_target: Optional[str] = None,
    igc_major: Optional[str] = None,
    igc_minor: Optional[str] = None,
    repo_dir: str | Path = DEFAULT_REPO_DIR,
    build_dir: str | Path | None = None,
    repo_url: str = DEFAULT_REPO_URL,
    jobs: int = DEFAULT_JOBS,
    parallel: bool = False,
    max_workers: Optional[int] = None,
    skip: Iterable[str] = (),
    clean: bool = False,
    resume: bool = False,
    setvars: str | Path | None = None,
    stage_timeout: Optional[float] = None,
    retries: int = 1,
    venv_path: str | Path = DEFAULT_VENV,
    python: str = "python3",
    install_torch: bool = True,
    test_file: str = DEFAULT_TEST_FILE,
    pipeline: str = DEFAULT_PIPELINE,
) -> RunConfig:
    """Validate raw CLI input and derive the immutable RunConfig."""
    target = _resolve_target(pr, branch, positional)

    variant = VARIANTS.get(gpu.upper())
    if variant is None:
        raise ConfigurationError(f"Unknown GPU variant: {gpu!r}", details={"known": ",".join(VARIANTS)})

    if jobs < 1:
        raise ConfigurationError(f"--jobs must be at least 1, got {jobs}")
    if max_workers is not None and max_workers < 1:
        raise ConfigurationError(f"--workers must be at least 1, got {max_workers}")
    if retries < 0:
        raise ConfigurationError(f"--retries cannot be negative, got {retries}")
    if stage_timeout is not None and stage_timeout <= 0:
        raise ConfigurationError(f"--timeout must be positive, got {stage_timeout}")
    if not _PIPELINE_NAME.fullmatch(pipeline):
        raise ConfigurationError(f"Invalid pipeline name: {pipeline!r} (letters, digits, '.', '_' and '-' only)")
    if resume and clean:
        raise ConfigurationError("--resume cannot be combined with --clean (the state log lives in the build directory)")

    unknown = sorted(set(skip) - set(SKIPPABLE_STAGES))
    if unknown:
        raise ConfigurationError(f"Unknown stages to skip: {unknown}")

    repo = Path(repo_dir).expanduser().resolve()
    build = Path(build_dir).expanduser().resolve() if build_dir else repo / "build"

    return RunConfig(
        target=target,
        variant=variant,
        sycl_target=sycl_target or variant.sycl_target,
        igc_major=str(igc_major or variant.igc_major),
        igc_minor=str(igc_minor or variant.igc_minor),
        repo_dir=repo,
        build_dir=build,
        repo_url=repo_url,
        jobs=jobs,
        parallel=parallel,
        max_workers=max_workers,
        skip=frozenset(skip),
        clean=clean,
        resume=resume,
        setvars=Path(setvars).expanduser() if setvars else None,
        stage_timeout=stage_timeout,
        retries=retries,
        venv_path=Path(venv_path).expanduser(),
        python=python,
        install_torch=install_torch,
        test_file=test_file,
        pipeline=pipeline,
    )


def check_repository(config: RunConfig) -> None:
    """The working tree must exist unless a checkout (which clones) was asked for."""
    if config.target.kind == "current" and not config.repo_dir.is_dir():
        raise PrerequisiteMissing(
            what=str(config.repo_dir),
            message="Repository directory not found",
            hint="Provide a PR number/branch to clone it, or point --repo-dir at an existing checkout.",
        )


def prepare_build_dir(config: RunConfig) -> None:
    """Apply --clean, and make sure a skipped build has something to reuse."""
    if config.clean and config.build_dir.exists():
        logger.info("removing build directory %s", config.build_dir)
        shutil.rmtree(config.build_dir)

    if config.skips("build") and not config.build_dir.is_dir():
        raise PrerequisiteMissing(
            what=str(config.build_dir),
            message="Build directory does not exist and the build is skipped",
            hint="Run without --skip-build first.",
        )
