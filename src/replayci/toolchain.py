# toolchain.py
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from .errors import ExecutionFailure, PrerequisiteMissing
from .executor import CommandRunner
from .model import Command
from .ui.console import get_console

logger = logging.getLogger(__name__)

DEFAULT_SETVARS = Path("/opt/intel/oneapi/setvars.sh")

# Shell bookkeeping that differs between invocations; not part of the toolchain.
_VOLATILE = {"_", "SHLVL", "PWD", "OLDPWD"}

# $0 is the script path; its own exit status is kept but its output is not.
_SOURCE_SNIPPET = '. "$0" >/dev/null 2>&1; rc=$?; env -0; exit $rc'


def parse_env_block(text: str) -> Dict[str, str]:
    """Parse `env -0` output (NUL separated NAME=value entries)."""
    env: Dict[str, str] = {}
    for entry in text.split("\0"):
        if not entry or "=" not in entry:
            continue
        name, _, value = entry.partition("=")
        if name in _VOLATILE or name.startswith("BASH_FUNC_"):
            continue
        env[name] = value
    return env


def source_environment(
    script: str | Path,
    runner: CommandRunner,
    base_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Source a vendor environment script in a child bash and return the
    environment it leaves behind.

    A non-zero status from the script is reported but tolerated; the
    oneAPI setvars.sh commonly returns one even when it worked.
    """
    path = Path(script)
    if not path.is_file():
        raise PrerequisiteMissing(
            what=str(path),
            message="Toolchain environment script not found",
            hint="Install the oneAPI toolkit, pass --setvars PATH, or use --no-toolchain.",
        )

    command = Command("bash", ("-c", _SOURCE_SNIPPET, str(path)))
    try:
        result = runner.run(command, env=base_env)
    except ExecutionFailure as e:
        raise PrerequisiteMissing.tool("bash") from e

    if result.exit_code != 0:
        get_console().print_warning(
            f"{path.name} returned exit code {result.exit_code} (usually safe to ignore)"
        )

    env = parse_env_block(result.stdout)
    if not env:
        raise PrerequisiteMissing(
            what=str(path),
            message=f"Sourcing {path.name} produced no environment",
            hint=result.stderr.strip() or None,
        )
    logger.debug("captured %d variables from %s", len(env), path)
    return env


def require_tools(tools: Iterable[str], env: Mapping[str, str]) -> Dict[str, str]:
    """
    Resolve each tool on env's PATH. Returns name -> absolute path, or raises
    PrerequisiteMissing for the first one that is missing.
    """
    search = env.get("PATH")
    found: Dict[str, str] = {}
    for tool in tools:
        where = shutil.which(tool, path=search)
        if where is None:
            raise PrerequisiteMissing.tool(tool)
        found[tool] = where
    return found
