# provision.py
from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Tuple

from .errors import ProvisioningError, ScriptFailure, SetupFailure
from .model import Job
from .triggers import pipeline_source

# Exit status reported for a command killed by the timeout policy
# (same value coreutils' `timeout` uses).
TIMEOUT_EXIT_CODE = 124

_VAR_REF = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


# ----------------------------------------------------------------------
# Command execution
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    def run(self, command: str, env: Mapping[str, str], cwd: Path) -> CommandResult: ...


class ShellRunner:
    """Runs commands through the shell. `timeout` is in seconds (None = unbounded)."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    def run(self, command: str, env: Mapping[str, str], cwd: Path) -> CommandResult:
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=str(cwd),
                env=dict(env),
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                command=command,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_tail(e.stdout),
                stderr=_tail(e.stderr) or f"timed out after {self.timeout}s",
            )
        return CommandResult(
            command=command,
            exit_code=proc.returncode,
            stdout=_tail(proc.stdout),
            stderr=_tail(proc.stderr),
        )


def _tail(text, limit: int = 4000) -> str:
    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-limit:]


def _results(commands: Iterable[str], env: Mapping[str, str], cwd: Path, runner: CommandRunner) -> Iterator[CommandResult]:
    # lazy: nothing after the first failure is ever executed
    for cmd in commands:
        yield runner.run(cmd, env, cwd)


def first_failure(
    commands: Iterable[str],
    env: Mapping[str, str],
    cwd: Path,
    runner: CommandRunner,
) -> Optional[CommandResult]:
    """Run `commands` in order and stop at the first non-zero exit."""
    return next((r for r in _results(commands, env, cwd, runner) if not r.ok), None)


# ----------------------------------------------------------------------
# Environment
# ----------------------------------------------------------------------

def expand_vars(value: str, env: Mapping[str, str]) -> str:
    """Expand $NAME / ${NAME} from `env`. Unknown names are left untouched."""

    def sub(m: re.Match) -> str:
        name = m.group(1) or m.group(2)
        return env[name] if name in env else m.group(0)

    return _VAR_REF.sub(sub, value)


def merge_environment(base: Mapping[str, str], *layers: Mapping[str, str]) -> Dict[str, str]:
    """
    Apply `layers` over `base` in order; later layers win per key. Each
    value may reference variables merged before it.
    """
    env = dict(base)
    for layer in layers:
        for k, v in layer.items():
            env[k] = expand_vars(str(v), env)
    return env


# ----------------------------------------------------------------------
# Provisioning
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionContext:
    job: Job
    env: Dict[str, str] = field(default_factory=dict)
    project_dir: Path = Path(".")
    workdirs: Tuple[Path, ...] = ()


def required_workdirs(job: Job, project_dir: Path) -> Tuple[Path, ...]:
    """
    Local directories the job expects before it starts. A cache path ending
    in "/" is a directory and is created itself; any other cache path may
    name a file the job produces, so only its parent is created.
    """
    if job.cache is None:
        return ()
    root = project_dir.resolve()
    dirs: List[Path] = []
    for p in job.cache.paths:
        d = (root / p).resolve()
        if not p.endswith("/"):
            d = d.parent
        if d not in dirs:
            dirs.append(d)
    return tuple(dirs)


def ensure_workdirs(dirs: Iterable[Path]) -> None:
    for d in dirs:
        if d.is_dir():
            continue
        if d.exists():
            raise ProvisioningError(f"working directory {d} exists and is not a directory")
        try:
            d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProvisioningError(f"could not create working directory {d}: {e}") from e


def prepare(
    job: Job,
    base_environment: Mapping[str, str],
    project_dir: str | Path = ".",
    *,
    global_variables: Mapping[str, str] | None = None,
) -> ExecutionContext:
    """
    Steps 1-2 of provisioning: merge the environment (job keys win over
    pipeline variables, which win over the base) and make sure the job's
    working directories exist. Calling it twice yields equal contexts.
    """
    root = Path(project_dir).resolve()
    if not root.is_dir():
        raise ProvisioningError(f"[{job.name}] project directory not available: {root}")

    env = merge_environment(base_environment, global_variables or {}, job.variables)
    dirs = required_workdirs(job, root)
    try:
        ensure_workdirs(dirs)
    except ProvisioningError as e:
        raise ProvisioningError(f"[{job.name}] {e}") from e
    return ExecutionContext(job=job, env=env, project_dir=root, workdirs=dirs)


def run_setup(ctx: ExecutionContext, runner: CommandRunner) -> None:
    """before_script, in order. Raises SetupFailure on the first failing command."""
    failed = first_failure(ctx.job.before_script, ctx.env, ctx.project_dir, runner)
    if failed is not None:
        raise SetupFailure(
            job=ctx.job.name,
            command=failed.command,
            exit_code=failed.exit_code,
            stdout=failed.stdout,
            stderr=failed.stderr,
        )


def run_script(ctx: ExecutionContext, runner: CommandRunner) -> None:
    """script, in order, fail fast. Raises ScriptFailure with the first failing exit status."""
    failed = first_failure(ctx.job.script, ctx.env, ctx.project_dir, runner)
    if failed is not None:
        raise ScriptFailure(
            job=ctx.job.name,
            command=failed.command,
            exit_code=failed.exit_code,
            stdout=failed.stdout,
            stderr=failed.stderr,
        )


def provision(
    job: Job,
    base_environment: Mapping[str, str],
    project_dir: str | Path,
    runner: CommandRunner,
    *,
    global_variables: Mapping[str, str] | None = None,
) -> ExecutionContext:
    """All four steps, strictly sequential: env, workdirs, before_script, script."""
    ctx = prepare(job, base_environment, project_dir, global_variables=global_variables)
    run_setup(ctx, runner)
    run_script(ctx, runner)
    return ctx


def base_environment(
    *,
    project_dir: str | Path,
    event_kind: str,
    cache_dir: str | Path,
    cache_root_var: str,
    inherit: Mapping[str, str] | None = None,
    commit_sha: str | None = None,
    ref: str | None = None,
) -> Dict[str, str]:
    """Pipeline-wide variables every job starts from."""
    env = dict(os.environ if inherit is None else inherit)
    env["CI"] = "true"
    env["CI_PROJECT_DIR"] = str(Path(project_dir).resolve())
    env["CI_PIPELINE_SOURCE"] = pipeline_source(event_kind)
    env[cache_root_var] = str(Path(cache_dir).resolve())
    if commit_sha:
        env["CI_COMMIT_SHA"] = commit_sha
    if ref:
        env["CI_COMMIT_REF_NAME"] = ref
    return env
