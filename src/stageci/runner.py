# runner.py
from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .cache import DEFAULT_CACHE_DIR, CacheResolver, DirectoryCacheStore
from .errors import CommandFailure, JobError, MissingCacheInputError
from .model import (
    STATUS_FAILED,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    Event,
    Job,
    JobResult,
    PipelineDefinition,
    PipelineResult,
)
from .provision import (
    CommandResult,
    CommandRunner,
    ShellRunner,
    base_environment,
    prepare,
    run_script,
    run_setup,
)
from .settings import DEFAULT_CACHE_ROOT_VAR
from .triggers import select_jobs
from .ui.console import Console, get_console

UPSTREAM_FAILURE = "upstream failure"


class _EchoRunner:
    """Prints each command under the job's name before delegating."""

    def __init__(self, job: str, runner: CommandRunner, console: Console):
        self.job = job
        self.runner = runner
        self.console = console

    def run(self, command: str, env: Mapping[str, str], cwd: Path) -> CommandResult:
        self.console.print_command(self.job, command)
        return self.runner.run(command, env, cwd)


# ----------------------------------------------------------------------
# Single job
# ----------------------------------------------------------------------

def run_job(
    job: Job,
    *,
    resolver: CacheResolver,
    runner: CommandRunner,
    base_env: Mapping[str, str],
    global_variables: Mapping[str, str] | None = None,
    cache_keep: int | None = None,
    console: Console | None = None,
) -> JobResult:
    """
    restore cache -> prepare -> before_script -> script -> save cache.
    Raises JobError subclasses on failure.
    """
    console = console or get_console()
    console.print_job_start(job.name)

    key: Optional[str] = None
    hit = False
    if job.cache is not None:
        try:
            key = resolver.resolve(job.cache)
        except MissingCacheInputError as e:
            raise MissingCacheInputError(e.path, job=job.name) from e
        restored = resolver.restore(key, job.cache)
        hit = restored.hit
        if hit:
            console.print_cache_hit(job.name, key)
        else:
            console.print_cache_miss(job.name, key, restored.reason)

    env = dict(base_env)
    env["CI_JOB_NAME"] = job.name
    env["CI_JOB_STAGE"] = job.stage
    ctx = prepare(job, env, resolver.project_dir, global_variables=global_variables)

    echo = _EchoRunner(job.name, runner, console)
    try:
        run_setup(ctx, echo)
        run_script(ctx, echo)
    except CommandFailure:
        if job.cache is not None:
            # the command failure stays the job's outcome
            try:
                if resolver.save(key, job.cache, succeeded=False):
                    console.print_cache_saved(job.name, key)
            except Exception as e:
                console.print_cache_save_failed(job.name, key, f"{type(e).__name__}: {e}")
        raise

    if job.cache is not None and resolver.save(key, job.cache, succeeded=True):
        console.print_cache_saved(job.name, key)
        prune = getattr(resolver.store, "prune", None)
        if prune is not None and cache_keep:
            prune(job.cache.prefix, keep=cache_keep)

    console.print_success(job.name)
    return JobResult(
        name=job.name,
        stage=job.stage,
        status=STATUS_SUCCESS,
        cache_key=key,
        cache_hit=hit,
        allow_failure=job.allow_failure,
    )


def _run_isolated(job: Job, console: Console, **kwargs) -> JobResult:
    """Runs one job and turns any failure into a failed JobResult."""
    try:
        return run_job(job, console=console, **kwargs)
    except JobError as e:
        console.print_failure(
            job.name,
            str(e),
            exit_code=getattr(e, "exit_code", None),
            output=getattr(e, "stderr", None) or getattr(e, "stdout", None),
        )
        return JobResult(
            name=job.name,
            stage=job.stage,
            status=STATUS_FAILED,
            reason=str(e),
            error_kind=e.kind,
            exit_code=getattr(e, "exit_code", None),
            allow_failure=job.allow_failure,
        )
    except Exception as e:
        console.print_failure(job.name, f"{type(e).__name__}: {e}")
        return JobResult(
            name=job.name,
            stage=job.stage,
            status=STATUS_FAILED,
            reason=f"{type(e).__name__}: {e}",
            error_kind="internal_error",
            allow_failure=job.allow_failure,
        )


# ----------------------------------------------------------------------
# Pipeline
# ----------------------------------------------------------------------

def run_pipeline(
    definition: PipelineDefinition,
    event: Event,
    *,
    project_dir: str | Path = ".",
    store=None,
    runner: CommandRunner | None = None,
    base_env: Mapping[str, str] | None = None,
    cache_root_var: str = DEFAULT_CACHE_ROOT_VAR,
    max_workers: int | None = None,
    fail_fast: bool = True,
    cache_keep: int | None = None,
    console: Console | None = None,
) -> PipelineResult:
    """
    Stage-barrier scheduler:

    - stages run in declaration order
    - eligible jobs of one stage run in parallel threads
    - the next stage starts once every job of the current one is terminal
    - a job failure is recorded for that job only; with fail_fast, later
      stages are skipped after a failure that is not allow_failure
    """
    console = console or get_console()
    project = Path(project_dir).resolve()
    if store is None:
        store = DirectoryCacheStore(project / DEFAULT_CACHE_DIR)
    runner = runner or ShellRunner()
    resolver = CacheResolver(store, project)

    env = base_environment(
        project_dir=project,
        event_kind=event.kind,
        cache_dir=getattr(store, "root", project / DEFAULT_CACHE_DIR),
        cache_root_var=cache_root_var,
        inherit=os.environ if base_env is None else base_env,
        commit_sha=event.sha,
        ref=event.ref,
    )

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    plan = {entry.job.name: entry for entry in select_jobs(definition, event)}
    results: Dict[str, JobResult] = {}
    blocked = False

    for stage, jobs in definition.jobs_by_stage():
        runnable: List[Job] = []
        for j in jobs:
            entry = plan[j.name]
            if not entry.eligible:
                results[j.name] = JobResult(j.name, j.stage, STATUS_SKIPPED, reason=f"trigger: {entry.reason}")
                console.print_job_skipped(j.name, entry.reason)
            elif blocked:
                results[j.name] = JobResult(j.name, j.stage, STATUS_SKIPPED, reason=UPSTREAM_FAILURE)
                console.print_job_skipped(j.name, UPSTREAM_FAILURE)
            else:
                runnable.append(j)

        if not runnable:
            continue

        console.print_stage(stage.name, [j.name for j in runnable])
        workers = max(1, min(max_workers, len(runnable)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(
                    _run_isolated,
                    j,
                    console,
                    resolver=resolver,
                    runner=runner,
                    base_env=env,
                    global_variables=definition.variables,
                    cache_keep=cache_keep,
                ): j.name
                for j in runnable
            }
            # barrier: every job of this stage reaches a terminal state
            for future in as_completed(futures):
                res = future.result()
                results[res.name] = res

        if fail_fast and any(results[j.name].blocking_failure for j in runnable):
            blocked = True

    return PipelineResult(jobs=[results[j.name] for j in definition.jobs_in_order()])
