# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from stageci import vcs
from stageci.cache import DirectoryCacheStore, resolve_key
from stageci.errors import MissingCacheInputError, PipelineLoadError, UndefinedReferenceError
from stageci.loader import load
from stageci.model import PipelineDefinition
from stageci.provision import ShellRunner
from stageci.runner import run_pipeline
from stageci.settings import Settings
from stageci.triggers import make_event, select_jobs
from stageci.ui.console import Console, get_console, set_console

EXIT_LOAD_ERROR = 4


def _load_or_exit(path: str, project_dir: Path) -> PipelineDefinition:
    """Load the definition; any load-time error is fatal for the whole run."""
    console = get_console()
    definition_path = Path(path)
    if not definition_path.is_absolute():
        definition_path = project_dir / definition_path
    try:
        return load(definition_path)
    except UndefinedReferenceError as e:
        console.print_error(
            "Undefined reference",
            str(e),
            suggestion=f"Declare the {e.kind} or fix the reference in {definition_path.name}.",
        )
    except PipelineLoadError as e:
        console.print_error(
            "Invalid pipeline definition",
            f"Could not load {definition_path}",
            details=[str(e)],
        )
    sys.exit(EXIT_LOAD_ERROR)


def _event_option():
    return click.option(
        "--event",
        "event_kind",
        envvar="CI_PIPELINE_SOURCE",
        default="push",
        show_default=True,
        help="Event kind that triggered the pipeline (merge_request, push, schedule, ...)",
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and command output)",
)
@click.pass_context
def cli(ctx, debug):
    """stageci: staged, event-gated, cache-aware CI pipelines."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.option("--file", "definition", default=None, help="Pipeline definition (defaults to .gitlab-ci.yml)")
@_event_option()
@click.option("--project-dir", default=".", type=click.Path(file_okay=False), help="Project directory")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Parallel jobs per stage")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--cache-keep", default=None, type=click.IntRange(min=0), help="Artifacts kept per cache prefix (0 keeps all)")
@click.option("--timeout", default=None, type=float, help="Per-command timeout in seconds")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Skip later stages after a failure")
@click.pass_context
def run(ctx, definition, event_kind, project_dir, ref, workers, cache_dir, cache_keep, timeout, fail_fast):
    """Run the pipeline for one event."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    project = Path(project_dir).resolve()

    pipeline = _load_or_exit(definition or settings.definition_file, project)
    event = make_event(event_kind, ref=ref or vcs.current_ref(project), sha=vcs.head_sha(project))

    try:
        console.print_run_started(
            definition=definition or settings.definition_file,
            event=event.kind,
            job_count=len(pipeline.jobs),
        )
        cache_root = Path(cache_dir or settings.cache_dir)
        if not cache_root.is_absolute():
            cache_root = project / cache_root
        result = run_pipeline(
            pipeline,
            event,
            project_dir=project,
            store=DirectoryCacheStore(cache_root),
            runner=ShellRunner(timeout=timeout if timeout is not None else settings.command_timeout),
            cache_root_var=settings.cache_root_var,
            max_workers=workers if workers is not None else settings.workers,
            fail_fast=settings.fail_fast if fail_fast is None else fail_fast,
            cache_keep=cache_keep if cache_keep is not None else settings.cache_keep,
            console=console,
        )
        console.print_results(result)
        sys.exit(result.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--file", "definition", default=None, help="Pipeline definition (defaults to .gitlab-ci.yml)")
@_event_option()
@click.option("--project-dir", default=".", type=click.Path(file_okay=False), help="Project directory")
@click.pass_context
def plan(ctx, definition, event_kind, project_dir):
    """Show which jobs an event would run, with their cache keys."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    project = Path(project_dir).resolve()

    pipeline = _load_or_exit(definition or settings.definition_file, project)
    event = make_event(event_kind)

    console.print_header(f"Plan for event '{event.kind}'")
    for entry in select_jobs(pipeline, event):
        j = entry.job
        if not entry.eligible:
            console.print_plan_job_skipped(j.name, j.stage, entry.reason)
            continue
        key = None
        if j.cache is not None:
            try:
                key = resolve_key(j.cache, project)
            except MissingCacheInputError as e:
                key = f"<missing input: {e.path}>"
        console.print_plan_job(j.name, j.stage, entry.reason, key)


@cli.command("cache-key")
@click.argument("job_name")
@click.option("--file", "definition", default=None, help="Pipeline definition (defaults to .gitlab-ci.yml)")
@click.option("--project-dir", default=".", type=click.Path(file_okay=False), help="Project directory")
@click.pass_context
def cache_key(ctx, job_name, definition, project_dir):
    """Print the resolved cache key of one job."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    project = Path(project_dir).resolve()

    pipeline = _load_or_exit(definition or settings.definition_file, project)
    try:
        j = pipeline.job(job_name)
    except KeyError:
        console.print_error(
            "Unknown job",
            f"No job named '{job_name}'",
            details=[f"Known jobs: {[x.name for x in pipeline.jobs]}"],
        )
        sys.exit(1)

    if j.cache is None:
        console.print_error("No cache", f"Job '{job_name}' does not declare a cache")
        sys.exit(1)

    try:
        console.print_info(resolve_key(j.cache, project))
    except MissingCacheInputError as e:
        console.print_error("Missing cache input", str(e))
        sys.exit(3)


if __name__ == "__main__":
    cli()
