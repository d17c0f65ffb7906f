# src/stageci/dsl.py
from __future__ import annotations

import shlex
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import ParseError, UndefinedReferenceError
from .model import (
    CACHE_WHEN_ON_SUCCESS,
    CACHE_WHEN_VALUES,
    DEFAULT_JOB_STAGE,
    CacheSpec,
    Job,
    PipelineDefinition,
    Stage,
    TriggerRule,
)
from .triggers import make_rule


# ---------------------------------------------------------------------
# Setup command helpers (idempotent, safe to retry)
# ---------------------------------------------------------------------

def install_packages(*packages: str, quiet: bool = True) -> str:
    """apt-get install for system packages; re-running is a no-op for installed ones."""
    if not packages:
        raise ValueError("install_packages() needs at least one package")
    q = " -qq" if quiet else ""
    names = " ".join(shlex.quote(p) for p in packages)
    return (
        f"apt-get update{q} && "
        f"apt-get install -y{q} --no-install-recommends {names}"
    )


def fetch_source(url: str, dest: str, *, depth: int | None = 1, ref: str | None = None) -> str:
    """
    Clone an external source dependency into `dest` (usually a sibling such
    as ../dep). Skipped when `dest` already holds a checkout.
    """
    opts = []
    if depth:
        opts.append(f"--depth={int(depth)}")
    if ref:
        opts.append(f"--branch {shlex.quote(ref)}")
    opt_str = (" ".join(opts) + " ") if opts else ""
    d = shlex.quote(dest)
    return f"test -d {d}/.git || git clone {opt_str}{shlex.quote(url)} {d}"


# ---------------------------------------------------------------------
# Job helpers
# ---------------------------------------------------------------------

def cache(
    *paths: str,
    files: Sequence[str] = (),
    prefix: str | None = None,
    when: str = CACHE_WHEN_ON_SUCCESS,
    key: str | None = None,
) -> CacheSpec:
    if when not in CACHE_WHEN_VALUES:
        raise ValueError(f"cache(when={when!r}) must be one of {list(CACHE_WHEN_VALUES)}")
    return CacheSpec(files=tuple(files), prefix=prefix, paths=tuple(paths), when=when, key=key)


def only(*kinds: str, exclude: Iterable[str] = ()) -> TriggerRule:
    return make_rule(kinds, exclude)


def job(
    name: str,
    *script: str,  # allow: job("x", "cmd1", "cmd2")
    stage: str = DEFAULT_JOB_STAGE,
    before_script: Optional[List[str]] = None,
    cache: Optional[CacheSpec] = None,
    trigger: Optional[TriggerRule] = None,
    variables: Optional[Dict[str, str]] = None,
    allow_failure: bool = False,
    base: Optional[Job] = None,
) -> Job:
    """
    Build a Job. `base` plays the role of a template: any field not passed
    here is taken from it.
    """
    if base is not None:
        script = script or base.script
        before_script = base.before_script if before_script is None else before_script
        cache = cache or base.cache
        trigger = trigger or base.trigger
        merged = dict(base.variables)
        merged.update(variables or {})
        variables = merged

    if not script:
        raise ValueError(f"job({name!r}) must have at least one script command")

    return Job(
        name=name,
        stage=stage,
        script=tuple(script),
        before_script=tuple(before_script or ()),
        cache=cache,
        trigger=trigger,
        # force values to str for stable env handling
        variables={k: str(v) for k, v in (variables or {}).items()},
        allow_failure=allow_failure,
    )


def pipeline(
    stages: Sequence[str],
    *jobs: Job,
    variables: Optional[Dict[str, str]] = None,
) -> PipelineDefinition:
    """
    Programmatic counterpart of loader.load(); applies the same checks.

        pipeline(["test", "lint"], job("fmt", "cargo fmt -- --check", stage="lint"))
    """
    names = list(stages)
    if len(set(names)) != len(names):
        raise ParseError(f"Duplicate stage names: {sorted({n for n in names if names.count(n) > 1})}")
    seen = set()
    for j in jobs:
        if j.stage not in names:
            raise UndefinedReferenceError(j.name, "stage", j.stage, names)
        if j.name in seen:
            raise ParseError(f"Duplicate job name: {j.name}")
        seen.add(j.name)

    return PipelineDefinition(
        stages=tuple(Stage(name=n, position=i) for i, n in enumerate(names)),
        jobs=tuple(jobs),
        variables={k: str(v) for k, v in (variables or {}).items()},
    )
