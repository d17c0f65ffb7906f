# loader.py
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml  # PyYAML

from .errors import ParseError, UndefinedReferenceError
from .merge import merge_fields
from .model import (
    CACHE_WHEN_ON_SUCCESS,
    CACHE_WHEN_VALUES,
    DEFAULT_JOB_STAGE,
    DEFAULT_STAGES,
    CacheSpec,
    Job,
    PipelineDefinition,
    Stage,
    TriggerRule,
)
from .triggers import make_rule, normalize_kind

DEFAULT_DEFINITION_FILE = ".gitlab-ci.yml"

# Top-level keys that are not job or template blocks.
RESERVED_KEYS = {"stages", "variables", "default", "image", "workflow", "include"}

TEMPLATE_PREFIX = "."

# Placeholder kind for `rules:` lists that can never match an event.
NEVER_KIND = "<never>"

_SOURCE_RULE = re.compile(
    r"""^\s*\$CI_PIPELINE_SOURCE\s*==\s*["']([^"']+)["']\s*$"""
)


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------

def load(source: str | Path | Mapping[str, Any]) -> PipelineDefinition:
    """
    Load a pipeline definition from a YAML file path or a parsed mapping.

    Raises:
      ParseError: malformed definition
      UndefinedReferenceError: job references an unknown stage/template
    """
    if isinstance(source, Mapping):
        return from_mapping(source)

    path = Path(source).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ParseError(f"Pipeline definition not found: {path}")
    except OSError as e:
        raise ParseError(f"Could not read pipeline definition {path}: {e}")
    return loads(text)


def loads(text: str) -> PipelineDefinition:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseError(f"Pipeline definition root must be a mapping, got {type(data).__name__}")
    return from_mapping(data)


def from_mapping(data: Mapping[str, Any]) -> PipelineDefinition:
    stages = _parse_stages(data.get("stages"))
    stage_names = [s.name for s in stages]
    variables = _parse_variables(data.get("variables"), where="top-level")

    default_block = data.get("default") or {}
    if not isinstance(default_block, dict):
        raise ParseError("'default' must be a mapping")

    blocks: Dict[str, Dict[str, Any]] = {}
    for name, body in data.items():
        name = str(name)
        if name in RESERVED_KEYS:
            continue
        if not isinstance(body, dict):
            raise ParseError(f"Block '{name}' must be a mapping, got {type(body).__name__}")
        blocks[name] = body

    resolver = _BlockResolver(blocks)
    jobs: List[Job] = []
    for name in blocks:
        if name.startswith(TEMPLATE_PREFIX):
            continue
        fields = merge_fields(default_block, resolver.resolve(name))
        jobs.append(_build_job(name, fields, stage_names, resolver.extends_of(name)))

    return PipelineDefinition(stages=tuple(stages), jobs=tuple(jobs), variables=variables)


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------

class _BlockResolver:
    """Materialises `extends` chains once, memoising each block."""

    def __init__(self, blocks: Dict[str, Dict[str, Any]]):
        self.blocks = blocks
        self._resolved: Dict[str, Dict[str, Any]] = {}

    def extends_of(self, name: str) -> Tuple[str, ...]:
        raw = self.blocks[name].get("extends")
        if raw is None:
            return ()
        if isinstance(raw, str):
            return (raw,)
        if isinstance(raw, list) and all(isinstance(x, str) for x in raw):
            return tuple(raw)
        raise ParseError(f"Block '{name}': 'extends' must be a string or a list of strings")

    def resolve(self, name: str, chain: Tuple[str, ...] = ()) -> Dict[str, Any]:
        if name in self._resolved:
            return self._resolved[name]
        if name in chain:
            cycle = " -> ".join(chain + (name,))
            raise ParseError(f"Circular 'extends' chain: {cycle}")

        merged: Dict[str, Any] = {}
        # later-declared templates win on conflicting fields
        for parent in self.extends_of(name):
            if parent not in self.blocks:
                templates = [b for b in self.blocks if b.startswith(TEMPLATE_PREFIX)]
                raise UndefinedReferenceError(name, "template", parent, templates)
            merged = merge_fields(merged, self.resolve(parent, chain + (name,)))

        own = {k: v for k, v in self.blocks[name].items() if k != "extends"}
        merged = merge_fields(merged, own)
        self._resolved[name] = merged
        return merged


# ----------------------------------------------------------------------
# Field parsing
# ----------------------------------------------------------------------

def _parse_stages(raw: Any) -> List[Stage]:
    if raw is None:
        names = list(DEFAULT_STAGES)
    elif isinstance(raw, list) and all(isinstance(x, str) for x in raw):
        names = list(raw)
    else:
        raise ParseError("'stages' must be a list of stage names")

    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ParseError(f"Duplicate stage names: {dupes}")
    return [Stage(name=n, position=i) for i, n in enumerate(names)]


def _parse_variables(raw: Any, *, where: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ParseError(f"{where}: 'variables' must be a mapping")
    out: Dict[str, str] = {}
    for k, v in raw.items():
        if isinstance(v, dict):
            # GitLab's long form: {value: ..., description: ...}
            v = v.get("value")
        if isinstance(v, (list, dict)):
            raise ParseError(f"{where}: variable '{k}' must be a scalar")
        out[str(k)] = "" if v is None else str(v)
    return out


def _commands(raw: Any, *, job: str, field_name: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    if isinstance(raw, list):
        out: List[str] = []
        for item in raw:
            # GitLab flattens nested lists produced by YAML anchors
            if isinstance(item, list):
                out.extend(str(x) for x in item)
            elif isinstance(item, (str, int, float)):
                out.append(str(item))
            else:
                raise ParseError(f"Job '{job}': '{field_name}' entries must be strings")
        return tuple(out)
    raise ParseError(f"Job '{job}': '{field_name}' must be a string or a list of strings")


def _str_list(raw: Any, *, job: str, field_name: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    if isinstance(raw, list) and all(isinstance(x, (str, int)) for x in raw):
        return tuple(str(x) for x in raw)
    raise ParseError(f"Job '{job}': '{field_name}' must be a list of strings")


def _parse_cache(raw: Any, *, job: str) -> Optional[CacheSpec]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ParseError(f"Job '{job}': 'cache' must be a mapping")

    files: Tuple[str, ...] = ()
    prefix: Optional[str] = None
    literal: Optional[str] = None

    key = raw.get("key")
    if isinstance(key, dict):
        files = _str_list(key.get("files"), job=job, field_name="cache.key.files")
        if key.get("prefix") is not None:
            prefix = str(key["prefix"])
    elif isinstance(key, (str, int)):
        literal = str(key)
    elif key is not None:
        raise ParseError(f"Job '{job}': 'cache.key' must be a string or a mapping")

    when = str(raw.get("when") or CACHE_WHEN_ON_SUCCESS)
    if when not in CACHE_WHEN_VALUES:
        raise ParseError(f"Job '{job}': 'cache.when' must be one of {list(CACHE_WHEN_VALUES)}, got '{when}'")

    return CacheSpec(
        files=files,
        prefix=prefix,
        paths=_str_list(raw.get("paths"), job=job, field_name="cache.paths"),
        when=when,
        key=literal,
    )


def _kinds(raw: Any, *, job: str, field_name: str) -> Tuple[str, ...]:
    if isinstance(raw, dict):
        raw = raw.get("refs")
    return _str_list(raw, job=job, field_name=field_name)


def _parse_trigger(fields: Dict[str, Any], *, job: str) -> Optional[TriggerRule]:
    has_rules = fields.get("rules") is not None
    has_only = fields.get("only") is not None or fields.get("except") is not None
    if has_rules and has_only:
        raise ParseError(f"Job '{job}': 'rules' cannot be combined with 'only'/'except'")

    if has_rules:
        return _parse_rules(fields["rules"], job=job)

    allowed = _kinds(fields.get("only"), job=job, field_name="only")
    excluded = _kinds(fields.get("except"), job=job, field_name="except")
    if not allowed and not excluded:
        return None
    return make_rule(allowed, excluded)


def _parse_rules(raw: Any, *, job: str) -> Optional[TriggerRule]:
    """
    Rules are evaluated first-match, as GitLab does: for a given event
    kind the first rule whose condition holds decides, `when: never`
    excludes and anything else includes. A rule without `if` matches
    every kind not decided earlier; rules after it are unreachable.
    """
    if not isinstance(raw, list):
        raise ParseError(f"Job '{job}': 'rules' must be a list")

    allowed: List[str] = []
    excluded: List[str] = []
    for rule in raw:
        if not isinstance(rule, dict):
            raise ParseError(f"Job '{job}': each rule must be a mapping")
        never = rule.get("when") == "never"
        expr = rule.get("if")
        if expr is None:
            if never:
                break
            # every kind not decided above runs
            return make_rule((), excluded)
        m = _SOURCE_RULE.match(str(expr))
        if not m:
            raise ParseError(
                f"Job '{job}': unsupported rule '{expr}'. "
                "Only '$CI_PIPELINE_SOURCE == \"<kind>\"' is supported"
            )
        kind = normalize_kind(m.group(1))
        if kind in allowed or kind in excluded:
            continue
        (excluded if never else allowed).append(kind)

    if not allowed:
        # no rule can match, so the job never runs
        return TriggerRule(allowed=frozenset({NEVER_KIND}))
    return make_rule(allowed, excluded)


def _build_job(
    name: str,
    fields: Dict[str, Any],
    stage_names: List[str],
    extends: Tuple[str, ...],
) -> Job:
    stage = str(fields.get("stage") or DEFAULT_JOB_STAGE)
    if stage not in stage_names:
        raise UndefinedReferenceError(name, "stage", stage, stage_names)

    script = _commands(fields.get("script"), job=name, field_name="script")
    if not script:
        raise ParseError(f"Job '{name}' must define a non-empty 'script'")

    allow_failure = fields.get("allow_failure", False)
    if not isinstance(allow_failure, bool):
        raise ParseError(f"Job '{name}': 'allow_failure' must be true or false")

    return Job(
        name=name,
        stage=stage,
        script=script,
        before_script=_commands(fields.get("before_script"), job=name, field_name="before_script"),
        cache=_parse_cache(fields.get("cache"), job=name),
        trigger=_parse_trigger(fields, job=name),
        variables=_parse_variables(fields.get("variables"), where=f"Job '{name}'"),
        extends=extends,
        allow_failure=allow_failure,
    )
