# triggers.py
from __future__ import annotations

from typing import Iterable, List, NamedTuple

from .model import Event, Job, PipelineDefinition, TriggerRule

# GitLab spells the same event several ways (`only: [merge_requests]`,
# `$CI_PIPELINE_SOURCE == "merge_request_event"`). Everything is folded
# onto one canonical kind before comparison.
EVENT_ALIASES = {
    "merge_requests": "merge_request",
    "merge_request_event": "merge_request",
    "mr": "merge_request",
    "pushes": "push",
    "branches": "push",
    "schedules": "schedule",
    "tags": "tag",
    "triggers": "trigger",
    "pipelines": "pipeline",
}


def normalize_kind(kind: str) -> str:
    k = str(kind).strip().lower().replace("-", "_")
    return EVENT_ALIASES.get(k, k)


# Canonical kind -> the value GitLab exports as $CI_PIPELINE_SOURCE.
PIPELINE_SOURCES = {
    "merge_request": "merge_request_event",
}


def pipeline_source(kind: str) -> str:
    k = normalize_kind(kind)
    return PIPELINE_SOURCES.get(k, k)


def make_event(kind: str, ref: str | None = None, sha: str | None = None) -> Event:
    return Event(kind=normalize_kind(kind), ref=ref, sha=sha)


def make_rule(allowed: Iterable[str] = (), excluded: Iterable[str] = ()) -> TriggerRule:
    return TriggerRule(
        allowed=frozenset(normalize_kind(k) for k in allowed),
        excluded=frozenset(normalize_kind(k) for k in excluded),
    )


def is_eligible(job: Job, event: Event) -> bool:
    """
    Pure set-membership test. A job without a trigger rule always runs.
    """
    rule = job.trigger
    if rule is None:
        return True
    kind = normalize_kind(event.kind)
    if kind in rule.excluded:
        return False
    if rule.allowed and kind not in rule.allowed:
        return False
    return True


class PlanEntry(NamedTuple):
    job: Job
    eligible: bool
    reason: str


def _reason(job: Job, event: Event, eligible: bool) -> str:
    rule = job.trigger
    if rule is None:
        return "no trigger rule"
    kind = normalize_kind(event.kind)
    if eligible:
        return f"event '{kind}' allowed"
    if kind in rule.excluded:
        return f"event '{kind}' excluded"
    return f"event '{kind}' not in {sorted(rule.allowed)}"


def select_jobs(definition: PipelineDefinition, event: Event) -> List[PlanEntry]:
    """Every job in stage order, each marked eligible or skipped."""
    plan: List[PlanEntry] = []
    for j in definition.jobs_in_order():
        ok = is_eligible(j, event)
        plan.append(PlanEntry(job=j, eligible=ok, reason=_reason(j, event, ok)))
    return plan


def eligible_jobs(definition: PipelineDefinition, event: Event) -> List[Job]:
    return [entry.job for entry in select_jobs(definition, event) if entry.eligible]
