# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

DEFAULT_STAGES = ("build", "test", "deploy")
DEFAULT_JOB_STAGE = "test"

CACHE_WHEN_ON_SUCCESS = "on_success"
CACHE_WHEN_ON_FAILURE = "on_failure"
CACHE_WHEN_ALWAYS = "always"
CACHE_WHEN_VALUES = (CACHE_WHEN_ON_SUCCESS, CACHE_WHEN_ON_FAILURE, CACHE_WHEN_ALWAYS)


@dataclass(frozen=True)
class Stage:
    """A named phase of the pipeline. `position` is its index in `stages`."""
    name: str
    position: int


@dataclass(frozen=True)
class CacheSpec:
    """
    What a job caches and how its key is derived.

    files:  key inputs, hashed in the listed order (never reordered or de-duped)
    prefix: namespace prepended to the hash as "prefix:hash"
    paths:  directories/files restored before and saved after the job
    when:   save policy (on_success | on_failure | always)
    key:    literal key, only used when no files are listed
    """
    files: Tuple[str, ...] = ()
    prefix: Optional[str] = None
    paths: Tuple[str, ...] = ()
    when: str = CACHE_WHEN_ON_SUCCESS
    key: Optional[str] = None


@dataclass(frozen=True)
class TriggerRule:
    """
    Set-membership gate over event kinds.

    An empty `allowed` set means any kind is allowed; `excluded` always wins.
    """
    allowed: frozenset = frozenset()
    excluded: frozenset = frozenset()


@dataclass(frozen=True)
class Event:
    """The repository event that triggered the pipeline."""
    kind: str
    ref: Optional[str] = None
    sha: Optional[str] = None


@dataclass(frozen=True)
class Job:
    """
    A fully materialised job. Templates are already merged in at load time,
    `extends` is kept only so plans can explain where fields came from.
    """
    name: str
    stage: str
    script: Tuple[str, ...]
    before_script: Tuple[str, ...] = ()
    cache: Optional[CacheSpec] = None
    trigger: Optional[TriggerRule] = None
    variables: Dict[str, str] = field(default_factory=dict)
    extends: Tuple[str, ...] = ()
    allow_failure: bool = False


@dataclass(frozen=True)
class PipelineDefinition:
    stages: Tuple[Stage, ...]
    jobs: Tuple[Job, ...]
    variables: Dict[str, str] = field(default_factory=dict)

    def stage(self, name: str) -> Stage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def jobs_in_order(self) -> List[Job]:
        """Jobs ordered by stage position, then by declaration order."""
        position = {s.name: s.position for s in self.stages}
        indexed = list(enumerate(self.jobs))
        indexed.sort(key=lambda pair: (position[pair[1].stage], pair[0]))
        return [j for _, j in indexed]

    def jobs_by_stage(self) -> List[Tuple[Stage, List[Job]]]:
        ordered = self.jobs_in_order()
        return [(s, [j for j in ordered if j.stage == s.name]) for s in self.stages]


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass
class JobResult:
    name: str
    stage: str
    status: str
    reason: str = ""
    error_kind: Optional[str] = None
    exit_code: Optional[int] = None
    cache_key: Optional[str] = None
    cache_hit: bool = False
    allow_failure: bool = False

    @property
    def blocking_failure(self) -> bool:
        return self.status == STATUS_FAILED and not self.allow_failure


@dataclass
class PipelineResult:
    jobs: List[JobResult] = field(default_factory=list)

    def get(self, name: str) -> JobResult:
        for r in self.jobs:
            if r.name == name:
                return r
        raise KeyError(name)

    @property
    def succeeded(self) -> bool:
        return not any(r.blocking_failure for r in self.jobs)

    @property
    def exit_code(self) -> int:
        """
        0 success, 1 script failure, 2 setup failure,
        3 any other job-level failure.
        """
        kinds = {r.error_kind for r in self.jobs if r.blocking_failure}
        if not kinds:
            return 0
        if "script_failure" in kinds:
            return 1
        if "setup_failure" in kinds:
            return 2
        return 3

    def as_dict(self) -> Dict[str, str]:
        return {r.name: r.status for r in self.jobs}
