from .dsl import job, pipeline, cache, only, install_packages, fetch_source
from .loader import load, loads
from .runner import run_pipeline
from .triggers import is_eligible, make_event
from .model import Job, Stage, CacheSpec, TriggerRule, Event, PipelineDefinition

__all__ = [
    "job", "pipeline", "cache", "only", "install_packages", "fetch_source",
    "load", "loads", "run_pipeline", "is_eligible", "make_event",
    "Job", "Stage", "CacheSpec", "TriggerRule", "Event", "PipelineDefinition",
]
