# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class StageciError(Exception):
    """Base class for every error raised by stageci."""


# ----------------------------------------------------------------------
# Load-time errors (fatal: the pipeline does not start)
# ----------------------------------------------------------------------

class PipelineLoadError(StageciError):
    """The pipeline definition could not be turned into a PipelineDefinition."""


class ParseError(PipelineLoadError):
    """Malformed pipeline definition (bad YAML, wrong types, missing script...)."""


class UndefinedReferenceError(PipelineLoadError):
    """A job references a stage or template that is not declared."""

    def __init__(self, job: str, kind: str, name: str, known: list[str] | None = None):
        self.job = job
        self.kind = kind
        self.name = name
        self.known = sorted(known or [])
        msg = f"Job '{job}' references undefined {kind} '{name}'"
        if self.known:
            msg += f". Known {kind}s: {self.known}"
        super().__init__(msg)


# ----------------------------------------------------------------------
# Job-level errors (isolated to one job, never retried)
# ----------------------------------------------------------------------

class JobError(StageciError):
    """Failure of a single job. Other jobs keep running."""

    kind = "job_error"


class MissingCacheInputError(JobError):
    kind = "missing_cache_input"

    def __init__(self, path: str, job: str | None = None):
        self.path = path
        self.job = job
        where = f"[{job}] " if job else ""
        super().__init__(f"{where}cache key input file not found: {path}")


class ProvisioningError(JobError):
    """Unrecoverable environment setup issue (e.g. filesystem unavailable)."""

    kind = "provisioning_error"


@dataclass
class CommandFailure(JobError):
    job: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    details: dict = field(default_factory=dict)

    phase = "command"

    def __str__(self) -> str:
        return f"[{self.job}] {self.phase} command failed (exit={self.exit_code}): {self.command}"


@dataclass
class SetupFailure(CommandFailure):
    """A before_script command exited non-zero; the main script never ran."""

    kind = "setup_failure"
    phase = "setup"


@dataclass
class ScriptFailure(CommandFailure):
    """A script command exited non-zero; later commands were not executed."""

    kind = "script_failure"
    phase = "script"
