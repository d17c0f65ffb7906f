# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .cache import DEFAULT_CACHE_DIR
from .loader import DEFAULT_DEFINITION_FILE

DEFAULT_CACHE_ROOT_VAR = "CI_CACHE_DIR"
DEFAULT_CACHE_KEEP = 3


@dataclass(frozen=True)
class Settings:
    definition_file: str = DEFAULT_DEFINITION_FILE
    cache_dir: str = DEFAULT_CACHE_DIR
    # name of the variable that points jobs at the cache root
    cache_root_var: str = DEFAULT_CACHE_ROOT_VAR
    cache_keep: int = DEFAULT_CACHE_KEEP
    workers: Optional[int] = None
    command_timeout: Optional[float] = None
    fail_fast: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        workers = env.get("STAGECI_WORKERS")
        timeout = env.get("STAGECI_COMMAND_TIMEOUT")
        return cls(
            definition_file=env.get("STAGECI_FILE", DEFAULT_DEFINITION_FILE),
            cache_dir=env.get("STAGECI_CACHE_DIR", DEFAULT_CACHE_DIR),
            cache_root_var=env.get("STAGECI_CACHE_ROOT_VAR", DEFAULT_CACHE_ROOT_VAR),
            cache_keep=int(env.get("STAGECI_CACHE_KEEP", str(DEFAULT_CACHE_KEEP))),
            workers=int(workers) if workers else None,
            command_timeout=float(timeout) if timeout else None,
            fail_fast=env.get("STAGECI_FAIL_FAST", "1").lower() not in ("0", "false", "no"),
        )
