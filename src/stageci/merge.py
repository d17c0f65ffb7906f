# merge.py
from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict

# A list-valued key written as "<field>+" appends to the inherited list
# instead of replacing it, e.g. `before_script+: [...]`.
EXTEND_MARKER = "+"


def merge_fields(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge one job/template block over another. Neither input is mutated.

    Policy:
      - mapping + mapping -> merged key by key (recursively)
      - list              -> replaced wholesale
      - scalar            -> replaced
      - "<field>+" list   -> appended to the base list of <field>
    """
    result: Dict[str, Any] = deepcopy(base)

    for key, value in override.items():
        if key.endswith(EXTEND_MARKER) and len(key) > 1:
            target = key[: -len(EXTEND_MARKER)]
            inherited = result.get(target)
            result[target] = _as_list(inherited) + _as_list(value)
            continue

        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = merge_fields(current, value)
            continue

        result[key] = deepcopy(value)

    return result


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]
