from __future__ import annotations

from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Reduce models, enums and containers to the JSON primitives rfc8785 accepts."""
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_normalize_for_jcs(item) for item in value)
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        "Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize to byte-for-byte reproducible JSON per RFC 8785.

    Plans, viability results and sessions all pass through here when a
    stable representation is needed (CLI output, equality checks in tests).
    """
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")
