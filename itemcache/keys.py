"""Deterministic storage keys for composite lookup parameters.

Parts are stringified (primitives as-is, structured values as JSON, ``None`` as
an empty string), joined with ``|`` and hashed with 32-bit FNV-1a. The digest
is rendered as 8 lowercase hex digits. Callers pass parts in a canonical order;
dict keys are serialized in insertion order just like the parts themselves.
"""

from __future__ import annotations

import json
from typing import Any, Iterable

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
SEPARATOR = "|"


def fnv1a(text: str) -> str:
    """32-bit FNV-1a over the UTF-16 code units of `text`, as zero-padded hex."""
    h = FNV_OFFSET_BASIS
    data = text.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return f"{h:08x}"


def _serialize(part: Any) -> str:
    if part is None:
        return ""
    if isinstance(part, bool):
        # JSON spelling, not "True"
        return "true" if part else "false"
    if isinstance(part, (str, int, float)):
        return str(part)
    try:
        return json.dumps(part, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return str(part)


def compute_key(parts: Iterable[Any]) -> str:
    """Hash a sequence of lookup parameters into a single storage key."""
    return fnv1a(SEPARATOR.join(_serialize(p) for p in parts))
