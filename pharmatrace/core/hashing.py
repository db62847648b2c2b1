from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID


def _primitive(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        # 1.0 and 1 are the same JSON number
        value = int(value)
    elif isinstance(value, (datetime, date)):
        value = value.isoformat()
    elif isinstance(value, (Decimal, UUID)):
        value = str(value)
    return json.dumps(value, ensure_ascii=False)


def canonicalize(value: Any) -> str:
    """
    Deterministic JSON-like rendering of a payload.

    - mapping keys are sorted recursively; keys holding None are dropped so
      that a null field and an absent field render the same
    - sequences keep their element order
    - primitives use their JSON textual form
    """
    if value is None:
        return "null"
    if isinstance(value, Mapping):
        items = sorted(
            ((str(k), v) for k, v in value.items() if v is not None),
            key=lambda kv: kv[0],
        )
        return "{" + ",".join(
            json.dumps(k, ensure_ascii=False) + ":" + canonicalize(v) for k, v in items
        ) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(canonicalize(v) for v in value) + "]"
    return _primitive(value)


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def digest(payload: Any) -> str:
    """SHA-256 (lowercase hex) of the canonical form of ``payload``."""
    return sha256_hex(canonicalize(payload))
