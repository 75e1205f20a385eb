"""
Small helpers shared by the RBAC modules.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Iterable, List


def utcnow() -> datetime:
    """Naive UTC timestamp (the database stores naive UTC datetimes)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values pass through"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def dedupe(items: Iterable[str]) -> List[str]:
    """Drop duplicates, keep first-seen order"""
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def conditions_hash(conditions: Any) -> str:
    """Stable short hash of a conditions payload (used as a memo key)"""
    if not conditions:
        return "-"
    payload = json.dumps(conditions, sort_keys=True, default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]
