"""
Attribute-based condition evaluation.

A condition is ``{type, operator, value, description}``. Permissions carry
types department / time / ip / location / semester; assignments carry
department / time_range / ip_restriction / location / temporary. Everything
is evaluated against a ``RequestContext``; anything that cannot be decided
(missing attribute, unknown type or operator, unparsable value) fails closed.
"""

import ipaddress
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, time
from typing import Any, Dict, Iterable, List, Mapping, Optional

from loguru import logger

from rbac.utils import as_naive_utc, utcnow

_TIME_OF_DAY = re.compile(r"^\d{1,2}:\d{2}(:\d{2})?$")

# Assignment condition types share the evaluator of their permission counterpart
TYPE_ALIASES = {
    "time_range": "time",
    "ip_restriction": "ip",
}

ATTRIBUTE_TYPES = ("department", "location", "semester")


@dataclass(frozen=True)
class RequestContext:
    """Attributes of the current request that conditions are checked against"""
    user_id: Optional[str] = None
    department: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[str] = None
    semester: Optional[str] = None
    now: datetime = field(default_factory=utcnow)

    def at(self, now: datetime) -> "RequestContext":
        return replace(self, now=now)


def normalize_conditions(conditions: Any) -> List[Dict[str, Any]]:
    """
    Accept the shapes callers pass around and return a list of condition dicts.

    - None / empty -> []
    - list of dicts or pydantic models
    - {type: value} shorthand, e.g. {"department": "CS"} or {"department": ["CS", "EE"]}
    """
    if not conditions:
        return []

    if isinstance(conditions, Mapping):
        if "type" in conditions:
            return [dict(conditions)]
        return [
            {"type": key, "operator": "in" if isinstance(value, (list, tuple, set)) else "equals", "value": value}
            for key, value in conditions.items()
        ]

    result = []
    for cond in conditions:
        if hasattr(cond, "model_dump"):
            cond = cond.model_dump()
        result.append(dict(cond))
    return result


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if not isinstance(value, str):
        return None
    try:
        return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def _parse_time_of_day(value: Any) -> Optional[time]:
    if isinstance(value, time):
        return value
    if isinstance(value, str) and _TIME_OF_DAY.match(value):
        try:
            return time(*(int(part) for part in value.split(":")))
        except ValueError:
            return None
    return None


def _as_list(value: Any) -> Optional[List[Any]]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return None


def _match_attribute(actual: Optional[str], operator: str, value: Any) -> bool:
    if actual is None:
        return False

    if operator == "equals":
        return str(actual) == str(value)

    values = _as_list(value)
    if values is None:
        values = [value]
    values = [str(v) for v in values]

    if operator == "in":
        return str(actual) in values
    if operator == "not_in":
        return str(actual) not in values
    return False


def _parse_networks(value: Any):
    values = _as_list(value)
    if values is None:
        values = [value]
    networks = []
    for v in values:
        try:
            networks.append(ipaddress.ip_network(str(v), strict=False))
        except ValueError:
            return None
    return networks


def _match_ip(address: Optional[str], operator: str, value: Any) -> bool:
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False

    networks = _parse_networks(value)
    if networks is None:
        logger.debug(f"[RESOLVE] Unparsable IP condition value: {value!r}")
        return False

    inside = any(ip.version == net.version and ip in net for net in networks)
    if operator in ("equals", "in"):
        return inside
    if operator == "not_in":
        return not inside
    return False


def _match_time(now: datetime, operator: str, value: Any) -> bool:
    if operator == "between":
        bounds = _as_list(value)
        if not bounds or len(bounds) != 2:
            return False
        start, end = bounds

        start_t, end_t = _parse_time_of_day(start), _parse_time_of_day(end)
        if start_t is not None and end_t is not None:
            current = now.time()
            if start_t <= end_t:
                return start_t <= current <= end_t
            # Overnight window, e.g. 22:00 - 06:00
            return current >= start_t or current <= end_t

        start_dt, end_dt = _parse_datetime(start), _parse_datetime(end)
        if start_dt is None or end_dt is None:
            return False
        return start_dt <= now <= end_dt

    if operator in ("greater_than", "less_than"):
        limit_t = _parse_time_of_day(value)
        if limit_t is not None:
            current = now.time()
            return current > limit_t if operator == "greater_than" else current < limit_t
        limit = _parse_datetime(value)
        if limit is None:
            return False
        return now > limit if operator == "greater_than" else now < limit

    return False


def evaluate_condition(condition: Mapping[str, Any], context: RequestContext) -> bool:
    """Evaluate a single condition; undecidable means False"""
    ctype = TYPE_ALIASES.get(condition.get("type"), condition.get("type"))
    operator = condition.get("operator") or "equals"
    value = condition.get("value")

    if ctype in ATTRIBUTE_TYPES:
        return _match_attribute(getattr(context, ctype), operator, value)
    if ctype == "ip":
        return _match_ip(context.ip_address, operator, value)
    if ctype == "time":
        return _match_time(context.now, operator, value)
    if ctype == "temporary":
        until = _parse_datetime(value)
        return until is not None and context.now <= until

    logger.debug(f"[RESOLVE] Unknown condition type '{condition.get('type')}', failing closed")
    return False


def evaluate_conditions(conditions: Any, context: Optional[RequestContext]) -> bool:
    """True when every condition holds. No conditions always holds."""
    items = normalize_conditions(conditions)
    if not items:
        return True
    if context is None:
        return False
    return all(evaluate_condition(c, context) for c in items)


def failing_conditions(conditions: Iterable[Mapping[str, Any]], context: RequestContext) -> List[Dict[str, Any]]:
    """The subset of conditions that do not hold (used in log messages)"""
    return [dict(c) for c in normalize_conditions(conditions) if not evaluate_condition(c, context)]
