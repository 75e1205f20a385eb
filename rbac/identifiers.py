"""
Permission identifiers.

Permissions are addressed as ``resource:action`` strings at the storage and wire
boundary. Internally they are parsed into ``PermissionId`` so wildcard handling
lives in one place:

  "*" / "*:*"        every permission
  "grades:*"         every action on the grades resource
  "grades:update"    exactly that permission
"""

from dataclasses import dataclass
from typing import Collection, Optional, Union

WILDCARD = "*"
GLOBAL_WILDCARDS = ("*", "*:*")


@dataclass(frozen=True)
class PermissionId:
    """A (resource, action) pair"""
    resource: str
    action: str

    @classmethod
    def parse(cls, value: Union[str, "PermissionId"]) -> "PermissionId":
        if isinstance(value, PermissionId):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Permission identifier must be a string, got {type(value).__name__}")

        text = value.strip().lower()
        if text in GLOBAL_WILDCARDS:
            return cls(WILDCARD, WILDCARD)

        resource, sep, action = text.partition(":")
        if not sep or not resource or not action or ":" in action:
            raise ValueError(f"Invalid permission identifier '{value}' (expected resource:action)")
        return cls(resource, action)

    @classmethod
    def try_parse(cls, value: Union[str, "PermissionId"]) -> Optional["PermissionId"]:
        try:
            return cls.parse(value)
        except ValueError:
            return None

    @property
    def is_wildcard(self) -> bool:
        return self.resource == WILDCARD and self.action == WILDCARD

    def covers(self, other: "PermissionId") -> bool:
        """True when holding this permission authorizes ``other``"""
        if self.is_wildcard:
            return True
        if self.resource != WILDCARD and self.resource != other.resource:
            return False
        return self.action == WILDCARD or self.action == other.action

    def __str__(self) -> str:
        if self.is_wildcard:
            return WILDCARD
        return f"{self.resource}:{self.action}"


def normalize(value: Union[str, PermissionId]) -> str:
    """Canonical string form; raises ValueError on malformed input"""
    return str(PermissionId.parse(value))


def resource_action(resource: str, action: str) -> str:
    return str(PermissionId(resource.strip().lower(), action.strip().lower()))


def grant_reason(effective: Collection[str], requested: Union[str, PermissionId]) -> Optional[str]:
    """
    Explain why ``requested`` is granted by ``effective``, or None if it is not.

    Reasons: "wildcard", "direct", "resource_wildcard".
    """
    if any(w in effective for w in GLOBAL_WILDCARDS):
        return "wildcard"

    parsed = PermissionId.try_parse(requested)
    if parsed is None:
        # Custom, non resource:action names only match exactly
        return "direct" if requested in effective else None

    if str(parsed) in effective:
        return "direct"
    if parsed.is_wildcard:
        return None
    if f"{parsed.resource}:{WILDCARD}" in effective:
        return "resource_wildcard"
    return None


def is_granted(effective: Collection[str], requested: Union[str, PermissionId]) -> bool:
    return grant_reason(effective, requested) is not None
