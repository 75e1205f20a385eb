"""
Minimal permission sets used when resolution is unavailable on the initial load.

Keyed by the coarse account role stored on the User row. The mapping is
exhaustive over AccountRole; anything else gets nothing.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Union

from loguru import logger

from rbac.config import rbac_config
from rbac.schemas import PermissionResponse, RoleResponse, UserPermissions
from rbac.utils import utcnow


class AccountRole(str, Enum):
    STUDENT = "student"
    STAFF = "staff"
    ADMIN = "admin"


FALLBACK_PERMISSIONS: Dict[AccountRole, List[str]] = {
    AccountRole.STUDENT: ["courses:read", "grades:read", "payments:read", "support:create"],
    AccountRole.STAFF: ["students:read", "courses:read", "grades:read", "reports:read"],
    AccountRole.ADMIN: ["*"],
}

FALLBACK_ROLES = {
    AccountRole.STUDENT: {"display": "Student", "category": "academic", "level": 1},
    AccountRole.STAFF: {"display": "Staff", "category": "administrative", "level": 5},
    AccountRole.ADMIN: {"display": "Administrator", "category": "system", "level": 10},
}


def parse_account_role(value: Union[str, AccountRole, None]) -> Optional[AccountRole]:
    if isinstance(value, AccountRole):
        return value
    try:
        return AccountRole((value or "").lower())
    except ValueError:
        return None


def get_fallback_permissions(account_role: Union[str, AccountRole, None]) -> List[str]:
    """Fallback identifiers for an account role (empty for unknown roles)"""
    role = parse_account_role(account_role)
    if role is None:
        return []
    return list(FALLBACK_PERMISSIONS[role])


def _category_for(name: str) -> str:
    if name == "*":
        return "system"
    resource = name.split(":", 1)[0]
    return {
        "courses": "academic",
        "grades": "academic",
        "students": "administrative",
        "payments": "financial",
        "reports": "reporting",
        "support": "communication",
    }.get(resource, "system")


def build_fallback_permissions(
    user_id: str,
    account_role: Union[str, AccountRole, None],
    now: Optional[datetime] = None,
    ttl_seconds: Optional[int] = None
) -> UserPermissions:
    """
    Build a synthetic UserPermissions from the fallback table.

    The synthetic role and permission entries carry ``fallback-`` ids so they
    are never mistaken for stored rows.
    """
    now = now or utcnow()
    ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else rbac_config.cache_ttl_seconds)
    role = parse_account_role(account_role)
    names = get_fallback_permissions(role)

    roles = []
    if role is not None:
        meta = FALLBACK_ROLES[role]
        roles.append(RoleResponse(
            id=f"fallback-{role.value}",
            name=role.value,
            description=f"Fallback {meta['display']} role",
            permissions=names,
            is_system_role=True,
            category=meta["category"],
            level=meta["level"],
        ))

    permissions = [
        PermissionResponse(
            id=f"fallback-{name}",
            name=name,
            display_name=name,
            resource=name.split(":", 1)[0],
            action=name.split(":", 1)[1] if ":" in name else "*",
            category=_category_for(name),
        )
        for name in names
    ]

    logger.warning(f"[SESSION] Using fallback permissions for {user_id} (account role: {account_role})")
    return UserPermissions(
        user_id=user_id,
        roles=roles,
        permissions=permissions,
        effective_permissions=names,
        last_updated=now,
        cache_expiry=now + ttl,
    )
