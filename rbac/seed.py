from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from loguru import logger
from sqlalchemy.orm import Session

from rbac.config import rbac_config
from rbac.identifiers import normalize, resource_action
from rbac.models import Permission, Role
from rbac.repository import PermissionRepository, RoleRepository
from rbac.utils import dedupe


def load_seed(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    path = Path(path or rbac_config.seed_file)
    try:
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(f"RBAC seed file not found: {path}")
        raise


def seed_rbac(db: Session, path: Optional[Union[str, Path]] = None) -> Dict[str, int]:
    """
    Load default permissions and system roles (IDEMPOTENT).

    Existing permissions are kept as they are. System roles are created or
    reset to the seed definition; this is the only code path allowed to alter
    them. The caller commits.

    Returns:
        Counts of created permissions, created roles and updated roles
    """
    data = load_seed(path)
    stats = {"permissions_created": 0, "roles_created": 0, "roles_updated": 0}

    for group in data.get("permissions", []):
        resource = group["resource"]
        category = group["category"]
        actions = dict(group.get("actions") or {})
        if group.get("wildcard"):
            actions.setdefault("*", f"Every action on {resource}")

        for action, description in actions.items():
            name = resource_action(resource, action)
            if PermissionRepository.get_by_name(db, name) is not None:
                continue
            PermissionRepository.add(db, Permission(
                name=name,
                display_name=_display_name(resource, action),
                resource=resource,
                action=action,
                description=description or "",
                category=category,
                conditions=[],
            ))
            stats["permissions_created"] += 1

    for definition in data.get("roles", []):
        permissions = dedupe(normalize(p) for p in definition.get("permissions", []))
        role = RoleRepository.get_by_name(db, definition["name"])

        if role is None:
            RoleRepository.add(db, Role(
                name=definition["name"],
                description=definition.get("description", ""),
                permissions=permissions,
                is_system_role=True,
                category=definition["category"],
                level=definition.get("level", 1),
            ))
            stats["roles_created"] += 1
            continue

        changed = (
            role.permissions != permissions
            or role.level != definition.get("level", 1)
            or role.category != definition["category"]
            or not role.is_system_role
        )
        if changed:
            role.permissions = permissions
            role.level = definition.get("level", 1)
            role.category = definition["category"]
            role.description = definition.get("description", role.description)
            role.is_system_role = True
            stats["roles_updated"] += 1

    db.flush()
    logger.info(
        f"[ROLE] Seeded RBAC data: {stats['permissions_created']} permissions created, "
        f"{stats['roles_created']} roles created, {stats['roles_updated']} roles updated"
    )
    return stats


def _display_name(resource: str, action: str) -> str:
    if resource == "*":
        return "All Permissions"
    if action == "*":
        return f"{resource.replace('_', ' ').title()}: All"
    return f"{resource.replace('_', ' ').title()}: {action.replace('_', ' ').title()}"
