"""
Business logic for RBAC administration.

The service layer sits between API endpoints and repositories.
It handles:
- System-role immutability and soft deactivation rules
- The role assignment lifecycle (assign, reactivate, revoke, extend, expire)
- Invalidating cached permission snapshots after every change
- Writing AuditLog rows in the same transaction as the change
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from auth.models import AuditLog, User
from rbac.errors import (
    ConflictError, NotFoundError, PermissionInUseError, RoleInUseError,
    SystemRoleError, ValidationError
)
from rbac.identifiers import normalize, resource_action
from rbac.models import Permission, Role, UserRoleAssignment
from rbac.repository import AssignmentRepository, PermissionRepository, RoleRepository
from rbac.resolver import permission_resolver
from rbac.schemas import (
    AssignRoleRequest, PermissionCreateRequest, PermissionUpdateRequest,
    RoleCreateRequest, RoleUpdateRequest
)
from rbac.utils import as_naive_utc, dedupe, utcnow


def record_audit(
    db: Session,
    actor_id: Optional[str],
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
    status: str = "success",
    ip_address: Optional[str] = None
):
    """Add an AuditLog row to the current transaction"""
    db.add(AuditLog(
        user_id=actor_id,
        event_type=event_type,
        event_details=json.dumps(details or {}, default=str),
        ip_address=ip_address,
        status=status,
    ))
    logger.info(f"[AUDIT] {event_type} by {actor_id} - {status}")


def _dump_conditions(conditions) -> List[Dict[str, Any]]:
    return [c.model_dump() if hasattr(c, "model_dump") else dict(c) for c in (conditions or [])]


class PermissionService:
    """Permission definitions: list, create, update, soft-deactivate"""

    @staticmethod
    def get(db: Session, permission_id: str) -> Permission:
        permission = PermissionRepository.get(db, permission_id)
        if permission is None:
            raise NotFoundError(f"Permission {permission_id} not found")
        return permission

    @staticmethod
    def create(db: Session, request: PermissionCreateRequest, actor_id: Optional[str] = None) -> Permission:
        """
        Create a permission.

        Raises:
            ConflictError: a permission with the same identifier exists
        """
        name = resource_action(request.resource, request.action)
        if PermissionRepository.get_by_name(db, name) is not None:
            raise ConflictError(f"Permission '{name}' already exists")

        permission = PermissionRepository.add(db, Permission(
            name=name,
            display_name=request.display_name,
            resource=request.resource,
            action=request.action,
            description=request.description,
            category=request.category,
            conditions=_dump_conditions(request.conditions),
            created_by=actor_id,
        ))
        record_audit(db, actor_id, "permission_created", {"permission": name})
        db.commit()

        logger.info(f"[ROLE] Created permission {name}")
        return permission

    @staticmethod
    def update(
        db: Session,
        permission_id: str,
        request: PermissionUpdateRequest,
        actor_id: Optional[str] = None
    ) -> Permission:
        """
        Update a permission.

        The identifier (resource/action) is immutable while an active role
        references it; descriptive fields and conditions may always change.
        """
        permission = PermissionService.get(db, permission_id)
        updates = request.model_dump(exclude_unset=True)

        resource = updates.pop("resource", None) or permission.resource
        action = updates.pop("action", None) or permission.action
        new_name = resource_action(resource, action)

        if new_name != permission.name:
            referencing = RoleRepository.referencing(db, permission.name)
            if referencing:
                raise PermissionInUseError(
                    f"Permission '{permission.name}' is referenced by active roles",
                    {"roles": [r.name for r in referencing]}
                )
            if PermissionRepository.get_by_name(db, new_name) is not None:
                raise ConflictError(f"Permission '{new_name}' already exists")
            permission.resource = resource
            permission.action = action
            permission.name = new_name

        if "conditions" in updates:
            permission.conditions = _dump_conditions(request.conditions)
            updates.pop("conditions")

        for key, value in updates.items():
            if value is not None:
                setattr(permission, key, value)

        record_audit(db, actor_id, "permission_updated", {"permission": permission.name})
        db.commit()
        permission_resolver.invalidate_all()

        logger.info(f"[ROLE] Updated permission {permission.name}")
        return permission

    @staticmethod
    def deactivate(db: Session, permission_id: str, actor_id: Optional[str] = None) -> Permission:
        """Soft-deactivate; the row is kept for the audit trail"""
        permission = PermissionService.get(db, permission_id)
        if not permission.is_active:
            return permission

        permission.is_active = False
        record_audit(db, actor_id, "permission_deactivated", {"permission": permission.name})
        db.commit()
        permission_resolver.invalidate_all()

        logger.info(f"[ROLE] Deactivated permission {permission.name}")
        return permission


class RoleService:
    """Role definitions; system roles are read-only here"""

    @staticmethod
    def get(db: Session, role_id: str) -> Role:
        role = RoleRepository.get(db, role_id)
        if role is None:
            raise NotFoundError(f"Role {role_id} not found")
        return role

    @staticmethod
    def _validate_permissions(db: Session, permissions: List[str]) -> List[str]:
        names = dedupe(normalize(p) for p in permissions)
        found = PermissionRepository.get_many_by_name(db, names)
        unknown = [n for n in names if n not in found or not found[n].is_active]
        if unknown:
            raise ValidationError("Unknown or inactive permissions", {"permissions": unknown})
        return names

    @staticmethod
    def create(db: Session, request: RoleCreateRequest, actor_id: Optional[str] = None) -> Role:
        if RoleRepository.get_by_name(db, request.name) is not None:
            raise ConflictError(f"Role '{request.name}' already exists")

        role = RoleRepository.add(db, Role(
            name=request.name,
            description=request.description,
            permissions=RoleService._validate_permissions(db, request.permissions),
            is_system_role=False,
            category=request.category,
            level=request.level,
            created_by=actor_id,
        ))
        record_audit(db, actor_id, "role_created", {"role": role.name, "permissions": role.permissions})
        db.commit()

        logger.info(f"[ROLE] Created role {role.name} with {len(role.permissions)} permissions")
        return role

    @staticmethod
    def update(db: Session, role_id: str, request: RoleUpdateRequest, actor_id: Optional[str] = None) -> Role:
        """
        Update a custom role.

        Raises:
            SystemRoleError: system roles only change through seeding
        """
        role = RoleService.get(db, role_id)
        if role.is_system_role:
            raise SystemRoleError(f"System role '{role.name}' cannot be modified")

        updates = request.model_dump(exclude_unset=True)
        if "name" in updates and updates["name"] != role.name:
            if RoleRepository.get_by_name(db, updates["name"]) is not None:
                raise ConflictError(f"Role '{updates['name']}' already exists")
        if updates.get("permissions") is not None:
            updates["permissions"] = RoleService._validate_permissions(db, updates["permissions"])

        for key, value in updates.items():
            if value is not None:
                setattr(role, key, value)

        record_audit(db, actor_id, "role_updated", {"role": role.name, "changes": list(updates)})
        db.commit()
        permission_resolver.invalidate_all()

        logger.info(f"[ROLE] Updated role {role.name}")
        return role

    @staticmethod
    def delete(db: Session, role_id: str, actor_id: Optional[str] = None) -> None:
        """
        Delete a custom role.

        Raises:
            SystemRoleError: the role is a system role
            RoleInUseError: active assignments still reference the role
        """
        role = RoleService.get(db, role_id)
        if role.is_system_role:
            raise SystemRoleError(f"System role '{role.name}' cannot be deleted")

        active = AssignmentRepository.count_active_for_role(db, role_id)
        if active:
            raise RoleInUseError(
                f"Role '{role.name}' has {active} active assignments",
                {"active_assignments": active}
            )

        for assignment in list(role.assignments):
            db.delete(assignment)
        db.delete(role)
        record_audit(db, actor_id, "role_deleted", {"role": role.name})
        db.commit()
        permission_resolver.invalidate_all()

        logger.info(f"[ROLE] Deleted role {role.name}")

    @staticmethod
    def clone(db: Session, role_id: str, name: str, actor_id: Optional[str] = None) -> Role:
        """Copy a role's permissions into a new custom (never system) role"""
        source = RoleService.get(db, role_id)
        if RoleRepository.get_by_name(db, name) is not None:
            raise ConflictError(f"Role '{name}' already exists")

        role = RoleRepository.add(db, Role(
            name=name,
            description=f"Copy of {source.name}",
            permissions=list(source.permissions or []),
            is_system_role=False,
            category=source.category,
            level=source.level,
            created_by=actor_id,
        ))
        record_audit(db, actor_id, "role_created", {"role": name, "cloned_from": source.name})
        db.commit()

        logger.info(f"[ROLE] Cloned role {source.name} into {name}")
        return role


class AssignmentService:
    """User-role assignment lifecycle"""

    @staticmethod
    def get(db: Session, assignment_id: str) -> UserRoleAssignment:
        assignment = AssignmentRepository.get(db, assignment_id)
        if assignment is None:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        return assignment

    @staticmethod
    def list_for_user(db: Session, user_id: str, include_inactive: bool = False) -> List[UserRoleAssignment]:
        if db.query(User).filter(User.user_id == user_id).first() is None:
            raise NotFoundError(f"User {user_id} not found")
        return AssignmentRepository.list_for_user(db, user_id, include_inactive)

    @staticmethod
    def assign(
        db: Session,
        request: AssignRoleRequest,
        actor_id: Optional[str] = None,
        commit: bool = True
    ) -> UserRoleAssignment:
        """
        Assign a role to a user.

        A revoked (or lapsed) assignment for the same pair is reactivated with
        the new expiry and conditions.

        Raises:
            NotFoundError: unknown user or role
            ValidationError: inactive role, or expiry not after the assignment time
            ConflictError: the user already holds the role
        """
        now = utcnow()

        if db.query(User).filter(User.user_id == request.user_id).first() is None:
            raise NotFoundError(f"User {request.user_id} not found")
        role = RoleService.get(db, request.role_id)
        if not role.is_active:
            raise ValidationError(f"Role '{role.name}' is inactive")

        expires_at = as_naive_utc(request.expires_at) if request.expires_at else None
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at must be after the assignment time")

        assignment = AssignmentRepository.get_pair(db, request.user_id, request.role_id)
        if assignment is not None and assignment.is_current(now):
            raise ConflictError(f"User already has role '{role.name}'")

        if assignment is None:
            assignment = AssignmentRepository.add(db, UserRoleAssignment(
                user_id=request.user_id,
                role_id=request.role_id,
                assigned_at=now,
            ))
        else:
            logger.info(f"[ASSIGN] Reactivating assignment {assignment.id}")

        assignment.assigned_by = actor_id
        assignment.assigned_at = now
        assignment.expires_at = expires_at
        assignment.is_active = True
        assignment.conditions = _dump_conditions(request.conditions)
        assignment.department = request.department
        assignment.notes = request.notes
        assignment.revoked_at = None
        assignment.revoked_by = None

        record_audit(db, actor_id, "role_assigned", {
            "user_id": request.user_id,
            "role": role.name,
            "expires_at": expires_at,
        })
        if commit:
            db.commit()
        permission_resolver.invalidate_user(request.user_id)

        logger.info(f"[ASSIGN] Assigned role {role.name} to {request.user_id}")
        return assignment

    @staticmethod
    def bulk_assign(
        db: Session,
        requests: List[AssignRoleRequest],
        actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Assign many roles; failures are reported per item and do not stop the batch.

        Returns:
            {"assigned": [...assignments], "errors": [{"index", "user_id", "role_id", "error"}]}
        """
        assigned = []
        errors = []
        for index, request in enumerate(requests):
            # assign() validates everything before touching the session
            try:
                assigned.append(AssignmentService.assign(db, request, actor_id, commit=False))
            except (NotFoundError, ValidationError, ConflictError) as e:
                errors.append({
                    "index": index,
                    "user_id": request.user_id,
                    "role_id": request.role_id,
                    "error": e.message,
                })
        db.commit()

        logger.info(f"[ASSIGN] Bulk assign: {len(assigned)} assigned, {len(errors)} failed")
        return {"assigned": assigned, "errors": errors}

    @staticmethod
    def revoke(db: Session, assignment_id: str, actor_id: Optional[str] = None) -> UserRoleAssignment:
        """Explicit, soft revocation"""
        assignment = AssignmentService.get(db, assignment_id)
        if not assignment.is_active:
            return assignment

        assignment.is_active = False
        assignment.revoked_at = utcnow()
        assignment.revoked_by = actor_id

        record_audit(db, actor_id, "role_revoked", {
            "user_id": assignment.user_id,
            "role": assignment.role.name if assignment.role else assignment.role_id,
        })
        db.commit()
        permission_resolver.invalidate_user(assignment.user_id)

        logger.info(f"[ASSIGN] Revoked assignment {assignment.id} from {assignment.user_id}")
        return assignment

    @staticmethod
    def extend(db: Session, assignment_id: str, days: int, actor_id: Optional[str] = None) -> UserRoleAssignment:
        """
        Push the expiry back by ``days``, counted from the current expiry
        (or from now when the assignment had none).
        """
        if days <= 0:
            raise ValidationError("days must be positive")

        assignment = AssignmentService.get(db, assignment_id)
        if not assignment.is_active:
            raise ValidationError("Cannot extend a revoked assignment")

        base = assignment.expires_at or utcnow()
        assignment.expires_at = base + timedelta(days=days)

        record_audit(db, actor_id, "role_assignment_extended", {
            "assignment_id": assignment.id,
            "user_id": assignment.user_id,
            "expires_at": assignment.expires_at,
        })
        db.commit()
        permission_resolver.invalidate_user(assignment.user_id)

        logger.info(f"[ASSIGN] Extended assignment {assignment.id} to {assignment.expires_at.isoformat()}")
        return assignment

    @staticmethod
    def expiring(db: Session, days: int = 30, now: Optional[datetime] = None) -> List[UserRoleAssignment]:
        return AssignmentRepository.expiring(db, now or utcnow(), days)

    @staticmethod
    def deactivate_expired(db: Session, now: Optional[datetime] = None) -> int:
        """
        Flip ``is_active`` on assignments whose expiry has passed.

        Expired assignments already stop granting without this; it keeps the
        active flag truthful for listings and reports.
        """
        now = now or utcnow()
        expired = AssignmentRepository.expired(db, now)
        for assignment in expired:
            assignment.is_active = False
            assignment.revoked_at = now
            permission_resolver.invalidate_user(assignment.user_id)

        if expired:
            record_audit(db, None, "role_assignments_expired", {"count": len(expired)})
        db.commit()

        logger.info(f"[ASSIGN] Deactivated {len(expired)} expired assignments")
        return len(expired)
