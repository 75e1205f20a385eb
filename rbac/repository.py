"""
Data access layer for the permission/role data store.

Repository methods:
- Permission: get, get_by_name, get_many_by_name, list, categories, add
- Role: get, get_by_name, list, referencing, add
- Assignment: get, get_pair, list_for_user, list_for_role, active_for_role, expiring, expired

Repositories only query and flush; committing is left to the service layer.
"""

from sqlalchemy.orm import Session, joinedload
from sqlalchemy import and_, or_
from typing import Dict, Iterable, List, Optional
from datetime import datetime, timedelta
import logging

from rbac.models import Permission, Role, UserRoleAssignment

logger = logging.getLogger(__name__)


class PermissionRepository:
    """Queries for Permission rows"""

    @staticmethod
    def get(db: Session, permission_id: str) -> Optional[Permission]:
        return db.query(Permission).filter(Permission.id == permission_id).first()

    @staticmethod
    def get_by_name(db: Session, name: str) -> Optional[Permission]:
        return db.query(Permission).filter(Permission.name == name).first()

    @staticmethod
    def get_many_by_name(db: Session, names: Iterable[str]) -> Dict[str, Permission]:
        """
        Load permissions for a batch of identifiers in one query.

        Args:
            db: Database session
            names: Permission identifier strings

        Returns:
            Mapping of identifier -> Permission (missing identifiers are absent)
        """
        names = list(set(names))
        if not names:
            return {}
        rows = db.query(Permission).filter(Permission.name.in_(names)).all()
        return {p.name: p for p in rows}

    @staticmethod
    def list(
        db: Session,
        category: Optional[str] = None,
        active_only: bool = True
    ) -> List[Permission]:
        query = db.query(Permission)
        if category:
            query = query.filter(Permission.category == category)
        if active_only:
            query = query.filter(Permission.is_active == True)
        return query.order_by(Permission.category, Permission.resource, Permission.action).all()

    @staticmethod
    def categories(db: Session) -> List[str]:
        rows = db.query(Permission.category).filter(Permission.is_active == True).distinct().all()
        return sorted(r[0] for r in rows)

    @staticmethod
    def add(db: Session, permission: Permission) -> Permission:
        db.add(permission)
        db.flush()
        logger.info(f"Added permission {permission.name}")
        return permission


class RoleRepository:
    """Queries for Role rows"""

    @staticmethod
    def get(db: Session, role_id: str) -> Optional[Role]:
        return db.query(Role).filter(Role.id == role_id).first()

    @staticmethod
    def get_by_name(db: Session, name: str) -> Optional[Role]:
        return db.query(Role).filter(Role.name == name).first()

    @staticmethod
    def list(
        db: Session,
        category: Optional[str] = None,
        include_inactive: bool = False
    ) -> List[Role]:
        query = db.query(Role)
        if category:
            query = query.filter(Role.category == category)
        if not include_inactive:
            query = query.filter(Role.is_active == True)
        return query.order_by(Role.level.desc(), Role.name).all()

    @staticmethod
    def referencing(db: Session, permission_name: str, active_only: bool = True) -> List[Role]:
        """
        Roles whose permission list contains ``permission_name``.

        The list is a JSON column, so the membership test runs in Python.
        """
        roles = RoleRepository.list(db, include_inactive=not active_only)
        return [r for r in roles if permission_name in (r.permissions or [])]

    @staticmethod
    def add(db: Session, role: Role) -> Role:
        db.add(role)
        db.flush()
        logger.info(f"Added role {role.name}")
        return role


class AssignmentRepository:
    """Queries for UserRoleAssignment rows"""

    @staticmethod
    def get(db: Session, assignment_id: str) -> Optional[UserRoleAssignment]:
        return db.query(UserRoleAssignment).filter(UserRoleAssignment.id == assignment_id).first()

    @staticmethod
    def get_pair(db: Session, user_id: str, role_id: str) -> Optional[UserRoleAssignment]:
        return db.query(UserRoleAssignment).filter(
            and_(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.role_id == role_id
            )
        ).first()

    @staticmethod
    def list_for_user(db: Session, user_id: str, include_inactive: bool = False) -> List[UserRoleAssignment]:
        """
        All assignments held by a user, with their roles eagerly loaded.

        Args:
            db: Database session
            user_id: User ID
            include_inactive: Include revoked assignments

        Returns:
            List of UserRoleAssignment ordered by assigned_at
        """
        query = db.query(UserRoleAssignment).options(
            joinedload(UserRoleAssignment.role)
        ).filter(UserRoleAssignment.user_id == user_id)

        if not include_inactive:
            query = query.filter(UserRoleAssignment.is_active == True)

        return query.order_by(UserRoleAssignment.assigned_at, UserRoleAssignment.id).all()

    @staticmethod
    def list_for_role(db: Session, role_id: str, now: Optional[datetime] = None) -> List[UserRoleAssignment]:
        """Current (active, unexpired) assignments of a role"""
        query = db.query(UserRoleAssignment).filter(
            UserRoleAssignment.role_id == role_id,
            UserRoleAssignment.is_active == True
        )
        if now is not None:
            query = query.filter(
                or_(UserRoleAssignment.expires_at.is_(None), UserRoleAssignment.expires_at >= now)
            )
        return query.order_by(UserRoleAssignment.assigned_at).all()

    @staticmethod
    def count_active_for_role(db: Session, role_id: str) -> int:
        return db.query(UserRoleAssignment).filter(
            UserRoleAssignment.role_id == role_id,
            UserRoleAssignment.is_active == True
        ).count()

    @staticmethod
    def expiring(db: Session, now: datetime, days: int = 30) -> List[UserRoleAssignment]:
        """Active assignments whose expiry falls between now and now + days"""
        horizon = now + timedelta(days=days)
        return db.query(UserRoleAssignment).options(
            joinedload(UserRoleAssignment.role)
        ).filter(
            UserRoleAssignment.is_active == True,
            UserRoleAssignment.expires_at.isnot(None),
            UserRoleAssignment.expires_at >= now,
            UserRoleAssignment.expires_at <= horizon
        ).order_by(UserRoleAssignment.expires_at).all()

    @staticmethod
    def expired(db: Session, now: datetime) -> List[UserRoleAssignment]:
        """Assignments still flagged active although their expiry has passed"""
        return db.query(UserRoleAssignment).filter(
            UserRoleAssignment.is_active == True,
            UserRoleAssignment.expires_at.isnot(None),
            UserRoleAssignment.expires_at < now
        ).all()

    @staticmethod
    def add(db: Session, assignment: UserRoleAssignment) -> UserRoleAssignment:
        db.add(assignment)
        db.flush()
        logger.info(f"Added assignment user={assignment.user_id} role={assignment.role_id}")
        return assignment
