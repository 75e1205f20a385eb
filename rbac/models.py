"""
Database models for the permission/role data store.

Models:
- Permission: an atomic (resource, action) grant with optional attribute conditions
- Role: a named bundle of permission identifiers with a hierarchy level
- UserRoleAssignment: links a user to a role, optionally time-bounded or scoped

Permissions are never hard deleted; deactivation flips ``is_active`` so the audit
trail keeps pointing at real rows.
"""

from sqlalchemy import (
    CheckConstraint, Column, String, DateTime, Text, Integer, ForeignKey,
    Index, Boolean, JSON, UniqueConstraint
)
from sqlalchemy.orm import relationship
import uuid

from auth.models import Base
from rbac.utils import utcnow

PERMISSION_ACTIONS = ("create", "read", "update", "delete", "manage", "approve", "export", "import")
PERMISSION_CATEGORIES = ("academic", "administrative", "system", "reporting", "financial", "communication")
ROLE_CATEGORIES = ("administrative", "academic", "financial", "support", "system")


class Permission(Base):
    """
    A single permission, addressed everywhere by its ``name`` identifier
    (``resource:action``, or ``*`` for the global wildcard).

    Attributes:
        name: Stable identifier string referenced by roles and checks
        display_name: Human-readable name shown in admin screens
        conditions: List of {type, operator, value, description} constraints
    """

    __tablename__ = "permissions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), unique=True, nullable=False, index=True)
    display_name = Column(String(150), nullable=False)
    resource = Column(String(50), nullable=False)
    action = Column(String(20), nullable=False)
    description = Column(String(500), nullable=False, default="")
    category = Column(String(30), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    conditions = Column(JSON, nullable=True, default=list)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_permissions_resource_action", "resource", "action"),
        CheckConstraint(
            "category IN ('academic', 'administrative', 'system', 'reporting', 'financial', 'communication')",
            name="ck_permissions_category",
        ),
    )

    def __repr__(self):
        return f"<Permission(name='{self.name}', active={self.is_active})>"


class Role(Base):
    """
    A reusable bundle of permission identifiers.

    ``permissions`` is a JSON list of identifier strings, de-duplicated on write.
    System roles are only altered by seed/migration code.
    """

    __tablename__ = "roles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(String(500), nullable=False, default="")
    permissions = Column(JSON, nullable=False, default=list)
    is_system_role = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    category = Column(String(30), nullable=False)
    level = Column(Integer, nullable=False, default=1)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    assignments = relationship("UserRoleAssignment", back_populates="role")

    __table_args__ = (
        CheckConstraint("level >= 1 AND level <= 10", name="ck_roles_level"),
        Index("idx_roles_system_active", "is_system_role", "is_active"),
    )

    def __repr__(self):
        return f"<Role(name='{self.name}', level={self.level}, system={self.is_system_role})>"


class UserRoleAssignment(Base):
    """
    Grants a role to a user.

    The assignment stops applying once ``expires_at`` has passed, without an
    explicit revoke. ``is_active`` is flipped for explicit revocation.
    """

    __tablename__ = "user_role_assignments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False, index=True)
    role_id = Column(String(36), ForeignKey("roles.id"), nullable=False, index=True)
    assigned_by = Column(String(36), nullable=True)
    assigned_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    conditions = Column(JSON, nullable=True, default=list)
    department = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoked_by = Column(String(36), nullable=True)

    user = relationship("User", back_populates="role_assignments", foreign_keys=[user_id])
    role = relationship("Role", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_role"),
        Index("idx_assignments_user_active", "user_id", "is_active"),
        Index("idx_assignments_role_active", "role_id", "is_active"),
    )

    def is_current(self, now) -> bool:
        """Active and not past its expiry at ``now``"""
        if not self.is_active:
            return False
        return self.expires_at is None or now <= self.expires_at

    def __repr__(self):
        return f"<UserRoleAssignment(user_id={self.user_id}, role_id={self.role_id}, active={self.is_active})>"
