"""
Pydantic schemas for RBAC API validation and serialization.

These schemas handle:
1. Request validation for the administration endpoints
2. Response serialization of permissions, roles and assignments
3. The UserPermissions projection returned by the resolver
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rbac.identifiers import normalize
from rbac.utils import dedupe

PermissionAction = Literal["create", "read", "update", "delete", "manage", "approve", "export", "import"]
PermissionCategory = Literal["academic", "administrative", "system", "reporting", "financial", "communication"]
RoleCategory = Literal["administrative", "academic", "financial", "support", "system"]
ConditionType = Literal[
    "department", "time", "ip", "location", "semester",
    "time_range", "ip_restriction", "temporary",
]
ConditionOperator = Literal["equals", "in", "not_in", "between", "greater_than", "less_than"]


def _normalize_permission_list(values: List[str]) -> List[str]:
    try:
        return dedupe(normalize(v) for v in values)
    except ValueError as e:
        raise ValueError(str(e))


# ============ Shared ============

class ConditionSchema(BaseModel):
    """
    Attribute-based constraint attached to a permission or an assignment.

    Example:
        {"type": "department", "operator": "in", "value": ["CS", "EE"]}
    """
    type: ConditionType
    operator: ConditionOperator = "equals"
    value: Any = Field(..., description="Compared against the request context")
    description: Optional[str] = None


# ============ Request Schemas ============

class PermissionCreateRequest(BaseModel):
    resource: str = Field(..., min_length=1, max_length=50)
    action: PermissionAction
    display_name: str = Field(..., min_length=1, max_length=150)
    description: str = Field("", max_length=500)
    category: PermissionCategory
    conditions: List[ConditionSchema] = Field(default_factory=list)

    @field_validator("resource")
    def validate_resource(cls, v):
        v = v.strip().lower()
        if ":" in v:
            raise ValueError("resource must not contain ':'")
        return v


class PermissionUpdateRequest(BaseModel):
    resource: Optional[str] = Field(None, min_length=1, max_length=50)
    action: Optional[PermissionAction] = None
    display_name: Optional[str] = Field(None, max_length=150)
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[PermissionCategory] = None
    conditions: Optional[List[ConditionSchema]] = None


class RoleCreateRequest(BaseModel):
    """
    Request to create a custom role.

    Example:
        {
            "name": "exam_officer",
            "description": "Publishes examination results",
            "permissions": ["grades:read", "grades:approve"],
            "category": "academic",
            "level": 5
        }
    """
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    permissions: List[str] = Field(default_factory=list)
    category: RoleCategory
    level: int = Field(1, ge=1, le=10)

    @field_validator("permissions")
    def validate_permissions(cls, v):
        return _normalize_permission_list(v)


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    permissions: Optional[List[str]] = None
    category: Optional[RoleCategory] = None
    level: Optional[int] = Field(None, ge=1, le=10)
    is_active: Optional[bool] = None

    @field_validator("permissions")
    def validate_permissions(cls, v):
        if v is None:
            return v
        return _normalize_permission_list(v)


class RoleCloneRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class AssignRoleRequest(BaseModel):
    user_id: str
    role_id: str
    expires_at: Optional[datetime] = None
    conditions: List[ConditionSchema] = Field(default_factory=list)
    department: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)


class BulkAssignRequest(BaseModel):
    assignments: List[AssignRoleRequest] = Field(..., min_length=1, max_length=500)


class ExtendAssignmentRequest(BaseModel):
    days: int = Field(..., gt=0, le=3650)


class PermissionCheckRequest(BaseModel):
    permission: str = Field(..., min_length=1)
    conditions: Optional[Any] = Field(
        None,
        description="Either a list of conditions or a {type: value} mapping"
    )


# ============ Response Schemas ============

class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    display_name: str
    resource: str
    action: str
    description: str = ""
    category: str
    is_active: bool = True
    conditions: List[ConditionSchema] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("conditions", mode="before")
    def none_to_empty(cls, v):
        return v or []


class RoleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str = ""
    permissions: List[str] = Field(default_factory=list)
    is_system_role: bool = False
    is_active: bool = True
    category: str
    level: int = 1
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("permissions", mode="before")
    def none_to_empty(cls, v):
        return v or []


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    role_id: str
    assigned_by: Optional[str] = None
    assigned_at: datetime
    expires_at: Optional[datetime] = None
    is_active: bool
    conditions: List[ConditionSchema] = Field(default_factory=list)
    department: Optional[str] = None
    notes: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @field_validator("conditions", mode="before")
    def none_to_empty(cls, v):
        return v or []


class UserPermissions(BaseModel):
    """
    Resolved permission projection for one user. Never persisted as a source of truth.

    ``effective_permissions`` is the only input to authorization checks;
    ``roles`` and ``permissions`` are carried for display.
    """
    user_id: str
    roles: List[RoleResponse] = Field(default_factory=list)
    permissions: List[PermissionResponse] = Field(default_factory=list)
    effective_permissions: List[str] = Field(default_factory=list)
    last_updated: datetime
    cache_expiry: datetime

    @field_validator("effective_permissions")
    def dedupe_effective(cls, v):
        return dedupe(v)


class PermissionCheckResponse(BaseModel):
    has_permission: bool
    reason: str
    conditions: Optional[Any] = None


class PermissionSummary(BaseModel):
    user_id: str
    total_roles: int
    total_permissions: int
    highest_role_level: int
    is_admin: bool
    permissions_by_category: Dict[str, List[str]]
    role_names: List[str]
    last_updated: datetime
