"""
RBAC administration and resolution endpoints.

Exposed endpoints:
- GET/POST /api/rbac/permissions, GET /api/rbac/permissions/categories
- GET/PUT /api/rbac/permissions/{id}, POST /api/rbac/permissions/{id}/deactivate
- GET/POST /api/rbac/roles, GET/PUT/DELETE /api/rbac/roles/{id}
- POST /api/rbac/roles/{id}/clone, GET /api/rbac/roles/{id}/users
- GET /api/rbac/users/{user_id}/roles
- POST /api/rbac/user-roles/assign, POST /api/rbac/user-roles/bulk-assign
- DELETE /api/rbac/user-roles/{id}, POST /api/rbac/user-roles/{id}/extend
- GET /api/rbac/user-roles/expiring, POST /api/rbac/user-roles/deactivate-expired
- GET /api/rbac/users/{user_id}/permissions (+ /check, /summary)
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger
from sqlalchemy.orm import Session

from auth.models import get_db
from auth.rbac_dependencies import (
    deny_access, get_current_permissions, get_request_context,
    require_admin, require_any_permission, require_permission, require_system_admin,
    verify_jwt_token
)
from rbac.conditions import RequestContext
from rbac.errors import RBACError
from rbac.identifiers import is_granted
from rbac.repository import AssignmentRepository, PermissionRepository, RoleRepository
from rbac.resolver import permission_resolver
from rbac.schemas import (
    AssignRoleRequest, AssignmentResponse, BulkAssignRequest, ExtendAssignmentRequest,
    PermissionCheckRequest, PermissionCheckResponse, PermissionCreateRequest,
    PermissionResponse, PermissionSummary, PermissionUpdateRequest, RoleCloneRequest,
    RoleCreateRequest, RoleResponse, RoleUpdateRequest, UserPermissions
)
from rbac.service import AssignmentService, PermissionService, RoleService
from rbac.utils import utcnow

router = APIRouter(prefix="/api/rbac", tags=["rbac"])


def _http_error(e: RBACError) -> HTTPException:
    if e.status_code >= 500:
        logger.error(f"[RESOLVE] {e.message}")
    else:
        logger.warning(f"[ROLE] {type(e).__name__}: {e.message}")
    detail = {"message": e.message, **e.details} if e.details else e.message
    return HTTPException(status_code=e.status_code, detail=detail)


def _ensure_self_or(request: Request, user: dict, permissions: UserPermissions, user_id: str, permission: str):
    """Callers may always read their own data; anything else needs ``permission``"""
    if user["sub"] == user_id:
        return
    if not is_granted(set(permissions.effective_permissions), permission):
        deny_access(user, f"Permission '{permission}' required", request)


def _target_context(caller_context: RequestContext, user_id: str) -> RequestContext:
    """Self lookups use the live request; lookups of others only carry the user id"""
    if caller_context.user_id == user_id:
        return caller_context
    return RequestContext(user_id=user_id)


# ==================== PERMISSIONS ====================

@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    category: Optional[str] = Query(None),
    active_only: bool = Query(True),
    user: dict = Depends(require_permission("permissions:read")),
    db: Session = Depends(get_db)
):
    try:
        return PermissionRepository.list(db, category=category, active_only=active_only)
    except Exception as e:
        logger.error(f"Error listing permissions: {e}")
        raise HTTPException(status_code=500, detail="Failed to list permissions")


@router.get("/permissions/categories", response_model=List[str])
async def list_permission_categories(
    user: dict = Depends(require_permission("permissions:read")),
    db: Session = Depends(get_db)
):
    return PermissionRepository.categories(db)


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    user: dict = Depends(require_permission("permissions:read")),
    db: Session = Depends(get_db)
):
    try:
        return PermissionService.get(db, permission_id)
    except RBACError as e:
        raise _http_error(e)


@router.post("/permissions", response_model=PermissionResponse, status_code=201)
async def create_permission(
    data: PermissionCreateRequest,
    user: dict = Depends(require_permission("permissions:create")),
    db: Session = Depends(get_db)
):
    """
    Create a permission.

    Example request:
        {
            "resource": "transcripts",
            "action": "export",
            "display_name": "Transcripts: Export",
            "category": "academic"
        }
    """
    try:
        return PermissionService.create(db, data, actor_id=user["sub"])
    except HTTPException:
        raise
    except RBACError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error creating permission: {e}")
        raise HTTPException(status_code=500, detail="Failed to create permission")


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    data: PermissionUpdateRequest,
    user: dict = Depends(require_permission("permissions:update")),
    db: Session = Depends(get_db)
):
    try:
        return PermissionService.update(db, permission_id, data, actor_id=user["sub"])
    except RBACError as e:
        raise _http_error(e)


@router.post("/permissions/{permission_id}/deactivate", response_model=PermissionResponse)
async def deactivate_permission(
    permission_id: str,
    user: dict = Depends(require_system_admin),
    db: Session = Depends(get_db)
):
    try:
        return PermissionService.deactivate(db, permission_id, actor_id=user["sub"])
    except RBACError as e:
        raise _http_error(e)


# ==================== ROLES ====================

@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    category: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    user: dict = Depends(require_permission("roles:read")),
    db: Session = Depends(get_db)
):
    return RoleRepository.list(db, category=category, include_inactive=include_inactive)


@router.get("/roles/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    user: dict = Depends(require_permission("roles:read")),
    db: Session = Depends(get_db)
):
    try:
        return RoleService.get(db, role_id)
    except RBACError as e:
        raise _http_error(e)


@router.post("/roles", response_model=RoleResponse, status_code=201)
async def create_role(
    data: RoleCreateRequest,
    user: dict = Depends(require_permission("roles:create")),
    db: Session = Depends(get_db)
):
    try:
        return RoleService.create(db, data, actor_id=user["sub"])
    except HTTPException:
        raise
    except RBACError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error creating role: {e}")
        raise HTTPException(status_code=500, detail="Failed to create role")


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    data: RoleUpdateRequest,
    user: dict = Depends(require_permission("roles:update")),
    db: Session = Depends(get_db)
):
    try:
        return RoleService.update(db, role_id, data, actor_id=user["sub"])
    except RBACError as e:
        raise _http_error(e)


@router.delete("/roles/{role_id}")
async def delete_role(
    role_id: str,
    user: dict = Depends(require_permission("roles:delete")),
    db: Session = Depends(get_db)
):
    try:
        RoleService.delete(db, role_id, actor_id=user["sub"])
        return {"success": True, "message": "Role deleted"}
    except RBACError as e:
        raise _http_error(e)


@router.post("/roles/{role_id}/clone", response_model=RoleResponse, status_code=201)
async def clone_role(
    role_id: str,
    data: RoleCloneRequest,
    user: dict = Depends(require_permission("roles:create")),
    db: Session = Depends(get_db)
):
    try:
        return RoleService.clone(db, role_id, data.name, actor_id=user["sub"])
    except RBACError as e:
        raise _http_error(e)


@router.get("/roles/{role_id}/users", response_model=List[AssignmentResponse])
async def list_role_users(
    role_id: str,
    user: dict = Depends(require_any_permission(["roles:read", "users:read"])),
    db: Session = Depends(get_db)
):
    try:
        RoleService.get(db, role_id)
        return AssignmentRepository.list_for_role(db, role_id, now=utcnow())
    except RBACError as e:
        raise _http_error(e)


# ==================== ASSIGNMENTS ====================

@router.get("/users/{user_id}/roles", response_model=List[AssignmentResponse])
async def list_user_roles(
    user_id: str,
    request: Request,
    include_inactive: bool = Query(False),
    user: dict = Depends(verify_jwt_token),
    permissions: UserPermissions = Depends(get_current_permissions),
    db: Session = Depends(get_db)
):
    _ensure_self_or(request, user, permissions, user_id, "roles:read")
    try:
        return AssignmentService.list_for_user(db, user_id, include_inactive=include_inactive)
    except RBACError as e:
        raise _http_error(e)


@router.post("/user-roles/assign", response_model=AssignmentResponse, status_code=201)
async def assign_role(
    data: AssignRoleRequest,
    user: dict = Depends(require_permission("roles:assign")),
    db: Session = Depends(get_db)
):
    """
    Assign a role to a user.

    Example request:
        {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "role_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
            "expires_at": "2026-12-31T23:59:59",
            "conditions": [{"type": "department", "operator": "equals", "value": "CS"}]
        }
    """
    try:
        return AssignmentService.assign(db, data, actor_id=user["sub"])
    except RBACError as e:
        raise _http_error(e)


@router.post("/user-roles/bulk-assign")
async def bulk_assign_roles(
    data: BulkAssignRequest,
    user: dict = Depends(require_permission("roles:assign")),
    db: Session = Depends(get_db)
):
    result = AssignmentService.bulk_assign(db, data.assignments, actor_id=user["sub"])
    return {
        "success": not result["errors"],
        "assigned": [AssignmentResponse.model_validate(a) for a in result["assigned"]],
        "errors": result["errors"],
    }


@router.get("/user-roles/expiring", response_model=List[AssignmentResponse])
async def list_expiring_assignments(
    days: int = Query(30, ge=1, le=365),
    user: dict = Depends(require_permission("roles:read")),
    db: Session = Depends(get_db)
):
    return AssignmentService.expiring(db, days=days)


@router.post("/user-roles/deactivate-expired")
async def deactivate_expired_assignments(
    user: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    count = AssignmentService.deactivate_expired(db)
    return {"success": True, "deactivated": count}


@router.delete("/user-roles/{assignment_id}", response_model=AssignmentResponse)
async def revoke_assignment(
    assignment_id: str,
    user: dict = Depends(require_permission("roles:assign")),
    db: Session = Depends(get_db)
):
    try:
        return AssignmentService.revoke(db, assignment_id, actor_id=user["sub"])
    except RBACError as e:
        raise _http_error(e)


@router.post("/user-roles/{assignment_id}/extend", response_model=AssignmentResponse)
async def extend_assignment(
    assignment_id: str,
    data: ExtendAssignmentRequest,
    user: dict = Depends(require_permission("roles:assign")),
    db: Session = Depends(get_db)
):
    try:
        return AssignmentService.extend(db, assignment_id, data.days, actor_id=user["sub"])
    except RBACError as e:
        raise _http_error(e)


# ==================== RESOLUTION ====================

@router.get("/users/{user_id}/permissions", response_model=UserPermissions)
async def get_user_permissions(
    user_id: str,
    request: Request,
    user: dict = Depends(verify_jwt_token),
    permissions: UserPermissions = Depends(get_current_permissions),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """
    Resolved permissions for a user (what the portal loads after login).
    Callers read their own; reading someone else's needs roles:read.
    """
    _ensure_self_or(request, user, permissions, user_id, "roles:read")
    if user["sub"] == user_id:
        return permissions
    try:
        return permission_resolver.get_permissions(db, user_id, _target_context(context, user_id))
    except RBACError as e:
        raise _http_error(e)


@router.post("/users/{user_id}/permissions/check", response_model=PermissionCheckResponse)
async def check_user_permission(
    user_id: str,
    data: PermissionCheckRequest,
    request: Request,
    user: dict = Depends(verify_jwt_token),
    permissions: UserPermissions = Depends(get_current_permissions),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    _ensure_self_or(request, user, permissions, user_id, "roles:read")
    try:
        return permission_resolver.check_permission(
            db, user_id, data.permission,
            context=_target_context(context, user_id),
            conditions=data.conditions
        )
    except RBACError as e:
        raise _http_error(e)


@router.get("/users/{user_id}/permissions/summary", response_model=PermissionSummary)
async def get_permission_summary(
    user_id: str,
    request: Request,
    user: dict = Depends(verify_jwt_token),
    permissions: UserPermissions = Depends(get_current_permissions),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    _ensure_self_or(request, user, permissions, user_id, "roles:read")
    try:
        return permission_resolver.permission_summary(db, user_id, _target_context(context, user_id))
    except RBACError as e:
        raise _http_error(e)
