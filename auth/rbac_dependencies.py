"""
Role-Based Access Control (RBAC) dependencies for FastAPI.
Provides reusable dependency functions to protect routes with role/permission checks.

Every check re-resolves the caller's permissions on the server (through the
in-memory snapshot cache). Nothing the client holds is trusted.
"""

from typing import List

from fastapi import Depends, HTTPException, Header, Request
from loguru import logger
from sqlalchemy.orm import Session

from auth.auth_manager import auth_manager
from auth.cache_manager import cache_manager
from auth.models import get_db
from rbac.conditions import RequestContext
from rbac.config import rbac_config
from rbac.errors import NotFoundError, ResolutionUnavailable
from rbac.identifiers import is_granted
from rbac.resolver import permission_resolver
from rbac.schemas import UserPermissions


# ==================== HELPER FUNCTIONS ====================

def get_client_ip(request: Request) -> str:
    """Extract client IP from request"""
    if request.client:
        return request.client.host
    return "unknown"


def _extract_token(authorization: str) -> str:
    return authorization.replace("Bearer ", "").strip()


def deny_access(user: dict, detail: str, request: Request = None):
    """Log and audit a denied check, then answer 403"""
    logger.warning(f"[GUARD] User {user['sub']} denied: {detail}")
    auth_manager.log_audit_event(
        user["sub"], "access_denied",
        {"detail": detail, "path": request.url.path if request else None},
        status="failure",
        ip_address=get_client_ip(request) if request else None
    )
    raise HTTPException(status_code=403, detail=detail)


# ==================== DEPENDENCY FUNCTIONS ====================

async def verify_jwt_token(authorization: str = Header(None)) -> dict:
    """
    Dependency: Verify JWT token and return payload.
    """
    if not authorization or "Bearer " not in authorization:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    token = _extract_token(authorization)

    if cache_manager.is_token_blacklisted(token):
        raise HTTPException(status_code=401, detail="Token has been revoked")

    payload = auth_manager.verify_token(token)

    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return payload


async def get_bearer_token(authorization: str = Header(None)) -> str:
    """Dependency: the raw bearer token (for logout)"""
    if not authorization or "Bearer " not in authorization:
        raise HTTPException(status_code=401, detail="Missing authorization token")
    return _extract_token(authorization)


async def get_request_context(request: Request, user: dict = Depends(verify_jwt_token)) -> RequestContext:
    """
    Dependency: request attributes conditions are evaluated against.

    Only server-side facts are used. Location is mapped from the connection
    address and the semester comes from configuration; department is read
    from the account row during resolution.
    """
    ip_address = get_client_ip(request)
    return RequestContext(
        user_id=user["sub"],
        ip_address=ip_address,
        location=rbac_config.location_for(ip_address),
        semester=rbac_config.current_semester,
    )


def get_current_permissions(
    user: dict = Depends(verify_jwt_token),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
) -> UserPermissions:
    """
    Dependency: the caller's resolved permissions.

    A backing store failure answers 503. The server never falls back to a
    default permission set.
    """
    try:
        return permission_resolver.get_permissions(db, user["sub"], context)
    except NotFoundError:
        raise HTTPException(status_code=401, detail="User not found")
    except ResolutionUnavailable:
        raise HTTPException(status_code=503, detail="Permission service unavailable")


def require_permission(required_permission: str):
    """
    Dependency factory: Require specific permission.
    """
    def _require_permission(
        request: Request,
        user: dict = Depends(verify_jwt_token),
        permissions: UserPermissions = Depends(get_current_permissions)
    ) -> dict:
        if not is_granted(set(permissions.effective_permissions), required_permission):
            deny_access(user, f"Permission '{required_permission}' required", request)
        return user

    return _require_permission


def require_any_permission(required_permissions: List[str]):
    """
    Dependency factory: Require one of several permissions.
    """
    def _require_any_permission(
        request: Request,
        user: dict = Depends(verify_jwt_token),
        permissions: UserPermissions = Depends(get_current_permissions)
    ) -> dict:
        effective = set(permissions.effective_permissions)
        if not any(is_granted(effective, p) for p in required_permissions):
            deny_access(user, f"One of permissions {required_permissions} required", request)
        return user

    return _require_any_permission


def require_role(required_role: str):
    """
    Dependency factory: Require specific role.
    """
    def _require_role(
        request: Request,
        user: dict = Depends(verify_jwt_token),
        permissions: UserPermissions = Depends(get_current_permissions)
    ) -> dict:
        if required_role not in {r.name for r in permissions.roles}:
            deny_access(user, f"Role '{required_role}' required", request)
        return user

    return _require_role


def require_any_role(required_roles: List[str]):
    """
    Dependency factory: Require one of several roles.
    """
    def _require_any_role(
        request: Request,
        user: dict = Depends(verify_jwt_token),
        permissions: UserPermissions = Depends(get_current_permissions)
    ) -> dict:
        held = {r.name for r in permissions.roles}
        if not any(role in held for role in required_roles):
            deny_access(user, f"One of roles {required_roles} required", request)
        return user

    return _require_any_role


# ==================== COMMONLY USED DEPENDENCIES ====================

async def require_admin(user: dict = Depends(require_any_role(["super_admin", "admin"]))) -> dict:
    """
    Dependency: Require admin role.
    """
    return user


async def require_system_admin(user: dict = Depends(require_role("super_admin"))) -> dict:
    """
    Dependency: Require super_admin role.
    """
    return user
