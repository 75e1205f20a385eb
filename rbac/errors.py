"""
Error taxonomy for permission resolution and RBAC administration.

Every error carries the HTTP status the API layer answers with.
"""

from typing import Any, Dict, Optional


class RBACError(Exception):
    """Base class for RBAC errors"""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(RBACError):
    """Unknown user, role, permission or assignment"""
    status_code = 404


class ResolutionUnavailable(RBACError):
    """The permission/role backing store could not be reached"""
    status_code = 503


class StaleCacheError(RBACError):
    """A background refresh failed; the previous snapshot is still being served"""
    status_code = 503


class SystemRoleError(RBACError):
    """System roles are only changed by seed/migration code"""
    status_code = 403


class RoleInUseError(RBACError):
    status_code = 400


class PermissionInUseError(RBACError):
    status_code = 400


class ConflictError(RBACError):
    status_code = 409


class ValidationError(RBACError):
    status_code = 400
