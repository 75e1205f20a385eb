"""
Access guards built on the permission store.

PermissionGuard gates a piece of content, RouteGuard gates navigation. Both
only read the store: no I/O, no exceptions. Until permissions are resolved
the decision is CHECKING, never GRANTED or DENIED.
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, Callable, List, Optional, Sequence

from loguru import logger

from portal.store import PermissionStore

DEFAULT_DENIED_NOTICE = "You don't have permission to access this content."
LOGIN_PATH = "/auth/login"
UNAUTHORIZED_PATH = "/unauthorized"
SAFE_DEFAULT_PATH = "/dashboard"


class AccessDecision(str, Enum):
    CHECKING = "checking"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True)
class AccessRequirement:
    """
    What a guarded piece needs.

    Permissions, roles and resource:action are ANDed together; within
    permissions or roles any one suffices unless require_all is set.
    An empty requirement grants any loaded user.
    """
    permission: Optional[str] = None
    permissions: Sequence[str] = ()
    role: Optional[str] = None
    roles: Sequence[str] = ()
    resource: Optional[str] = None
    action: Optional[str] = None
    require_all: bool = False

    def permission_list(self) -> List[str]:
        return ([self.permission] if self.permission else []) + list(self.permissions)

    def role_list(self) -> List[str]:
        return ([self.role] if self.role else []) + list(self.roles)


def evaluate_access(store: Optional[PermissionStore], requirement: AccessRequirement) -> AccessDecision:
    if store is None or not store.is_loaded():
        return AccessDecision.CHECKING

    permissions = requirement.permission_list()
    if permissions:
        if requirement.require_all:
            allowed = store.has_all_permissions(permissions)
        else:
            allowed = store.has_any_permission(permissions)
        if not allowed:
            return AccessDecision.DENIED

    roles = requirement.role_list()
    if roles:
        if requirement.require_all:
            allowed = all(store.has_role(r) for r in roles)
        else:
            allowed = store.has_any_role(roles)
        if not allowed:
            return AccessDecision.DENIED

    if requirement.resource and requirement.action:
        if not store.can_access_resource(requirement.resource, requirement.action):
            return AccessDecision.DENIED

    return AccessDecision.GRANTED


# ==================== COMPONENT GUARD ====================

class PermissionGuard:
    """
    Conditionally renders content.

    Denied content renders as None, or, with show_fallback, as the supplied
    fallback (the default notice when none is given). Checking renders None.
    """

    def __init__(
        self,
        requirement: AccessRequirement,
        fallback: Any = None,
        show_fallback: bool = False
    ):
        self.requirement = requirement
        self.fallback = fallback
        self.show_fallback = show_fallback

    def decide(self, store: Optional[PermissionStore]) -> AccessDecision:
        return evaluate_access(store, self.requirement)

    def render(self, store: Optional[PermissionStore], content: Any) -> Any:
        decision = self.decide(store)
        if decision == AccessDecision.GRANTED:
            return content() if callable(content) else content
        if decision == AccessDecision.DENIED and self.show_fallback:
            return self.fallback if self.fallback is not None else DEFAULT_DENIED_NOTICE
        return None


def permission_guard(
    store_provider: Callable[[], Optional[PermissionStore]],
    fallback: Any = None,
    show_fallback: bool = False,
    **requirement
):
    """
    Decorate a render function so it only runs when access is granted.

    Example:
        @permission_guard(lambda: session.store, permission="grades:update")
        def grade_editor(): ...
    """
    guard = PermissionGuard(AccessRequirement(**requirement), fallback=fallback, show_fallback=show_fallback)

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            return guard.render(store_provider(), lambda: func(*args, **kwargs))
        wrapper.guard = guard
        return wrapper

    return decorator


def admin_only(fallback: Any = None, show_fallback: bool = False) -> PermissionGuard:
    return PermissionGuard(AccessRequirement(roles=("super_admin", "admin")), fallback, show_fallback)


def system_admin_only(fallback: Any = None, show_fallback: bool = False) -> PermissionGuard:
    return PermissionGuard(AccessRequirement(roles=("super_admin",)), fallback, show_fallback)


def staff_only(fallback: Any = None, show_fallback: bool = False) -> PermissionGuard:
    return PermissionGuard(AccessRequirement(roles=("super_admin", "admin", "staff")), fallback, show_fallback)


def academic_staff_only(fallback: Any = None, show_fallback: bool = False) -> PermissionGuard:
    return PermissionGuard(
        AccessRequirement(roles=("academic_coordinator", "registrar", "instructor")), fallback, show_fallback
    )


def finance_staff_only(fallback: Any = None, show_fallback: bool = False) -> PermissionGuard:
    return PermissionGuard(AccessRequirement(roles=("finance_officer",)), fallback, show_fallback)


# ==================== ROUTE GUARD ====================

class RouteState(str, Enum):
    CHECKING = "checking"
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZED = "authorized"
    UNAUTHORIZED = "unauthorized"


@dataclass(frozen=True)
class AccessDeniedPage:
    attempted_path: str
    back_to: str = SAFE_DEFAULT_PATH
    title: str = "Access Denied"
    message: str = DEFAULT_DENIED_NOTICE


@dataclass(frozen=True)
class RouteDecision:
    state: RouteState
    redirect_to: Optional[str] = None
    redirect_state: dict = field(default_factory=dict)
    page: Optional[AccessDeniedPage] = None

    @property
    def allowed(self) -> bool:
        return self.state == RouteState.AUTHORIZED


class RouteGuard:
    """Navigation gate: same access computation as PermissionGuard plus auth state"""

    def __init__(
        self,
        requirement: AccessRequirement = AccessRequirement(),
        redirect_to: str = UNAUTHORIZED_PATH,
        show_access_denied: bool = False
    ):
        self.requirement = requirement
        self.redirect_to = redirect_to
        self.show_access_denied = show_access_denied

    def check(self, session, location: str) -> RouteDecision:
        """
        Decide navigation to ``location``.

        Args:
            session: Anything with is_loading, is_authenticated and store (PortalSession)
            location: Requested path, returned to after login
        """
        if session.is_loading:
            return RouteDecision(RouteState.CHECKING)

        if not session.is_authenticated:
            return RouteDecision(
                RouteState.UNAUTHENTICATED,
                redirect_to=LOGIN_PATH,
                redirect_state={"from": location},
            )

        decision = evaluate_access(session.store, self.requirement)
        if decision == AccessDecision.CHECKING:
            return RouteDecision(RouteState.CHECKING)
        if decision == AccessDecision.GRANTED:
            return RouteDecision(RouteState.AUTHORIZED)

        logger.info(f"[GUARD] Navigation to {location} denied")
        if self.show_access_denied:
            return RouteDecision(RouteState.UNAUTHORIZED, page=AccessDeniedPage(attempted_path=location))
        return RouteDecision(RouteState.UNAUTHORIZED, redirect_to=self.redirect_to)


def admin_route() -> RouteGuard:
    return RouteGuard(AccessRequirement(roles=("super_admin", "admin")), show_access_denied=True)


def system_admin_route() -> RouteGuard:
    return RouteGuard(AccessRequirement(roles=("super_admin",)), show_access_denied=True)


def staff_route() -> RouteGuard:
    return RouteGuard(AccessRequirement(roles=("super_admin", "admin", "staff")), show_access_denied=True)


def student_route() -> RouteGuard:
    return RouteGuard(AccessRequirement(roles=("student",)), show_access_denied=True)
