"""
Effective-permission resolver.

Given a user id, flattens every active, unexpired role assignment into the
set of permission identifiers the user currently holds:

    assignments -> (active, not expired, conditions hold) -> roles (active)
        -> permission ids -> Permission rows (active, conditions hold)
        -> effective_permissions (deduplicated, first-seen order)

Backing store failures surface as ResolutionUnavailable so callers can tell
them apart from "this user has no permissions".
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.cache_manager import InMemoryCacheManager, cache_manager
from auth.models import User
from rbac.conditions import RequestContext, evaluate_conditions, failing_conditions
from rbac.config import rbac_config
from rbac.errors import NotFoundError, ResolutionUnavailable
from rbac.identifiers import GLOBAL_WILDCARDS, grant_reason
from rbac.repository import AssignmentRepository, PermissionRepository
from rbac.schemas import (
    PermissionCheckResponse, PermissionResponse, PermissionSummary,
    RoleResponse, UserPermissions
)
from rbac.utils import conditions_hash, dedupe, utcnow

ADMIN_PERMISSIONS = ("*", "system:admin")


def context_key(context: Optional[RequestContext]) -> str:
    """Cache key part for the request attributes conditions depend on"""
    if context is None:
        return "-"
    return conditions_hash({
        "department": context.department,
        "ip_address": context.ip_address,
        "location": context.location,
        "semester": context.semester,
    })


class PermissionResolver:
    """Computes UserPermissions projections and answers server-side checks"""

    def __init__(
        self,
        cache: Optional[InMemoryCacheManager] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.cache = cache if cache is not None else cache_manager
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else rbac_config.cache_ttl_seconds)
        self.clock = clock

    # ==================== RESOLUTION ====================

    def resolve_permissions(
        self,
        db: Session,
        user_id: str,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None
    ) -> UserPermissions:
        """
        Resolve a user's permissions from the backing store (no caching).

        Args:
            db: Database session
            user_id: Account to resolve
            context: Request attributes for condition evaluation
            now: Evaluation time (defaults to the resolver clock)

        Returns:
            UserPermissions with cache_expiry = now + TTL

        Raises:
            NotFoundError: unknown user
            ResolutionUnavailable: backing store failure
        """
        snapshot, _ = self._resolve(db, user_id, context, now)
        return snapshot

    def get_permissions(
        self,
        db: Session,
        user_id: str,
        context: Optional[RequestContext] = None,
        use_cache: bool = True
    ) -> UserPermissions:
        """Cache-through resolution used by request handling"""
        key = context_key(context)
        if use_cache:
            cached = self.cache.get_cached_permissions(user_id, key)
            if cached is not None:
                logger.debug(f"[RESOLVE] Cache hit for {user_id}")
                return cached
            logger.debug(f"[RESOLVE] Cache miss for {user_id}")

        snapshot, earliest_expiry = self._resolve(db, user_id, context, None)
        self.cache.cache_user_permissions(snapshot, earliest_expiry, key)
        return snapshot

    def _resolve(
        self,
        db: Session,
        user_id: str,
        context: Optional[RequestContext],
        now: Optional[datetime]
    ) -> Tuple[UserPermissions, Optional[datetime]]:
        now = now or self.clock()

        try:
            user = db.query(User).filter(User.user_id == user_id).first()
            if user is None:
                raise NotFoundError(f"User {user_id} not found", {"user_id": user_id})

            ctx = self._build_context(user, context, now)

            if not user.is_active:
                logger.info(f"[RESOLVE] User {user_id} is inactive, resolving to no permissions")
                return self._build(user_id, [], [], [], now), None

            assignments = AssignmentRepository.list_for_user(db, user_id)

            roles = []
            granted_names: List[str] = []
            not_contributed: Dict[str, List[str]] = defaultdict(list)
            earliest_expiry = None

            for assignment in assignments:
                if not assignment.is_current(now):
                    logger.debug(f"[RESOLVE] Skipping expired assignment {assignment.id}")
                    continue

                role = assignment.role
                if role is None or not role.is_active:
                    logger.debug(f"[RESOLVE] Skipping inactive role on assignment {assignment.id}")
                    continue

                role_permissions = dedupe(role.permissions or [])

                if not evaluate_conditions(assignment.conditions, ctx):
                    logger.debug(
                        f"[RESOLVE] Assignment {assignment.id} ({role.name}) conditions not met: "
                        f"{failing_conditions(assignment.conditions, ctx)}"
                    )
                    for name in role_permissions:
                        not_contributed[name].append(role.name)
                    continue

                if assignment.expires_at is not None:
                    if earliest_expiry is None or assignment.expires_at < earliest_expiry:
                        earliest_expiry = assignment.expires_at

                roles.append(role)
                granted_names.extend(role_permissions)

            granted_names = dedupe(granted_names)
            rows = PermissionRepository.get_many_by_name(db, granted_names)

            permissions = []
            for name in granted_names:
                permission = rows.get(name)
                if permission is None:
                    logger.warning(f"[RESOLVE] Role references unknown permission '{name}', skipping")
                    continue
                if not permission.is_active:
                    logger.debug(f"[RESOLVE] Skipping inactive permission {name}")
                    continue
                if not evaluate_conditions(permission.conditions, ctx):
                    logger.debug(f"[RESOLVE] Permission {name} conditions not met")
                    continue
                permissions.append(permission)

            self._log_overlaps(user_id, granted_names, not_contributed)

        except SQLAlchemyError as e:
            logger.error(f"[RESOLVE] Backing store unavailable while resolving {user_id}: {e}")
            raise ResolutionUnavailable("Permission store unavailable", {"user_id": user_id}) from e

        snapshot = self._build(user_id, roles, permissions, [p.name for p in permissions], now)
        logger.info(
            f"[RESOLVE] Resolved {len(snapshot.effective_permissions)} permissions "
            f"from {len(roles)} roles for {user_id}"
        )
        return snapshot, earliest_expiry

    def _build_context(self, user: User, context: Optional[RequestContext], now: datetime) -> RequestContext:
        if context is None:
            return RequestContext(user_id=user.user_id, department=user.department, now=now)
        if context.department is None and user.department is not None:
            context = RequestContext(
                user_id=context.user_id or user.user_id,
                department=user.department,
                ip_address=context.ip_address,
                location=context.location,
                semester=context.semester,
                now=now,
            )
        return context.at(now)

    def _log_overlaps(self, user_id: str, granted_names: List[str], not_contributed: Dict[str, List[str]]):
        """
        An assignment whose conditions fail only stops contributing; it never
        takes away what another assignment grants.
        """
        for name in granted_names:
            if name in not_contributed:
                logger.debug(
                    f"[RESOLVE] {name} for {user_id} granted by another assignment "
                    f"(conditions unmet on {', '.join(not_contributed[name])})"
                )

    def _build(self, user_id: str, roles, permissions, names: List[str], now: datetime) -> UserPermissions:
        return UserPermissions(
            user_id=user_id,
            roles=[RoleResponse.model_validate(r) for r in roles],
            permissions=[PermissionResponse.model_validate(p) for p in permissions],
            effective_permissions=names,
            last_updated=now,
            cache_expiry=now + self.ttl,
        )

    # ==================== CHECKS ====================

    def check_permission(
        self,
        db: Session,
        user_id: str,
        permission: str,
        context: Optional[RequestContext] = None,
        conditions: Any = None
    ) -> PermissionCheckResponse:
        """
        Check one permission and explain the decision.

        Reasons: wildcard, direct, resource_wildcard, conditions_not_met, not_granted
        """
        snapshot = self.get_permissions(db, user_id, context)
        reason = grant_reason(set(snapshot.effective_permissions), permission)

        if reason is not None and conditions:
            user = db.query(User).filter(User.user_id == user_id).first()
            ctx = self._build_context(user, context, self.clock())
            if not evaluate_conditions(conditions, ctx):
                reason = "conditions_not_met"

        has_permission = reason not in (None, "conditions_not_met")
        return PermissionCheckResponse(
            has_permission=has_permission,
            reason=reason or "not_granted",
            conditions=conditions,
        )

    def permission_summary(
        self,
        db: Session,
        user_id: str,
        context: Optional[RequestContext] = None
    ) -> PermissionSummary:
        """Counts and groupings for profile/admin screens"""
        snapshot = self.get_permissions(db, user_id, context)

        by_category: Dict[str, List[str]] = defaultdict(list)
        for permission in snapshot.permissions:
            by_category[permission.category].append(permission.name)

        effective = set(snapshot.effective_permissions)
        return PermissionSummary(
            user_id=user_id,
            total_roles=len(snapshot.roles),
            total_permissions=len(snapshot.effective_permissions),
            highest_role_level=max((r.level for r in snapshot.roles), default=0),
            is_admin=any(p in effective for p in ADMIN_PERMISSIONS + GLOBAL_WILDCARDS),
            permissions_by_category=dict(by_category),
            role_names=[r.name for r in snapshot.roles],
            last_updated=snapshot.last_updated,
        )

    # ==================== INVALIDATION ====================

    def invalidate_user(self, user_id: str):
        self.cache.invalidate_user_cache(user_id)

    def invalidate_all(self):
        self.cache.invalidate_all()


# Global instance
permission_resolver = PermissionResolver()
