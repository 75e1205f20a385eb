"""
Client-side permission cache.

Holds the signed-in user's resolved permissions and answers authorization
queries synchronously, without a round trip per check. State lives in an
immutable snapshot that is swapped in one assignment, so a reader always
sees either the old permission set or the new one, never a mix.
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from loguru import logger
from pydantic import ValidationError

from rbac.conditions import RequestContext, evaluate_conditions
from rbac.config import rbac_config
from rbac.identifiers import is_granted, resource_action
from rbac.schemas import RoleResponse, UserPermissions
from rbac.utils import conditions_hash, utcnow

SYSTEM_ADMIN_ROLES = ("super_admin", "system_admin")
ADMIN_ROLES = ("admin",)


@dataclass(frozen=True)
class PermissionSnapshot:
    """One resolved permission set plus its per-check memo"""
    user_permissions: UserPermissions
    effective: FrozenSet[str]
    role_keys: FrozenSet[str]
    cache_expiry: datetime
    memo: Dict[Tuple[str, str], bool] = field(default_factory=dict, compare=False)

    @classmethod
    def build(cls, user_permissions: UserPermissions, cache_expiry: datetime) -> "PermissionSnapshot":
        keys = set()
        for role in user_permissions.roles:
            keys.add(role.name)
            keys.add(role.id)
        return cls(
            user_permissions=user_permissions,
            effective=frozenset(user_permissions.effective_permissions),
            role_keys=frozenset(keys),
            cache_expiry=cache_expiry,
        )


class PermissionStore:
    """
    Permission cache owned by one portal session.

    Args:
        ttl_seconds: Freshness window of a snapshot (default PERMISSION_CACHE_TTL_SECONDS)
        clock: Returns naive UTC now
        context: Request attributes used for conditional checks
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        context: Optional[RequestContext] = None
    ):
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else rbac_config.cache_ttl_seconds)
        self.clock = clock
        self.context = context
        self._lock = threading.Lock()
        self._snapshot: Optional[PermissionSnapshot] = None

    # ==================== STATE ====================

    def set_user_permissions(self, user_permissions: UserPermissions, cache_expiry: Optional[datetime] = None):
        """Replace the snapshot; expiry resets to now + TTL and the memo starts empty"""
        expiry = cache_expiry or (self.clock() + self.ttl)
        snapshot = PermissionSnapshot.build(user_permissions, expiry)
        with self._lock:
            self._snapshot = snapshot
        logger.debug(
            f"[STORE] Loaded {len(snapshot.effective)} permissions for {user_permissions.user_id} "
            f"until {expiry.isoformat()}"
        )

    def clear_user_permissions(self):
        """Drop everything (logout)"""
        with self._lock:
            self._snapshot = None
        logger.debug("[STORE] Cleared permissions")

    def set_context(self, context: Optional[RequestContext]):
        self.context = context
        snapshot = self._snapshot
        if snapshot is not None:
            snapshot.memo.clear()

    def snapshot(self) -> Optional[PermissionSnapshot]:
        return self._snapshot

    @property
    def user_permissions(self) -> Optional[UserPermissions]:
        snapshot = self._snapshot
        return snapshot.user_permissions if snapshot else None

    @property
    def user_roles(self) -> List[RoleResponse]:
        snapshot = self._snapshot
        return list(snapshot.user_permissions.roles) if snapshot else []

    @property
    def effective_permissions(self) -> FrozenSet[str]:
        snapshot = self._snapshot
        return snapshot.effective if snapshot else frozenset()

    @property
    def cache_expiry(self) -> Optional[datetime]:
        snapshot = self._snapshot
        return snapshot.cache_expiry if snapshot else None

    def is_loaded(self) -> bool:
        return self._snapshot is not None

    def is_expired(self) -> bool:
        """True when nothing is loaded or the snapshot is past its expiry"""
        snapshot = self._snapshot
        return snapshot is None or self.clock() >= snapshot.cache_expiry

    # ==================== QUERIES ====================

    def has_permission(self, name: str, conditions: Any = None) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return False

        now = self.clock()
        fresh = now < snapshot.cache_expiry
        key = (name, conditions_hash(conditions))

        if fresh and key in snapshot.memo:
            return snapshot.memo[key]

        result = is_granted(snapshot.effective, name)
        if result and conditions:
            context = (self.context or RequestContext(user_id=snapshot.user_permissions.user_id)).at(now)
            result = evaluate_conditions(conditions, context)

        # Stale snapshots still answer, but only fresh results are memoized
        if fresh:
            snapshot.memo[key] = result
        return result

    def has_any_permission(self, names: Iterable[str]) -> bool:
        return any(self.has_permission(name) for name in names)

    def has_all_permissions(self, names: Iterable[str]) -> bool:
        return all(self.has_permission(name) for name in names)

    def has_role(self, role_name_or_id: str) -> bool:
        snapshot = self._snapshot
        return snapshot is not None and role_name_or_id in snapshot.role_keys

    def has_any_role(self, names: Iterable[str]) -> bool:
        return any(self.has_role(name) for name in names)

    def can_access_resource(self, resource: str, action: str) -> bool:
        return self.has_permission(resource_action(resource, action))

    def is_system_admin(self) -> bool:
        return "system:admin" in self.effective_permissions or self.has_any_role(SYSTEM_ADMIN_ROLES)

    def is_admin(self) -> bool:
        return self.is_system_admin() or self.has_any_role(ADMIN_ROLES)

    def get_highest_role_level(self) -> int:
        return max((role.level for role in self.user_roles), default=0)

    # ==================== PERSISTENCE ====================

    def save(self, path: Union[str, Path]) -> bool:
        """Write the current snapshot to disk (removes the file when nothing is loaded)"""
        path = Path(path)
        snapshot = self._snapshot

        if snapshot is None:
            path.unlink(missing_ok=True)
            return False

        payload = {
            "user_permissions": snapshot.user_permissions.model_dump(mode="json"),
            "cache_expiry": snapshot.cache_expiry.isoformat(),
        }
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload))
        tmp.replace(path)
        logger.debug(f"[STORE] Persisted snapshot to {path}")
        return True

    def load(self, path: Union[str, Path], user_id: Optional[str] = None) -> bool:
        """
        Load a persisted snapshot as provisional state.

        Only applied when it belongs to ``user_id`` (if given) and has not expired;
        it keeps its persisted expiry so the next access revalidates on time.
        """
        path = Path(path)
        try:
            payload = json.loads(path.read_text())
            user_permissions = UserPermissions.model_validate(payload["user_permissions"])
            cache_expiry = datetime.fromisoformat(payload["cache_expiry"])
        except FileNotFoundError:
            return False
        except (OSError, KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(f"[STORE] Ignoring unreadable persisted snapshot {path}: {e}")
            return False

        if user_id is not None and user_permissions.user_id != user_id:
            logger.debug("[STORE] Persisted snapshot belongs to another user, ignoring")
            return False
        if self.clock() >= cache_expiry:
            logger.debug("[STORE] Persisted snapshot expired, ignoring")
            return False

        self.set_user_permissions(user_permissions, cache_expiry=cache_expiry)
        return True
