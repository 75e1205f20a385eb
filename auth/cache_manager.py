"""
In-memory cache for resolved permissions and revoked tokens.
Single-instance only; data is lost on restart. Every privileged request
re-checks against this cache, never against anything the client sends.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple
import threading

from loguru import logger

from rbac.schemas import UserPermissions
from rbac.utils import utcnow


class InMemoryCacheManager:
    """In-memory cache manager using Python dicts"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        """Initialize in-memory storage"""
        self.clock = clock
        self.blacklist: Dict[str, datetime] = {}  # blacklist:token -> expiry time
        self.permissions_cache: Dict[str, Tuple[UserPermissions, datetime, str]] = {}  # permissions:user_id -> (snapshot, expiry, context_key)
        self.lock = threading.Lock()
        logger.info("✓ In-memory permission cache initialized")

    def _is_expired(self, expiry_time):
        """Check if timestamp has expired"""
        if expiry_time is None:
            return False
        return self.clock() > expiry_time

    def _cleanup_expired(self):
        """Clean up expired entries"""
        now = self.clock()
        self.blacklist = {k: v for k, v in self.blacklist.items() if v > now}
        self.permissions_cache = {k: v for k, v in self.permissions_cache.items() if v[1] > now}

    # ==================== TOKEN BLACKLIST ====================

    def blacklist_token(self, token: str, ttl: int = 3600):
        """Blacklist access token"""
        with self.lock:
            expiry = self.clock() + timedelta(seconds=ttl)
            self.blacklist[f"blacklist:{token}"] = expiry

    def is_token_blacklisted(self, token: str) -> bool:
        """Check if token is blacklisted"""
        with self.lock:
            key = f"blacklist:{token}"
            if key in self.blacklist:
                if not self._is_expired(self.blacklist[key]):
                    return True
                del self.blacklist[key]
            return False

    # ==================== PERMISSION CACHE ====================

    def cache_user_permissions(
        self,
        user_permissions: UserPermissions,
        earliest_assignment_expiry: Optional[datetime] = None,
        context_key: str = "-"
    ):
        """
        Cache a resolved snapshot.

        The entry expires at the snapshot's cache_expiry, or earlier when one of
        the assignments it was built from expires first. ``context_key`` identifies
        the request attributes conditions were evaluated against.
        """
        expiry = user_permissions.cache_expiry
        if earliest_assignment_expiry is not None and earliest_assignment_expiry < expiry:
            expiry = earliest_assignment_expiry

        with self.lock:
            self._cleanup_expired()
            self.permissions_cache[f"permissions:{user_permissions.user_id}"] = (user_permissions, expiry, context_key)
        logger.debug(f"[RESOLVE] Cached permissions for {user_permissions.user_id} until {expiry.isoformat()}")

    def get_cached_permissions(self, user_id: str, context_key: str = "-") -> Optional[UserPermissions]:
        """Get cached user permissions resolved for the same request attributes"""
        with self.lock:
            key = f"permissions:{user_id}"
            if key in self.permissions_cache:
                snapshot, expiry, cached_context = self.permissions_cache[key]
                if not self._is_expired(expiry):
                    return snapshot if cached_context == context_key else None
                del self.permissions_cache[key]
            return None

    def invalidate_user_cache(self, user_id: str):
        """Invalidate user permission/role cache"""
        with self.lock:
            perm_key = f"permissions:{user_id}"
            if perm_key in self.permissions_cache:
                del self.permissions_cache[perm_key]
                logger.debug(f"[RESOLVE] Invalidated cached permissions for {user_id}")

    def invalidate_all(self):
        """Drop every cached snapshot (role or permission definitions changed)"""
        with self.lock:
            count = len(self.permissions_cache)
            self.permissions_cache.clear()
        if count:
            logger.debug(f"[RESOLVE] Invalidated {count} cached permission snapshots")


# Global instance
cache_manager = InMemoryCacheManager()
