"""
Portal session: owns the permission store for one signed-in user.

Created on login, cleared on logout. Runs the initial resolve (with the
account-role fallback when the resolver is unavailable), then re-resolves on a
fixed interval in the background until logout. Reading the store while the
snapshot is expired also schedules a refresh; after a failed refresh that
retry waits out one refresh interval.

A generation counter is bumped on every login/logout; results of fetches
started under an older generation are dropped, so a resolve that finishes
after logout can never repopulate the store.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

from loguru import logger

from portal.sources import PermissionSource
from portal.store import PermissionStore
from rbac.conditions import RequestContext
from rbac.config import rbac_config
from rbac.errors import NotFoundError, ResolutionUnavailable, StaleCacheError
from rbac.fallback import build_fallback_permissions
from rbac.schemas import UserPermissions
from rbac.utils import utcnow


@dataclass(frozen=True)
class PortalUser:
    """The signed-in account as the portal knows it"""
    user_id: str
    account_role: str = "student"
    email: Optional[str] = None
    department: Optional[str] = None
    location: Optional[str] = None
    semester: Optional[str] = None

    def request_context(self) -> RequestContext:
        return RequestContext(
            user_id=self.user_id,
            department=self.department,
            location=self.location,
            semester=self.semester,
        )


class PortalSession:
    """
    Lifecycle-scoped owner of a PermissionStore.

    Args:
        source: Where permissions are resolved from
        store: Store to manage (a new one by default)
        persist_path: Optional file for the provisional snapshot across restarts
        refresh_interval_seconds: Background refresh period (default PERMISSION_REFRESH_INTERVAL_SECONDS)
    """

    def __init__(
        self,
        source: PermissionSource,
        store: Optional[PermissionStore] = None,
        persist_path: Optional[Union[str, Path]] = None,
        refresh_interval_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.source = source
        self.clock = clock
        self._store = store or PermissionStore(clock=clock)
        self.persist_path = Path(persist_path) if persist_path else None
        self.refresh_interval = (
            refresh_interval_seconds if refresh_interval_seconds is not None
            else rbac_config.refresh_interval_seconds
        )

        self._user: Optional[PortalUser] = None
        self._generation = 0
        self._loading = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._pending_refresh: Optional[asyncio.Task] = None
        self._last_refresh_failure: Optional[datetime] = None

        self.last_refresh_error: Optional[StaleCacheError] = None
        self.using_fallback = False

    # ==================== STATE ====================

    @property
    def user(self) -> Optional[PortalUser]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def store(self) -> PermissionStore:
        """
        The permission store. Reading it while the snapshot is expired schedules
        a refresh; reads keep answering from the stale snapshot until it lands.
        A failed refresh holds off the next one for refresh_interval seconds.
        """
        if self._user is not None and not self._loading and self._store.is_loaded() and self._store.is_expired():
            if not self._failed_recently():
                self._schedule_refresh()
        return self._store

    # ==================== LOGIN / LOGOUT ====================

    async def login(self, user: PortalUser) -> Optional[UserPermissions]:
        """
        Sign in, load permissions and start the background refresh.

        A persisted snapshot for the same user that has not expired is reused.
        Otherwise the source is asked; ResolutionUnavailable falls back to the
        account-role permission set, NotFoundError signs the session out and
        propagates.

        Returns:
            The applied permissions, or None when a logout overtook the resolve
        """
        if self._user is not None:
            self.logout()

        self._generation += 1
        generation = self._generation
        self._user = user
        self._store.set_context(user.request_context())
        logger.info(f"[SESSION] Login {user.user_id}")

        if self.persist_path and self._store.load(self.persist_path, user_id=user.user_id):
            logger.info(f"[SESSION] Reusing persisted permissions for {user.user_id}")
            self.start_background_refresh()
            return self._store.user_permissions

        self._loading = True
        try:
            permissions = await self.source.fetch(user.user_id)
            fallback = False
        except NotFoundError:
            if generation == self._generation:
                logger.warning(f"[SESSION] Unknown user {user.user_id}, signing out")
                self.logout()
            raise
        except ResolutionUnavailable as e:
            if generation != self._generation:
                return None
            logger.warning(f"[SESSION] Resolver unavailable on login ({e.message}), applying fallback")
            permissions = build_fallback_permissions(user.user_id, user.account_role, now=self.clock())
            fallback = True
        finally:
            if generation == self._generation:
                self._loading = False

        if generation != self._generation:
            logger.info(f"[SESSION] Discarding permissions for {user.user_id} resolved after logout")
            return None

        self.using_fallback = fallback
        self._apply(permissions, persist=not fallback)
        self.start_background_refresh()
        return permissions

    def logout(self):
        """Clear permissions synchronously and stop all background work"""
        self._generation += 1
        self._store.clear_user_permissions()
        self._store.set_context(None)

        for task in (self._refresh_task, self._pending_refresh):
            if task is not None and not task.done():
                task.cancel()
        self._refresh_task = None
        self._pending_refresh = None

        if self.persist_path is not None:
            self.persist_path.unlink(missing_ok=True)

        user, self._user = self._user, None
        self._loading = False
        self.last_refresh_error = None
        self._last_refresh_failure = None
        self.using_fallback = False
        if user is not None:
            logger.info(f"[SESSION] Logout {user.user_id}")

    async def close(self):
        self.logout()
        await self.source.aclose()

    # ==================== REFRESH ====================

    async def refresh(self) -> Optional[UserPermissions]:
        """
        Re-resolve now. Errors propagate and the current snapshot stays in place.

        Returns:
            The new permissions, or None when signed out (or signed out meanwhile)
        """
        if self._user is None:
            return None

        generation = self._generation
        user_id = self._user.user_id
        permissions = await self.source.fetch(user_id)

        if generation != self._generation:
            logger.info(f"[SESSION] Discarding refresh for {user_id} finished after logout")
            return None

        self.using_fallback = False
        self._apply(permissions)
        logger.debug(f"[SESSION] Refreshed permissions for {user_id}")
        return permissions

    async def refresh_quietly(self) -> bool:
        """Background variant: failures are logged and recorded, the stale snapshot is kept"""
        try:
            await self.refresh()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_refresh_error = StaleCacheError(
                f"Background refresh failed, keeping previous permissions: {e}",
                {"cause": type(e).__name__}
            )
            self._last_refresh_failure = self.clock()
            logger.warning(f"[SESSION] {self.last_refresh_error.message}")
            return False

    def start_background_refresh(self) -> asyncio.Task:
        """Re-resolve every refresh_interval seconds until logout. Login starts it; calling again returns the running task."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return self._refresh_task
        self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop(self._generation))
        return self._refresh_task

    async def _refresh_loop(self, generation: int):
        while generation == self._generation:
            await asyncio.sleep(self.refresh_interval)
            if generation != self._generation:
                break
            await self.refresh_quietly()

    def _failed_recently(self) -> bool:
        if self._last_refresh_failure is None:
            return False
        return (self.clock() - self._last_refresh_failure).total_seconds() < self.refresh_interval

    def _schedule_refresh(self):
        if self._pending_refresh is not None and not self._pending_refresh.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("[SESSION] Snapshot expired but no event loop is running, refresh deferred")
            return
        logger.debug("[SESSION] Snapshot expired, scheduling refresh")
        self._pending_refresh = loop.create_task(self.refresh_quietly())

    def _apply(self, permissions: UserPermissions, persist: bool = True):
        self._store.set_user_permissions(permissions)
        self.last_refresh_error = None
        self._last_refresh_failure = None
        if persist and self.persist_path is not None:
            self._store.save(self.persist_path)
