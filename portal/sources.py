"""
Where the portal gets resolved permissions from.

- HttpPermissionSource: calls GET /api/rbac/users/{user_id}/permissions with httpx
- LocalPermissionSource: runs the resolver in-process (workers, tests, CLI tools)

Both raise NotFoundError for an unknown (or no longer authorized) user and
ResolutionUnavailable when the backing service cannot answer.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional
import asyncio

import httpx
from loguru import logger

from auth.models import get_db_session
from rbac.conditions import RequestContext
from rbac.config import rbac_config
from rbac.errors import NotFoundError, ResolutionUnavailable
from rbac.resolver import PermissionResolver, permission_resolver
from rbac.schemas import UserPermissions


class PermissionSource(ABC):
    @abstractmethod
    async def fetch(self, user_id: str) -> UserPermissions:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpPermissionSource(PermissionSource):
    """Resolver over HTTP"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        self.base_url = (base_url or rbac_config.api_url).rstrip("/")
        self.token = token
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(timeout))

    def set_token(self, token: Optional[str]):
        self.token = token

    async def fetch(self, user_id: str) -> UserPermissions:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = await self.client.get(f"/api/rbac/users/{user_id}/permissions", headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"[SESSION] Permission request for {user_id} failed: {e}")
            raise ResolutionUnavailable(f"Permission service unreachable: {e}") from e

        if response.status_code in (401, 403, 404):
            raise NotFoundError(
                f"Permissions for {user_id} not available (HTTP {response.status_code})",
                {"status_code": response.status_code}
            )
        if response.status_code >= 400:
            logger.error(f"[SESSION] Permission service answered HTTP {response.status_code}")
            raise ResolutionUnavailable(
                f"Permission service error (HTTP {response.status_code})",
                {"status_code": response.status_code}
            )

        try:
            return UserPermissions.model_validate(response.json())
        except ValueError as e:
            raise ResolutionUnavailable(f"Malformed permission payload: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class LocalPermissionSource(PermissionSource):
    """Resolver in-process; the blocking database work runs in a thread"""

    def __init__(
        self,
        session_factory: Callable = get_db_session,
        resolver: PermissionResolver = permission_resolver,
        context: Optional[RequestContext] = None
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.context = context

    def _fetch_sync(self, user_id: str) -> UserPermissions:
        session = self.session_factory()
        try:
            return self.resolver.resolve_permissions(session, user_id, self.context)
        finally:
            session.close()

    async def fetch(self, user_id: str) -> UserPermissions:
        return await asyncio.to_thread(self._fetch_sync, user_id)
