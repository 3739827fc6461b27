from __future__ import annotations

import logging
from typing import Protocol

import httpx

from tale_forge.backend.storage.memory import InMemoryStore
from tale_forge.common.config import Settings
from tale_forge.common.errors import UnauthorizedError
from tale_forge.common.models import AuthUser

logger = logging.getLogger(__name__)


class Identity(Protocol):
    async def validate(self, token: str) -> AuthUser: ...


class SupabaseIdentity:
    """Resolve a Supabase access token to its user via GoTrue."""

    def __init__(self, settings: Settings, *, timeout: float = 10.0):
        self.url = settings.supabase_url.rstrip("/")
        self.anon_key = settings.supabase_anon_key
        self.timeout = timeout

    async def validate(self, token: str) -> AuthUser:
        if not token:
            raise UnauthorizedError("Unauthorized")
        headers = {"apikey": self.anon_key, "Authorization": f"Bearer {token}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.url}/auth/v1/user", headers=headers)
        except httpx.TransportError as e:
            logger.warning("Auth service unreachable: %s", e)
            raise UnauthorizedError("Unauthorized") from e
        if resp.status_code != 200:
            raise UnauthorizedError("Unauthorized")
        data = resp.json() or {}
        if not data.get("id"):
            raise UnauthorizedError("Unauthorized")
        return AuthUser(id=str(data["id"]), email=data.get("email") or "")


class LocalIdentity:
    """Tokens registered on the in-memory store (local mode and tests)."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def validate(self, token: str) -> AuthUser:
        user = self.store.user_for_token(token) if token else None
        if user is None:
            raise UnauthorizedError("Unauthorized")
        return user
