"""
Remote persistence boundary.

The core only talks to the backend through RemoteBackend. SupabaseBackend
is the production implementation; any backend satisfying the protocol is
interchangeable. Every call goes through TimeoutBackend so a hung request
surfaces as a network-classified RemoteTimeoutError instead of blocking the
step forever.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from supabase import Client, create_client

from .errors import BackendNotConfiguredError, MigrationError, RemoteTimeoutError, SessionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

REFERENCE_TABLES = {
    "interests": "interests",
    "skills": "skills",
}


class RemoteBackend(Protocol):
    """Remote persistence/service boundary consumed by the core."""

    async def get_current_session(self) -> dict | None:
        """Existing backend session as {"identity_id", "token"}, or None."""
        ...

    async def verify_identity(self, token: str) -> dict:
        """Validate a token. Returns {"identity_id", "token"} (token may be refreshed)."""
        ...

    async def migrate_identity(self, seed: dict) -> dict:
        """Promote a local identity. Returns {"id", "token"}."""
        ...

    async def save_step(self, identity_id: str, step_id: str, payload: dict) -> None: ...

    async def fetch_reference_data(self, kind: str) -> list[dict]: ...

    async def fetch_onboarding_state(self, identity_id: str) -> dict | None: ...

    async def save_onboarding_state(self, identity_id: str, state: dict) -> None:
        """Persist the serialised OnboardingState read back by fetch_onboarding_state."""
        ...


class TimeoutBackend:
    """Wraps a RemoteBackend so every call is bounded by `timeout` seconds."""

    def __init__(self, backend: RemoteBackend, timeout: float):
        self.inner = backend
        self.timeout = timeout

    async def _bounded(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Remote call '{operation}' timed out after {self.timeout}s")
            raise RemoteTimeoutError(
                f"Network timeout after {self.timeout}s during {operation}"
            ) from None

    async def get_current_session(self) -> dict | None:
        return await self._bounded("get_current_session", self.inner.get_current_session)

    async def verify_identity(self, token: str) -> dict:
        return await self._bounded("verify_identity", lambda: self.inner.verify_identity(token))

    async def migrate_identity(self, seed: dict) -> dict:
        return await self._bounded("migrate_identity", lambda: self.inner.migrate_identity(seed))

    async def save_step(self, identity_id: str, step_id: str, payload: dict) -> None:
        return await self._bounded(
            f"save_step:{step_id}",
            lambda: self.inner.save_step(identity_id, step_id, payload),
        )

    async def fetch_reference_data(self, kind: str) -> list[dict]:
        return await self._bounded(
            f"fetch_reference_data:{kind}",
            lambda: self.inner.fetch_reference_data(kind),
        )

    async def fetch_onboarding_state(self, identity_id: str) -> dict | None:
        return await self._bounded(
            "fetch_onboarding_state",
            lambda: self.inner.fetch_onboarding_state(identity_id),
        )

    async def save_onboarding_state(self, identity_id: str, state: dict) -> None:
        return await self._bounded(
            "save_onboarding_state",
            lambda: self.inner.save_onboarding_state(identity_id, state),
        )


# =============================================================================
# Supabase
# =============================================================================


class SupabaseBackend:
    """
    Supabase implementation of the remote boundary.

    supabase-py is synchronous, so calls run in a worker thread to keep the
    event loop free while a request is in flight.
    """

    def __init__(self, url: str | None = None, key: str | None = None, client: Client | None = None):
        self._url = url
        self._key = key
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self._url or not self._key:
                raise BackendNotConfiguredError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
            self._client = create_client(self._url, self._key)
        return self._client

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)

    async def get_current_session(self) -> dict | None:
        session = await self._run(self.client.auth.get_session)
        if not session or not session.access_token:
            return None
        return {"identity_id": session.user.id, "token": session.access_token}

    async def verify_identity(self, token: str) -> dict:
        user_response = await self._run(self.client.auth.get_user, token)
        if user_response and user_response.user:
            return {"identity_id": user_response.user.id, "token": token}

        # Expired access token: try the refresh token held by the client
        refreshed = await self._run(self.client.auth.refresh_session)
        if not refreshed or not refreshed.session:
            raise SessionError("Session invalid: token rejected and refresh failed")
        return {
            "identity_id": refreshed.session.user.id,
            "token": refreshed.session.access_token,
        }

    async def migrate_identity(self, seed: dict) -> dict:
        credentials = {
            "options": {
                "data": {
                    "first_name": seed.get("firstName"),
                    "last_name": seed.get("lastName"),
                    "local_identity_id": seed.get("localIdentityId"),
                }
            }
        }
        response = await self._run(self.client.auth.sign_in_anonymously, credentials)
        if not response or not response.user or not response.session:
            raise MigrationError("Migration failed: user creation returned no session")
        return {"id": response.user.id, "token": response.session.access_token}

    def _save_step_sync(self, identity_id: str, step_id: str, payload: dict) -> None:
        now = datetime.now(timezone.utc).isoformat()
        client = self.client

        if step_id == "profile":
            profile = {
                "id": identity_id,
                "first_name": payload.get("firstName"),
                "last_name": payload.get("lastName"),
                "updated_at": now,
            }
            for src, dest in (("location", "location"), ("jobTitle", "job_title"), ("bio", "bio")):
                if payload.get(src):
                    profile[dest] = payload[src]
            client.table("profiles").upsert(profile).execute()

        client.table("onboarding_steps").upsert({
            "user_id": identity_id,
            "step_id": step_id,
            "data": payload,
            "updated_at": now,
        }).execute()

    async def save_step(self, identity_id: str, step_id: str, payload: dict) -> None:
        await self._run(self._save_step_sync, identity_id, step_id, payload)

    async def fetch_reference_data(self, kind: str) -> list[dict]:
        table = REFERENCE_TABLES.get(kind)
        if table is None:
            return []
        result = await self._run(
            lambda: self.client.table(table).select("*").order("name").execute()
        )
        return result.data or []

    async def fetch_onboarding_state(self, identity_id: str) -> dict | None:
        result = await self._run(
            lambda: self.client.table("onboarding_sessions")
            .select("state")
            .eq("user_id", identity_id)
            .execute()
        )
        if result.data:
            return result.data[0].get("state")
        return None

    def _save_state_sync(self, identity_id: str, state: dict) -> None:
        now = datetime.now(timezone.utc).isoformat()
        client = self.client
        client.table("onboarding_sessions").upsert({
            "user_id": identity_id,
            "state": state,
            "updated_at": now,
        }).execute()
        # Progress columns on the profile row, read by the rest of the app
        client.table("profiles").update({
            "onboarding_step": state.get("current_step_id"),
            "onboarding_completed": bool(state.get("is_complete")),
            "updated_at": now,
        }).eq("id", identity_id).execute()

    async def save_onboarding_state(self, identity_id: str, state: dict) -> None:
        await self._run(self._save_state_sync, identity_id, state)
