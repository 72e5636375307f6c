"""
Session Store.

Owns the active identity (remote-backed or local-only) and the cached
OnboardingState. Every state write is mirrored to local storage so the flow
survives restarts even when the remote write never lands.
"""

import logging
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum

from .backend import RemoteBackend
from .state import OnboardingState, utc_now_iso
from .steps import StepId
from .storage import (
    LocalStorage,
    LOCAL_IDENTITY_KEY,
    SESSION_KEY,
    STATE_KEY,
    read_json,
    write_json,
)

logger = logging.getLogger(__name__)


class IdentityKind(str, Enum):
    """Where the identity lives."""
    LOCAL = "local"    # device-only guest identity, not yet on the backend
    REMOTE = "remote"  # backend-verified account


@dataclass
class Session:
    identity_id: str
    credential_token: str | None
    kind: IdentityKind
    requires_migration: bool = False
    status: str = "active"
    created_at: str = field(default_factory=utc_now_iso)

    @property
    def is_local_only(self) -> bool:
        return self.kind is IdentityKind.LOCAL

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        data = dict(data)
        data["kind"] = IdentityKind(data.get("kind", IdentityKind.LOCAL.value))
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


class SessionStore:
    """Identity/session record plus the onboarding state cache."""

    def __init__(self, storage: LocalStorage, backend: RemoteBackend, first_step: str = StepId.PROFILE.value):
        self.storage = storage
        self.backend = backend
        self.first_step = first_step
        self._session: Session | None = None
        self._state: OnboardingState | None = None

    @property
    def session(self) -> Session | None:
        return self._session

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> bool:
        """
        Establish a session: remote first, then the cached identity.

        Returns False only when neither source yields a usable session.
        """
        session = None
        try:
            remote = await self.backend.get_current_session()
            if remote:
                session = Session(
                    identity_id=remote["identity_id"],
                    credential_token=remote["token"],
                    kind=IdentityKind.REMOTE,
                )
        except Exception as e:
            logger.warning(f"Remote session unavailable, trying cached identity: {e}")

        if session is None:
            session = self._load_cached_session()

        if session is None:
            logger.warning("No remote session and no cached identity")
            return False

        self._session = session
        self._cache_session()
        await self._load_state()
        logger.info(f"Session ready ({session.kind.value}) for {session.identity_id}")
        return True

    def start_local_session(self) -> Session:
        """Create a guest identity that will be migrated to the backend later."""
        identity_id = str(uuid.uuid4())
        write_json(self.storage, LOCAL_IDENTITY_KEY, {
            "identity_id": identity_id,
            "status": "active",
            "created_at": utc_now_iso(),
        })
        self._session = Session(
            identity_id=identity_id,
            credential_token=None,
            kind=IdentityKind.LOCAL,
            requires_migration=True,
        )
        self._cache_session()
        self._state = OnboardingState(identity_id=identity_id, current_step_id=self.first_step)
        self._write_state()
        logger.info(f"Started local-only session {identity_id}")
        return self._session

    async def verify(self) -> bool:
        """
        Check the session is still usable. Never raises.

        Local identities are checked against the cached identity marker;
        remote ones are re-validated and may get a refreshed token.
        """
        session = self._session
        if session is None:
            return False

        if session.is_local_only:
            marker = read_json(self.storage, LOCAL_IDENTITY_KEY)
            return (
                isinstance(marker, dict)
                and marker.get("identity_id") == session.identity_id
                and marker.get("status") == "active"
            )

        if not session.credential_token:
            return False
        try:
            result = await self.backend.verify_identity(session.credential_token)
        except Exception as e:
            logger.warning(f"Session verification failed: {e}")
            return False

        new_token = result.get("token")
        if new_token and new_token != session.credential_token:
            logger.info("Credential token refreshed")
            session.credential_token = new_token
            self._cache_session()
        return True

    async def migrate(self, seed: dict) -> Session:
        """
        Promote the local identity to a backend identity.

        Raises whatever the backend raises; the caller decides how to recover.
        """
        session = self._session
        if session is None or not session.is_local_only:
            raise ValueError("Only a local-only session can be migrated")

        result = await self.backend.migrate_identity(
            {**seed, "localIdentityId": session.identity_id}
        )

        write_json(self.storage, LOCAL_IDENTITY_KEY, {
            "identity_id": session.identity_id,
            "status": "migrated",
            "migrated_to": result["id"],
            "migrated_at": utc_now_iso(),
        })
        self._session = Session(
            identity_id=result["id"],
            credential_token=result["token"],
            kind=IdentityKind.REMOTE,
            requires_migration=False,
        )
        self._cache_session()

        state = self.get_state()
        state.identity_id = result["id"]
        self._write_state()
        logger.info(f"Migrated local identity {session.identity_id} -> {result['id']}")
        return self._session

    def clear(self) -> None:
        """Sign out: forget the session and the cached state."""
        self._session = None
        self._state = None
        self.storage.remove(SESSION_KEY)
        self.storage.remove(STATE_KEY)
        self.storage.remove(LOCAL_IDENTITY_KEY)

    # -------------------------------------------------------------------------
    # Onboarding State
    # -------------------------------------------------------------------------

    def get_state(self) -> OnboardingState:
        if self._state is None:
            self._state = self._default_state()
        return self._state

    def set_state(self, partial: dict | None = None, **changes) -> OnboardingState:
        """Apply a partial update and mirror the result to storage."""
        state = self.get_state()
        for key, value in {**(partial or {}), **changes}.items():
            if not hasattr(state, key):
                raise AttributeError(f"OnboardingState has no field '{key}'")
            setattr(state, key, value)
        self._write_state()
        return state

    def persist_state(self) -> None:
        """Mirror in-place mutations of the state to storage."""
        self._write_state()

    def reset_state(self) -> OnboardingState:
        self._state = self._default_state()
        self._write_state()
        return self._state

    async def refresh_state(self) -> OnboardingState:
        """
        Best-effort re-read of the remote state.

        The remote copy only wins when it is newer than the cache; steps
        still waiting for sync keep their local payload.
        """
        session = self._session
        if session is None or session.is_local_only:
            return self.get_state()
        try:
            remote = await self.backend.fetch_onboarding_state(session.identity_id)
        except Exception as e:
            logger.warning(f"Remote state refresh failed, keeping cache: {e}")
            return self.get_state()
        if not remote:
            return self.get_state()

        local = self.get_state()
        fetched = OnboardingState.from_dict(remote)
        if fetched.updated_at <= local.updated_at:
            return local

        merged = self._merge_remote(local, fetched)
        merged.identity_id = session.identity_id
        self._state = merged
        self._write_state()
        return merged

    async def push_state(self) -> bool:
        """
        Best-effort write of the state to the backend.

        Local identities have nothing to write to. Failures are logged; the
        local copy stays authoritative until the next push.
        """
        session = self._session
        if session is None or session.is_local_only:
            return False
        try:
            await self.backend.save_onboarding_state(session.identity_id, self.get_state().to_dict())
        except Exception as e:
            logger.warning(f"Failed to save onboarding state remotely: {e}")
            return False
        return True

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _merge_remote(local: OnboardingState, fetched: OnboardingState) -> OnboardingState:
        """Newer remote state, keeping steps still waiting for sync and local completions."""
        for step_id in local.unsynced_step_ids:
            if step_id in local.per_step_payload:
                fetched.per_step_payload[step_id] = local.per_step_payload[step_id]
        fetched.unsynced_step_ids = list(local.unsynced_step_ids)
        for step_id in local.completed_step_ids:
            fetched.mark_completed(step_id)
        return fetched

    def _default_state(self) -> OnboardingState:
        identity_id = self._session.identity_id if self._session else ""
        return OnboardingState(identity_id=identity_id, current_step_id=self.first_step)

    def _write_state(self) -> None:
        state = self.get_state()
        state.updated_at = utc_now_iso()
        write_json(self.storage, STATE_KEY, state.to_dict())

    def _cache_session(self) -> None:
        if self._session is not None:
            write_json(self.storage, SESSION_KEY, self._session.to_dict())

    def _load_cached_session(self) -> Session | None:
        cached = read_json(self.storage, SESSION_KEY)
        if not isinstance(cached, dict):
            return None
        try:
            session = Session.from_dict(cached)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable cached session: {e}")
            return None

        if session.is_local_only:
            marker = read_json(self.storage, LOCAL_IDENTITY_KEY)
            if not isinstance(marker, dict) or marker.get("identity_id") != session.identity_id:
                logger.warning("Cached local session has no matching identity marker")
                return None
            if marker.get("status") != "active":
                logger.warning(f"Cached local identity is {marker.get('status')}, not active")
                return None
        return session

    async def _load_state(self) -> None:
        session = self._session
        cached_raw = read_json(self.storage, STATE_KEY)
        cached = None
        if isinstance(cached_raw, dict):
            try:
                cached = OnboardingState.from_dict(cached_raw)
            except (TypeError, ValueError) as e:
                logger.warning(f"Discarding unreadable cached state: {e}")

        if cached is not None and cached.identity_id and cached.identity_id != session.identity_id:
            logger.info("Cached state belongs to another identity, ignoring it")
            cached = None

        remote = None
        if not session.is_local_only:
            try:
                remote_raw = await self.backend.fetch_onboarding_state(session.identity_id)
                if remote_raw:
                    remote = OnboardingState.from_dict(remote_raw)
            except Exception as e:
                logger.warning(f"Failed to load remote onboarding state, using cache: {e}")

        if remote is not None and cached is None:
            state = remote
        elif remote is not None and remote.updated_at > cached.updated_at:
            state = self._merge_remote(cached, remote)
        elif cached is not None:
            state = cached
        else:
            state = self._default_state()

        state.identity_id = session.identity_id
        self._state = state
        self._write_state()
