"""
Step Executor.

Validates and persists the payload for a single step. Remote persistence
is attempted first; whatever happens remotely, the cleaned payload lands in
the cached OnboardingState so the user can keep moving. Also serves saved
step data and the reference option lists (interests, skills).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from .errors import SessionError, StepValidationError
from .forms import ValidationResult, validate_step
from .session import SessionStore
from .state import utc_now_iso
from .steps import StepCatalog, StepId, coerce_step_id
from .storage import REFERENCE_CACHE_KEYS, read_json, write_json

logger = logging.getLogger(__name__)


# =============================================================================
# Built-in Reference Data (offline fallback)
# =============================================================================

_REFERENCE_NAMESPACE = uuid.UUID("6f1c2a3e-8d4b-5c7a-9e0f-1a2b3c4d5e6f")

DEFAULT_INTEREST_NAMES = [
    "Art", "Artificial Intelligence & Machine Learning", "Biotechnology", "Business",
    "Books", "Climate Change", "Civic Engagement", "Dancing", "Data Science",
    "Education", "Entrepreneurship", "Fashion", "Fitness", "Food", "Gaming",
    "Health & Wellness", "Investing & Finance", "Marketing", "Movies", "Music",
    "Parenting", "Pets", "Product Design", "Reading", "Real Estate", "Robotics",
    "Science & Tech", "Social Impact", "Sports", "Travel", "Writing", "Other",
]

DEFAULT_SKILL_NAMES = [
    "Software Development", "Mobile Development", "UI/UX Design", "Product Management",
    "Data Science", "Marketing", "Sales", "Fundraising", "Finance", "Operations",
    "Legal", "Content Writing",
]


def _default_options(kind: str, names: list[str]) -> list[dict]:
    # uuid5 keeps fallback IDs stable across launches and valid for selection
    return [
        {"id": str(uuid.uuid5(_REFERENCE_NAMESPACE, f"{kind}:{name}")), "name": name}
        for name in names
    ]


DEFAULT_REFERENCE_OPTIONS = {
    "interests": _default_options("interests", DEFAULT_INTEREST_NAMES),
    "skills": _default_options("skills", DEFAULT_SKILL_NAMES),
}

REFERENCE_KINDS = {
    StepId.INTERESTS: "interests",
    StepId.SKILLS: "skills",
}


@dataclass
class StepSaveResult:
    step_id: str
    payload: dict
    pending_sync: bool = False
    error: BaseException | None = None
    warnings: list[str] = field(default_factory=list)
    # What the cache held before this save, for revert()
    previous_payload: dict | None = None
    previously_unsynced: bool = False


class StepExecutor:
    """Validation plus remote-then-local persistence for one step."""

    def __init__(self, session_store: SessionStore, catalog: StepCatalog, reference_cache_hours: int = 24):
        self.session_store = session_store
        self.catalog = catalog
        self.reference_cache_ttl = timedelta(hours=reference_cache_hours)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, step_id: "StepId | str", payload: dict) -> ValidationResult:
        return validate_step(step_id, payload)

    def _require_valid(self, step_id: "StepId | str", payload: dict) -> tuple[StepId, ValidationResult]:
        sid = coerce_step_id(step_id)
        if sid is None or self.catalog.get_step(sid) is None:
            raise StepValidationError([f"Unknown step: {step_id}"], step_id=str(step_id))
        result = self.validate(sid, payload)
        if not result.is_valid:
            raise StepValidationError(result.errors, step_id=sid.value)
        return sid, result

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def save_step(self, step_id: "StepId | str", payload: dict) -> StepSaveResult:
        """
        Validate then persist a step.

        Raises StepValidationError for bad payloads. Remote failures do not
        raise: the payload is kept locally and the result carries the error
        with pending_sync=True so the caller can hand it to recovery.
        """
        sid, validation = self._require_valid(step_id, payload)
        session = self.session_store.session
        if session is None:
            raise SessionError("No active session")

        cleaned = validation.cleaned
        state = self.session_store.get_state()
        previous_payload = state.per_step_payload.get(sid.value)
        previously_unsynced = sid.value in state.unsynced_step_ids
        error = None
        if session.is_local_only:
            logger.info(f"Local-only identity, keeping step '{sid.value}' on device")
        else:
            try:
                await self.session_store.backend.save_step(session.identity_id, sid.value, cleaned)
            except Exception as e:
                logger.warning(f"Remote save failed for step '{sid.value}', falling back to local: {e}")
                error = e

        synced = not session.is_local_only and error is None
        self._store_local(sid.value, cleaned, synced=synced)
        return StepSaveResult(
            step_id=sid.value,
            payload=cleaned,
            pending_sync=not synced,
            error=error,
            warnings=validation.warnings,
            previous_payload=previous_payload,
            previously_unsynced=previously_unsynced,
        )

    def revert(self, result: StepSaveResult) -> None:
        """Put back what the cache held before a save whose failure was not recovered."""
        state = self.session_store.get_state()
        if result.previous_payload is None:
            state.per_step_payload.pop(result.step_id, None)
        else:
            state.per_step_payload[result.step_id] = result.previous_payload
        if result.previously_unsynced:
            state.mark_unsynced(result.step_id)
        else:
            state.mark_synced(result.step_id)
        self.session_store.persist_state()
        logger.info(f"Reverted local copy of step '{result.step_id}'")

    def save_local(self, step_id: "StepId | str", payload: dict) -> StepSaveResult:
        """Validate and persist on the device only (offline mode)."""
        sid, validation = self._require_valid(step_id, payload)
        self._store_local(sid.value, validation.cleaned, synced=False)
        return StepSaveResult(
            step_id=sid.value,
            payload=validation.cleaned,
            pending_sync=True,
            warnings=validation.warnings,
        )

    async def push_remote(self, step_id: str, payload: dict) -> None:
        """Raw remote write used by retries and sync."""
        session = self.session_store.session
        if session is None or session.is_local_only:
            raise SessionError("Session has no backend identity to sync to")
        await self.session_store.backend.save_step(session.identity_id, step_id, payload)
        state = self.session_store.get_state()
        state.mark_synced(step_id)
        self.session_store.persist_state()

    async def flush_unsynced(self, push: Callable[[str, dict], Awaitable[Any]] | None = None) -> int:
        """
        Push steps that only exist locally. Returns how many landed.

        `push` replaces push_remote so callers can hook successful writes.
        """
        session = self.session_store.session
        if session is None or session.is_local_only:
            return 0
        push = push or self.push_remote
        state = self.session_store.get_state()
        pushed = 0
        for step_id in list(state.unsynced_step_ids):
            payload = state.per_step_payload.get(step_id)
            if payload is None:
                state.mark_synced(step_id)
                continue
            try:
                await push(step_id, payload)
                pushed += 1
            except Exception as e:
                logger.warning(f"Could not flush step '{step_id}': {e}")
        self.session_store.persist_state()
        return pushed

    def _store_local(self, step_id: str, payload: dict, synced: bool) -> None:
        state = self.session_store.get_state()
        state.per_step_payload[step_id] = payload
        if synced:
            state.mark_synced(step_id)
        else:
            state.mark_unsynced(step_id)
        self.session_store.persist_state()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_step_data(self, step_id: "StepId | str") -> dict | None:
        """Saved payload for a step: cache first, remote refresh if missing."""
        sid = coerce_step_id(step_id)
        if sid is None:
            return None
        payload = self.session_store.get_state().per_step_payload.get(sid.value)
        if payload is None:
            state = await self.session_store.refresh_state()
            payload = state.per_step_payload.get(sid.value)
        return dict(payload) if payload is not None else None

    async def get_reference_options(self, step_id: "StepId | str") -> list[dict]:
        """
        Selectable options for a step (interests, skills).

        Order of preference: fresh cache, remote catalog, stale cache,
        built-in defaults. Steps without reference data return [].
        """
        sid = coerce_step_id(step_id)
        kind = REFERENCE_KINDS.get(sid) if sid else None
        if kind is None:
            return []

        storage = self.session_store.storage
        cache_key = REFERENCE_CACHE_KEYS[kind]
        cached = read_json(storage, cache_key)
        cached_options = cached.get("options") if isinstance(cached, dict) else None

        if cached_options and self._is_fresh(cached.get("fetched_at")):
            return cached_options

        try:
            options = await self.session_store.backend.fetch_reference_data(kind)
        except Exception as e:
            logger.warning(f"Failed to load {kind} from backend: {e}")
            options = None

        if options:
            write_json(storage, cache_key, {"fetched_at": utc_now_iso(), "options": options})
            logger.info(f"Loaded {len(options)} {kind} from backend")
            return options

        if cached_options:
            logger.info(f"Using stale cached {kind}")
            return cached_options

        logger.info(f"Using fallback {kind} list")
        return list(DEFAULT_REFERENCE_OPTIONS[kind])

    def _is_fresh(self, fetched_at: str | None) -> bool:
        if not fetched_at:
            return False
        try:
            fetched = datetime.fromisoformat(fetched_at)
        except ValueError:
            return False
        return datetime.now(timezone.utc) - fetched < self.reference_cache_ttl
