"""Tests for SessionStore: identity lifecycle and state persistence."""

import asyncio

import pytest

from collab_onboarding.errors import NetworkError, SessionError
from collab_onboarding.session import IdentityKind, SessionStore
from collab_onboarding.state import OnboardingState
from collab_onboarding.storage import LOCAL_IDENTITY_KEY, STATE_KEY, InMemoryStorage, read_json


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


@pytest.fixture
def store(storage, backend):
    return SessionStore(storage, backend)


class TestInitialize:

    def test_remote_session(self, storage, remote_backend):
        store = SessionStore(storage, remote_backend)
        assert _run(store.initialize())
        assert store.session.kind is IdentityKind.REMOTE
        assert store.session.identity_id == "user-123"
        assert store.get_state().identity_id == "user-123"
        assert store.get_state().current_step_id == "profile"

    def test_no_session_anywhere(self, store):
        assert not _run(store.initialize())
        assert store.session is None

    def test_cached_local_identity_restored(self, storage, backend):
        first = SessionStore(storage, backend)
        local = first.start_local_session()

        second = SessionStore(storage, backend)
        assert _run(second.initialize())
        assert second.session.identity_id == local.identity_id
        assert second.session.is_local_only
        assert second.session.requires_migration

    def test_migrated_local_marker_is_not_reused(self, storage, backend):
        first = SessionStore(storage, backend)
        first.start_local_session()
        storage.set(LOCAL_IDENTITY_KEY, '{"identity_id": "other", "status": "migrated"}')

        second = SessionStore(storage, backend)
        assert not _run(second.initialize())

    def test_remote_unreachable_falls_back_to_cache(self, storage, remote_backend):
        first = SessionStore(storage, remote_backend)
        _run(first.initialize())
        first.set_state(current_step_id="goals")

        remote_backend.session_error = NetworkError("offline")
        second = SessionStore(storage, remote_backend)
        assert _run(second.initialize())
        assert second.session.kind is IdentityKind.REMOTE
        assert second.get_state().current_step_id == "goals"

    def test_newer_remote_state_wins(self, storage, remote_backend):
        remote_backend.remote_states["user-123"] = OnboardingState(
            identity_id="user-123",
            current_step_id="skills",
            completed_step_ids=["profile", "interests", "goals"],
            updated_at="2999-01-01T00:00:00+00:00",
        ).to_dict()
        store = SessionStore(storage, remote_backend)
        _run(store.initialize())
        assert store.get_state().current_step_id == "skills"

    def test_newer_remote_state_keeps_unsynced_payload(self, storage, remote_backend):
        first = SessionStore(storage, remote_backend)
        _run(first.initialize())
        state = first.get_state()
        state.per_step_payload["goals"] = {"goalType": "explore_ideas"}
        state.mark_unsynced("goals")
        state.mark_completed("profile")
        first.persist_state()

        remote_backend.remote_states["user-123"] = OnboardingState(
            identity_id="user-123",
            current_step_id="goals",
            completed_step_ids=["interests"],
            per_step_payload={"goals": {"goalType": "find_cofounder"}},
            updated_at="2999-01-01T00:00:00+00:00",
        ).to_dict()

        second = SessionStore(storage, remote_backend)
        _run(second.initialize())
        loaded = second.get_state()
        assert loaded.current_step_id == "goals"
        assert loaded.per_step_payload["goals"] == {"goalType": "explore_ideas"}
        assert loaded.unsynced_step_ids == ["goals"]
        assert sorted(loaded.completed_step_ids) == ["interests", "profile"]


class TestVerify:

    def test_local_identity_verifies_against_marker(self, store, storage):
        store.start_local_session()
        assert _run(store.verify())
        storage.remove(LOCAL_IDENTITY_KEY)
        assert not _run(store.verify())

    def test_remote_failure_never_raises(self, storage, remote_backend):
        store = SessionStore(storage, remote_backend)
        _run(store.initialize())
        remote_backend.verify_error = SessionError("JWT expired")
        assert _run(store.verify()) is False

    def test_no_session(self, store):
        assert _run(store.verify()) is False


class TestMigrate:

    def test_promotes_local_identity(self, store, backend, storage):
        local = store.start_local_session()
        store.set_state(per_step_payload={"profile": {"firstName": "Ada", "lastName": "Lovelace"}})

        session = _run(store.migrate({"firstName": "Ada", "lastName": "Lovelace"}))

        assert session.kind is IdentityKind.REMOTE
        assert not session.is_local_only
        assert not session.requires_migration
        assert backend.migrations[0]["localIdentityId"] == local.identity_id
        assert store.get_state().identity_id == session.identity_id
        assert store.get_state().per_step_payload["profile"]["firstName"] == "Ada"
        assert read_json(storage, LOCAL_IDENTITY_KEY)["status"] == "migrated"

    def test_failure_leaves_local_session(self, store, backend, migration_failure):
        store.start_local_session()
        backend.migration_error = migration_failure
        with pytest.raises(type(migration_failure)):
            _run(store.migrate({"firstName": "Ada", "lastName": "Lovelace"}))
        assert store.session.is_local_only
        assert store.session.requires_migration

    def test_remote_session_cannot_migrate(self, storage, remote_backend):
        store = SessionStore(storage, remote_backend)
        _run(store.initialize())
        with pytest.raises(ValueError):
            _run(store.migrate({}))


class TestState:

    def test_set_state_mirrors_to_storage(self, store, storage):
        store.start_local_session()
        store.set_state({"current_step_id": "interests"}, completed_step_ids=["profile"])

        cached = read_json(storage, STATE_KEY)
        assert cached["current_step_id"] == "interests"
        assert cached["completed_step_ids"] == ["profile"]

    def test_set_state_unknown_field(self, store):
        store.start_local_session()
        with pytest.raises(AttributeError):
            store.set_state(favourite_colour="blue")

    def test_reset_and_clear(self, store, storage):
        store.start_local_session()
        store.set_state(current_step_id="goals")
        assert store.reset_state().current_step_id == "profile"

        store.clear()
        assert store.session is None
        assert storage.get(STATE_KEY) is None

    def test_refresh_keeps_unsynced_local_payload(self, storage, remote_backend):
        store = SessionStore(storage, remote_backend)
        _run(store.initialize())
        state = store.get_state()
        state.per_step_payload["goals"] = {"goalType": "explore_ideas"}
        state.mark_unsynced("goals")
        state.mark_completed("profile")
        store.persist_state()

        remote_backend.remote_states["user-123"] = OnboardingState(
            identity_id="user-123",
            per_step_payload={"goals": {"goalType": "find_cofounder"}, "interests": {"interestIds": []}},
            updated_at="2999-01-01T00:00:00+00:00",
        ).to_dict()

        refreshed = _run(store.refresh_state())
        assert refreshed.per_step_payload["goals"] == {"goalType": "explore_ideas"}
        assert "interests" in refreshed.per_step_payload
        assert refreshed.completed_step_ids == ["profile"]
        assert refreshed.unsynced_step_ids == ["goals"]


class TestPushState:

    def test_remote_state_round_trip(self, storage, remote_backend):
        store = SessionStore(storage, remote_backend)
        _run(store.initialize())
        store.set_state(current_step_id="interests", completed_step_ids=["profile"])

        assert _run(store.push_state())
        assert remote_backend.remote_states["user-123"]["current_step_id"] == "interests"

        fresh = SessionStore(InMemoryStorage(), remote_backend)
        _run(fresh.initialize())
        assert fresh.get_state().completed_step_ids == ["profile"]

    def test_local_identity_not_pushed(self, store, backend):
        store.start_local_session()
        assert not _run(store.push_state())
        assert backend.state_saves == []

    def test_failure_is_logged_not_raised(self, storage, remote_backend):
        store = SessionStore(storage, remote_backend)
        _run(store.initialize())
        remote_backend.state_error = NetworkError("offline")
        assert not _run(store.push_state())
