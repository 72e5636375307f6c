"""Tests for FlowCoordinator: transitions, skips, completion, migration."""

import asyncio

import pytest

from collab_onboarding.coordinator import FlowCoordinator
from collab_onboarding.errors import MigrationError
from collab_onboarding.session import SessionStore
from collab_onboarding.steps import COMPLETED, StepCatalog, StepId


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


@pytest.fixture
def store(storage, backend):
    store = SessionStore(storage, backend)
    store.start_local_session()
    return store


@pytest.fixture
def coordinator(store):
    coordinator = FlowCoordinator(StepCatalog(), store)
    coordinator.initialize()
    return coordinator


def _set_goal(store, goal_type):
    store.get_state().per_step_payload["goals"] = {"goalType": goal_type}


class TestTransitions:

    def test_initial_state(self, coordinator):
        assert coordinator.current_step() == "profile"
        assert coordinator.can_execute("profile")
        assert not coordinator.can_execute("interests")

    def test_complete_step_advances(self, coordinator, store):
        assert coordinator.complete_step("profile") == "interests"
        assert store.get_state().completed_step_ids == ["profile"]
        assert coordinator.can_execute("interests")

    def test_goal_decides_variant(self, coordinator, store):
        coordinator.complete_step("profile")
        coordinator.complete_step("interests")
        _set_goal(store, "explore_ideas")
        assert coordinator.complete_step("goals") == "skills"
        assert not coordinator.can_execute("project_details")
        assert coordinator.can_execute("skills")

    def test_completion_requires_every_active_step(self, coordinator, store):
        for step in ("profile", "interests"):
            coordinator.complete_step(step)
        _set_goal(store, "find_cofounder")
        coordinator.complete_step("goals")
        assert not coordinator.is_flow_complete()

        # Jumping to the last step does not finish the flow
        assert coordinator.complete_step("skills") == "project_details"
        assert not store.get_state().is_complete

        assert coordinator.complete_step("project_details") == COMPLETED
        assert coordinator.is_flow_complete()
        assert store.get_state().is_complete

    def test_skip_is_not_completion(self, coordinator, store):
        coordinator.complete_step("profile")
        assert coordinator.skip_step("interests", "later") == "goals"
        state = store.get_state()
        assert "interests" not in state.completed_step_ids
        assert state.skipped_step_ids == ["interests"]
        assert state.skip_reasons == {"interests": "later"}
        assert coordinator.can_execute("goals")

    def test_previous_and_next(self, coordinator, store):
        _set_goal(store, "explore_ideas")
        assert coordinator.next_step("goals") == StepId.SKILLS
        assert coordinator.previous_step("skills") == StepId.GOALS

    def test_unknown_step(self, coordinator):
        assert not coordinator.can_execute("payment")
        with pytest.raises(KeyError):
            coordinator.complete_step("payment")

    def test_reset(self, coordinator, store):
        coordinator.complete_step("profile")
        assert coordinator.reset() == "profile"
        assert store.get_state().completed_step_ids == []


class TestInitializeRepairsPosition:

    def test_conditionally_skipped_current_step(self, store):
        state = store.get_state()
        state.completed_step_ids = ["profile", "interests", "goals"]
        state.per_step_payload["goals"] = {"goalType": "explore_ideas"}
        state.current_step_id = "project_details"

        assert FlowCoordinator(StepCatalog(), store).initialize() == "skills"

    def test_unknown_current_step(self, store):
        store.get_state().current_step_id = "payment"
        assert FlowCoordinator(StepCatalog(), store).initialize() == "profile"


class TestMigration:

    def test_needs_migration_for_local_identity(self, coordinator):
        assert coordinator.needs_migration()

    def test_migrates_exactly_once(self, coordinator, backend):
        seed = {"firstName": "Ada", "lastName": "Lovelace"}
        result = _run(coordinator.handle_migration(seed))
        assert result.success and result.attempted
        assert not coordinator.needs_migration()

        again = _run(coordinator.handle_migration(seed))
        assert again.success
        assert not again.attempted
        assert len(backend.migrations) == 1

    def test_failure_is_returned(self, coordinator, backend):
        backend.migration_error = ConnectionError("connection refused")
        result = _run(coordinator.handle_migration({"firstName": "Ada", "lastName": "Lovelace"}))

        assert not result.success
        assert isinstance(result.error, MigrationError)
        assert coordinator.needs_migration()
