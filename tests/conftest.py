"""
Pytest configuration and fixtures for Collab Onboarding tests.
"""

import os
import uuid
from unittest.mock import MagicMock

import pytest

# Keep a developer .env out of the tests
os.environ["APP_ENV"] = "development"

from collab_onboarding.config import OnboardingSettings
from collab_onboarding.container import build_container
from collab_onboarding.errors import MigrationError
from collab_onboarding.storage import InMemoryStorage


class FakeBackend:
    """
    In-memory RemoteBackend.

    Failures are injected per operation: `save_error` fails every save,
    `save_errors` fails the next N saves in order.
    """

    def __init__(self):
        self.remote_session: dict | None = None
        self.saved: dict[tuple[str, str], dict] = {}
        self.save_calls: list[tuple[str, str, dict]] = []
        self.save_error: BaseException | None = None
        self.save_errors: list[BaseException] = []
        self.migrations: list[dict] = []
        self.migration_error: BaseException | None = None
        self.verify_error: BaseException | None = None
        self.session_error: BaseException | None = None
        self.reference: dict[str, list[dict]] = {
            "interests": [
                {"id": "0b6f2c3e-4d5a-4b6c-8d7e-9f0a1b2c3d4e", "name": "Climate Change"},
                {"id": "1c7a3d4f-5e6b-4c7d-9e8f-0a1b2c3d4e5f", "name": "Education"},
            ],
            "skills": [
                {"id": "2d8b4e5a-6f7c-4d8e-af9a-1b2c3d4e5f60", "name": "Software Development"},
            ],
        }
        self.reference_error: BaseException | None = None
        self.reference_calls = 0
        self.remote_states: dict[str, dict] = {}
        self.state_error: BaseException | None = None
        self.state_saves: list[tuple[str, dict]] = []

    async def get_current_session(self) -> dict | None:
        if self.session_error:
            raise self.session_error
        return dict(self.remote_session) if self.remote_session else None

    async def verify_identity(self, token: str) -> dict:
        if self.verify_error:
            raise self.verify_error
        identity_id = self.remote_session["identity_id"] if self.remote_session else "remote-user"
        return {"identity_id": identity_id, "token": token}

    async def migrate_identity(self, seed: dict) -> dict:
        self.migrations.append(seed)
        if self.migration_error:
            raise self.migration_error
        new_id = str(uuid.uuid4())
        self.remote_session = {"identity_id": new_id, "token": f"token-{new_id}"}
        return {"id": new_id, "token": f"token-{new_id}"}

    async def save_step(self, identity_id: str, step_id: str, payload: dict) -> None:
        self.save_calls.append((identity_id, step_id, payload))
        if self.save_errors:
            raise self.save_errors.pop(0)
        if self.save_error:
            raise self.save_error
        self.saved[(identity_id, step_id)] = payload

    async def fetch_reference_data(self, kind: str) -> list[dict]:
        self.reference_calls += 1
        if self.reference_error:
            raise self.reference_error
        return list(self.reference.get(kind, []))

    async def fetch_onboarding_state(self, identity_id: str) -> dict | None:
        return self.remote_states.get(identity_id)

    async def save_onboarding_state(self, identity_id: str, state: dict) -> None:
        if self.state_error:
            raise self.state_error
        self.state_saves.append((identity_id, state))
        self.remote_states[identity_id] = state


@pytest.fixture
def mock_supabase():
    """Mock Supabase client for unit tests."""
    mock_client = MagicMock()

    # Mock table operations
    mock_table = MagicMock()
    mock_table.select.return_value = mock_table
    mock_table.upsert.return_value = mock_table
    mock_table.update.return_value = mock_table
    mock_table.eq.return_value = mock_table
    mock_table.order.return_value = mock_table
    mock_table.execute.return_value = MagicMock(data=[])

    mock_client.table.return_value = mock_table

    return mock_client


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def remote_backend(backend):
    """Backend that already has a signed-in account."""
    backend.remote_session = {"identity_id": "user-123", "token": "token-abc"}
    return backend


@pytest.fixture
def test_settings(tmp_path):
    return OnboardingSettings(
        _env_file=None,
        storage_path=tmp_path / "storage.json",
        network_timeout_seconds=0.5,
        retry_base_delay_seconds=1.0,
        retry_backoff_multiplier=2.0,
        retry_max_delay_seconds=10.0,
    )


@pytest.fixture
def sleeps():
    """Delays requested by the recovery engine (no real sleeping)."""
    return []


@pytest.fixture
def container(test_settings, backend, storage, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return build_container(test_settings, backend=backend, storage=storage, sleep=fake_sleep)


@pytest.fixture
def migration_failure():
    return MigrationError("user creation failed")
