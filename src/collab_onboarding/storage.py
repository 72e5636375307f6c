"""
Local durable storage.

Key/value string store used for the session cache, the onboarding state
cache, the offline queue, retry counters and migration markers. The JSON
file backend survives process restarts; the in-memory backend is for tests
and ephemeral runs.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


# =============================================================================
# Storage Keys (persisted schema - do not rename)
# =============================================================================

STATE_KEY = "onboarding_state"
OFFLINE_QUEUE_KEY = "onboarding_recovery_data"
ERROR_LOG_KEY = "onboarding_error_log"
MIGRATION_MARKER_KEY = "migration_retry_marker"
RETRY_COUNT_PREFIX = "retry_count_"
SESSION_KEY = "onboarding_session"
LOCAL_IDENTITY_KEY = "onboarding_local_identity"
ANALYTICS_KEY = "onboarding_analytics"
REFERENCE_CACHE_KEYS = {
    "interests": "available_interests",
    "skills": "available_skills",
}


def retry_count_key(operation: str) -> str:
    return f"{RETRY_COUNT_PREFIX}{operation}"


class LocalStorage(Protocol):
    """Local durable storage boundary."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def list_keys(self) -> list[str]: ...


class InMemoryStorage:
    """Dict-backed storage. Nothing survives the process."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def list_keys(self) -> list[str]:
        return list(self._data.keys())


class JsonFileStorage:
    """
    Single-file JSON storage.

    The whole map is rewritten on every mutation through a temp file and
    os.replace, so a crash mid-write leaves the previous file intact.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()
        self._data: dict[str, str] = self._load()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable storage file {self.path}, starting empty: {e}")
            return {}
        if not isinstance(raw, dict):
            logger.warning(f"Storage file {self.path} is not a JSON object, starting empty")
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".storage-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def list_keys(self) -> list[str]:
        return list(self._data.keys())


# =============================================================================
# JSON Helpers
# =============================================================================


def read_json(storage: LocalStorage, key: str, default: Any = None) -> Any:
    """Read and decode a JSON value. Corrupt values are logged and ignored."""
    raw = storage.get(key)
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Corrupt JSON under storage key '{key}', ignoring")
        return default


def write_json(storage: LocalStorage, key: str, value: Any) -> None:
    storage.set(key, json.dumps(value))
