"""Tests for the local storage backends."""

import json

from collab_onboarding.storage import (
    InMemoryStorage,
    JsonFileStorage,
    read_json,
    retry_count_key,
    write_json,
)


class TestInMemoryStorage:

    def test_get_set_remove(self):
        storage = InMemoryStorage()
        assert storage.get("missing") is None

        storage.set("a", "1")
        assert storage.get("a") == "1"
        assert storage.list_keys() == ["a"]

        storage.remove("a")
        assert storage.get("a") is None
        storage.remove("a")  # removing twice is fine

    def test_initial_values(self):
        storage = InMemoryStorage({"k": "v"})
        assert storage.get("k") == "v"


class TestJsonFileStorage:

    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "nested" / "storage.json"
        storage = JsonFileStorage(path)
        storage.set("onboarding_state", '{"x": 1}')
        storage.set("retry_count_save_step:profile", "2")

        reopened = JsonFileStorage(path)
        assert reopened.get("onboarding_state") == '{"x": 1}'
        assert sorted(reopened.list_keys()) == ["onboarding_state", "retry_count_save_step:profile"]

    def test_remove_is_persisted(self, tmp_path):
        path = tmp_path / "storage.json"
        storage = JsonFileStorage(path)
        storage.set("a", "1")
        storage.remove("a")

        assert JsonFileStorage(path).get("a") is None

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "storage.json"
        path.write_text("{not json")

        storage = JsonFileStorage(path)
        assert storage.list_keys() == []
        storage.set("a", "1")
        assert json.loads(path.read_text()) == {"a": "1"}


class TestJsonHelpers:

    def test_round_trip_and_default(self):
        storage = InMemoryStorage()
        assert read_json(storage, "q", []) == []
        write_json(storage, "q", [{"stepId": "goals"}])
        assert read_json(storage, "q") == [{"stepId": "goals"}]

    def test_corrupt_value_returns_default(self):
        storage = InMemoryStorage({"q": "{broken"})
        assert read_json(storage, "q", "fallback") == "fallback"

    def test_retry_count_key(self):
        assert retry_count_key("save_step:goals") == "retry_count_save_step:goals"
