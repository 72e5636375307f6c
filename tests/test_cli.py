"""Tests for the typer CLI."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from collab_onboarding.errors import NetworkError
from collab_onboarding.main import app

runner = CliRunner()

PROFILE = json.dumps({"firstName": "Ada", "lastName": "Lovelace"})


@pytest.fixture
def cli_container(container, remote_backend):
    with patch("collab_onboarding.main.build_container", return_value=container):
        yield container


def test_status(cli_container):
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0, result.output
    assert "profile" in result.output
    assert "user-123" in result.output


def test_step_success(cli_container):
    result = runner.invoke(app, ["step", "profile", PROFILE])
    assert result.exit_code == 0, result.output
    assert "Saved profile" in result.output
    assert "/onboarding/interests" in result.output


def test_step_validation_failure(cli_container):
    result = runner.invoke(app, ["step", "profile", '{"firstName": "Ada"}'])
    assert result.exit_code == 1
    assert "Last name is required" in result.output


def test_step_bad_json(cli_container):
    result = runner.invoke(app, ["step", "profile", "{nope"])
    assert result.exit_code == 2
    assert "Invalid JSON" in result.output


def test_offline_step_then_queue_and_sync(cli_container):
    result = runner.invoke(app, ["step", "profile", PROFILE, "--offline"])
    assert result.exit_code == 0, result.output
    assert "queued for sync" in result.output

    result = runner.invoke(app, ["queue"])
    assert "pending" in result.output

    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 0, result.output
    assert "Synced 1/1" in result.output


def test_sync_failure_exit_code(cli_container, remote_backend):
    remote_backend.save_error = NetworkError("offline")
    runner.invoke(app, ["step", "profile", PROFILE])
    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 1
    assert "Synced 0/1" in result.output


def test_options(cli_container):
    result = runner.invoke(app, ["options", "interests"])
    assert result.exit_code == 0
    assert "Climate Change" in result.output

    result = runner.invoke(app, ["options", "profile"])
    assert "No options" in result.output


def test_errors(cli_container, remote_backend):
    remote_backend.save_error = NetworkError("offline")
    runner.invoke(app, ["step", "profile", PROFILE])
    result = runner.invoke(app, ["errors"])
    assert result.exit_code == 0
    assert "Total errors: 1" in result.output
    assert "network" in result.output


def test_reset(cli_container):
    runner.invoke(app, ["step", "profile", PROFILE])
    result = runner.invoke(app, ["reset", "--yes"])
    assert result.exit_code == 0
    assert "back to profile" in result.output
    assert cli_container.session_store.get_state().completed_step_ids == []


def test_version():
    result = runner.invoke(app, ["version"])
    assert "1.0.0" in result.output
