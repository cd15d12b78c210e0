"""Tests for taskrelay/app.py."""

from unittest.mock import AsyncMock

import pytest

from taskrelay.app import Relay
from taskrelay.config.settings import RelaySettings
from taskrelay.engine.plan_stream import PlanStreamController
from taskrelay.providers.github_rest import GitHubIssueTracker


@pytest.fixture
def settings(tmp_path) -> RelaySettings:
    return RelaySettings(
        tracker={"api_token": "tok", "read_attempts": 5},
        storage={"state_directory": str(tmp_path / "state")},
        portal={"base_url": "https://portal.example.com"},
        operator={"id": "ops", "role": "member", "project_ids": ["proj-1", "proj-2"]},
        polling={"interval_seconds": 2},
    )


def test_default_collaborators(settings):
    relay = Relay(settings)

    assert isinstance(relay.tracker, GitHubIssueTracker)
    assert relay.tracker.token == "tok"
    assert relay.dispatcher.portal_url == "https://portal.example.com/projects"
    assert relay.poller.interval == 2
    assert relay.state.state_dir == settings.state_dir


def test_operator(settings):
    actor = Relay(settings, tracker=AsyncMock()).operator()

    assert actor.id == "ops"
    assert actor.role == "member"
    assert actor.project_ids == frozenset({"proj-1", "proj-2"})


def test_stream_controller_is_fresh_per_call(settings):
    relay = Relay(settings, tracker=AsyncMock())

    first = relay.stream_controller()

    assert isinstance(first, PlanStreamController)
    assert relay.stream_controller() is not first


@pytest.mark.asyncio
async def test_close_releases_clients(settings, tracker):
    stream_client = AsyncMock()
    relay = Relay(settings, tracker=tracker, stream_client=stream_client)

    await relay.close()

    assert tracker.closed is True
    stream_client.close.assert_awaited_once()
