"""
Shared fixtures for the Slack store, router and model tests.
"""
from unittest.mock import MagicMock

import pytest

from teamcache.config import Settings
from teamcache.slack.client import SlackClient
from teamcache.slack.emitter import Event
from teamcache.slack.models import Channel, Team, User
from teamcache.slack.store import EntityStore


class Recorder:
    """Collects every notification emitted, in order."""

    def __init__(self, emitter):
        self.events = []
        for event in Event:
            emitter.on(event, lambda *args, name=event.value: self.events.append((name, args)))

    def names(self):
        return [name for name, _ in self.events]

    def of(self, name):
        return [args for event, args in self.events if event == name]


@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return Settings(_env_file=None, slack_api_token="xoxp-test", auto_join_channels=False, app_id=None)


@pytest.fixture
def mock_client():
    """Create a mock SlackClient; its async methods are AsyncMocks."""
    client = MagicMock(spec=SlackClient)
    client.is_bot_token.return_value = False
    client.team_info.side_effect = lambda team_id, team=None: {
        "id": team or team_id,
        "name": f"Team {team or team_id}",
        "domain": (team or team_id).lower(),
    }
    client.conversations_list.return_value = ([], None)
    client.users_list.return_value = ([], None)
    client.conversations_members.return_value = ([], None)
    return client


@pytest.fixture
def store(mock_client, settings):
    return EntityStore(mock_client, settings=settings)


@pytest.fixture
def recorder(store):
    return Recorder(store.emitter)


@pytest.fixture
def team(store):
    """A loaded team T1, added without notifying."""
    team = Team.from_fragment(store, {"id": "T1", "name": "Acme", "domain": "acme"})
    team.partial = False
    store.teams[team.id] = team
    return team


@pytest.fixture
def populated(store, team):
    """T1 with users U1 and U2 and the public channel C1."""
    for data in (
        {"id": "U1", "name": "alice", "profile": {"real_name": "Alice A", "display_name": "ali", "image_72": "a72"}},
        {"id": "U2", "name": "bob", "profile": {"real_name": "Bob B", "display_name": "", "image_72": "b72"}},
    ):
        user = User.from_fragment(store, dict(data, team_id="T1"))
        team.users[user.id] = user
    channel = Channel.from_fragment(store, {"id": "C1", "team_id": "T1", "name": "general", "is_channel": True})
    team.channels[channel.id] = channel
    return team
