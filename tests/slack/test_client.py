"""
Tests for the SlackClient class.
"""
from unittest.mock import MagicMock, patch

import pytest
from slack_sdk.errors import SlackApiError

from teamcache.config import Settings
from teamcache.slack.client import SlackClient
from teamcache.slack.errors import BadResponseError, TeamNotFoundError


@pytest.fixture
def settings():
    return Settings(_env_file=None, slack_api_token="", list_page_limit=50)


@pytest.fixture
def web_client_class():
    """Patch WebClient so every registered token gets a mock."""
    with patch("teamcache.slack.client.WebClient") as web_client_class:
        yield web_client_class


@pytest.fixture
def client(settings, web_client_class):
    client = SlackClient(settings=settings)
    client.register_token("T1", "xoxb-123")
    return client


@pytest.fixture
def web(client):
    return client.web("T1")


def test_token_registry(client, web_client_class):
    web_client_class.assert_called_once_with(token="xoxb-123")
    assert client.has_team("T1")
    assert client.is_bot_token("T1")
    assert not client.is_bot_token("T2")

    client.unregister_token("T1")

    assert not client.has_team("T1")
    with pytest.raises(TeamNotFoundError):
        client.web("T1")


def test_user_token_is_not_bot_token(client):
    client.register_token("T2", "xoxp-456")

    assert not client.is_bot_token("T2")


@pytest.mark.asyncio
async def test_team_info(client, web):
    web.team_info.return_value = {"ok": True, "team": {"id": "S1", "name": "Shared"}}

    team = await client.team_info("T1", team="S1")

    assert team == {"id": "S1", "name": "Shared"}
    web.team_info.assert_called_once_with(team="S1")


@pytest.mark.asyncio
async def test_team_info_defaults_to_own_team(client, web):
    web.team_info.return_value = {"ok": True, "team": {"id": "T1"}}

    await client.team_info("T1")

    web.team_info.assert_called_once_with(team="T1")


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [{"ok": False, "error": "nope"}, {"ok": True}, None])
async def test_bad_response(client, web, response):
    web.users_info.return_value = response

    with pytest.raises(BadResponseError) as exc_info:
        await client.users_info("T1", user="U1")

    assert exc_info.value.details == {"method": "users_info", "key": "user"}


@pytest.mark.asyncio
async def test_unknown_team_is_rejected(client):
    with pytest.raises(TeamNotFoundError):
        await client.users_info("T404", user="U1")


@pytest.mark.asyncio
async def test_conversations_list_pages(client, web):
    web.conversations_list.return_value = {
        "ok": True,
        "channels": [{"id": "C1"}],
        "response_metadata": {"next_cursor": "abc"},
    }

    channels, cursor = await client.conversations_list("T1", cursor="prev")

    assert channels == [{"id": "C1"}]
    assert cursor == "abc"
    web.conversations_list.assert_called_once_with(
        limit=50, types="public_channel,private_channel,mpim,im", cursor="prev"
    )


@pytest.mark.asyncio
async def test_last_page_has_no_cursor(client, web):
    web.users_list.return_value = {"ok": True, "members": [], "response_metadata": {"next_cursor": ""}}

    members, cursor = await client.users_list("T1")

    assert members == []
    assert cursor is None
    web.users_list.assert_called_once_with(limit=50)


@pytest.mark.asyncio
async def test_non_retryable_api_error_is_raised(client, web):
    web.conversations_info.side_effect = SlackApiError("failed", {"ok": False, "error": "channel_not_found"})

    with pytest.raises(SlackApiError):
        await client.conversations_info("T1", channel="C404")

    assert web.conversations_info.call_count == 1


@pytest.mark.asyncio
async def test_chat_methods_return_ts(client, web):
    web.chat_postMessage.return_value = {"ok": True, "ts": "1.0", "channel": "C1"}
    web.chat_update.return_value = {"ok": True, "ts": "1.0"}

    assert await client.chat_post_message("T1", channel="C1", text="hi") == "1.0"
    assert await client.chat_update("T1", channel="C1", ts="1.0", text="edited") == "1.0"
    web.chat_postMessage.assert_called_once_with(channel="C1", text="hi")


@pytest.mark.asyncio
async def test_conversations_open_returns_im(client, web):
    web.conversations_open.return_value = {"ok": True, "channel": {"id": "D1", "is_im": True}}

    channel = await client.conversations_open("T1", users="U1")

    assert channel["id"] == "D1"
    web.conversations_open.assert_called_once_with(users="U1", return_im=True)


@pytest.mark.asyncio
async def test_auth_test_uses_given_token(client, web_client_class):
    probe = MagicMock()
    probe.auth_test.return_value = {"ok": True, "team_id": "T9", "user_id": "U9", "team": "Nine"}
    web_client_class.return_value = probe

    auth = await client.auth_test("xoxp-999")

    web_client_class.assert_called_with(token="xoxp-999")
    assert auth["team_id"] == "T9"
    assert auth["user_id"] == "U9"


@pytest.mark.asyncio
async def test_auth_test_requires_token(client):
    with pytest.raises(ValueError):
        await client.auth_test()
