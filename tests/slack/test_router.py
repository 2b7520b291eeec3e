"""
Tests for the EventRouter.
"""
import pytest

from teamcache.slack.errors import BadResponseError
from teamcache.slack.router import EventRouter


@pytest.fixture
def router(store):
    return EventRouter(store)


@pytest.mark.asyncio
async def test_message_edit_emits_old_and_new(populated, router, recorder):
    """Test that an edit is reported with both versions of the message."""
    await router.dispatch(
        "message",
        {
            "subtype": "message_changed",
            "channel": "C1",
            "message": {"user": "U1", "text": "new text", "ts": "1.0"},
            "previous_message": {"user": "U1", "text": "old text", "ts": "1.0"},
        },
        "T1",
    )

    old, new = recorder.of("messageChanged")[0]
    assert old.text == "old text"
    assert new.text == "new text"
    assert old.ts == new.ts == "1.0"
    assert new.author.name == "alice"
    assert new.channel.name == "general"


@pytest.mark.asyncio
async def test_plain_message(populated, router, recorder):
    await router.dispatch("message", {"channel": "C1", "user": "U2", "text": "hello", "ts": "4.0"}, "T1")

    (message,) = recorder.of("message")[0]
    assert message.text == "hello"
    assert message.author.name == "bob"
    assert message.partial is False


@pytest.mark.asyncio
async def test_me_message(populated, router, recorder):
    await router.dispatch(
        "message", {"subtype": "me_message", "channel": "C1", "user": "U2", "text": "waves", "ts": "4.0"}, "T1"
    )

    (message,) = recorder.of("message")[0]
    assert message.me_message is True


@pytest.mark.asyncio
@pytest.mark.parametrize("subtype", ["channel_join", "group_join", "channel_name", "group_name", "message_replied"])
async def test_filtered_subtypes_are_ignored(populated, router, recorder, mock_client, subtype):
    await router.dispatch("message", {"subtype": subtype, "channel": "C1", "user": "U1", "ts": "1.0"}, "T1")

    assert recorder.events == []
    assert mock_client.mock_calls == []


@pytest.mark.asyncio
async def test_message_deleted(populated, router, recorder):
    await router.dispatch(
        "message",
        {
            "subtype": "message_deleted",
            "channel": "C1",
            "deleted_ts": "1.0",
            "previous_message": {"user": "U1", "text": "bye", "ts": "1.0"},
        },
        "T1",
    )

    (message,) = recorder.of("messageDeleted")[0]
    assert message.ts == "1.0"
    assert message.text == "bye"
    assert message.author.name == "alice"


@pytest.mark.asyncio
async def test_unresolvable_message_is_dropped(populated, router, recorder, mock_client):
    """Test that a message in a channel that cannot be fetched is dropped quietly."""
    mock_client.conversations_info.side_effect = BadResponseError("conversations_info", "channel")

    await router.dispatch("message", {"channel": "C404", "user": "U1", "text": "?", "ts": "1.0"}, "T1")

    assert recorder.events == []


@pytest.mark.asyncio
async def test_reactions(populated, router, recorder):
    event = {
        "user": "U2",
        "reaction": "thumbsup",
        "item_user": "U1",
        "item": {"type": "message", "channel": "C1", "ts": "1.0"},
        "event_ts": "2.0",
    }

    await router.dispatch("reaction_added", event, "T1")
    await router.dispatch("reaction_removed", event, "T1")

    assert recorder.names() == ["reactionAdded", "reactionRemoved"]
    (reaction,) = recorder.of("reactionAdded")[0]
    assert reaction.message.author.name == "alice"
    assert reaction.user.name == "bob"


@pytest.mark.asyncio
async def test_membership_events(populated, router, recorder):
    channel = populated.channels["C1"]

    await router.dispatch("member_joined_channel", {"user": "U1", "channel": "C1"}, "T1")
    assert "U1" in channel.member_ids
    await router.dispatch("member_left_channel", {"user": "U1", "channel": "C1"}, "T1")
    assert "U1" not in channel.member_ids

    assert recorder.names() == ["memberJoinedChannel", "memberLeftChannel"]


@pytest.mark.asyncio
async def test_membership_for_unknown_channel_is_ignored(populated, router, recorder):
    await router.dispatch("member_joined_channel", {"user": "U1", "channel": "C404"}, "T1")

    assert recorder.events == []


@pytest.mark.asyncio
async def test_channel_events_are_stamped_with_team(team, router, store, recorder):
    """Test that channel events take the team from the event envelope."""
    await router.dispatch("channel_created", {"channel": {"id": "C9", "name": "new", "is_channel": True}}, "T1")
    await router.dispatch("channel_rename", {"channel": {"id": "C9", "name": "renamed"}}, "T1")

    channel = store.get_channel("C9", "T1")
    assert channel.name == "renamed"
    assert channel.type == "channel"
    assert recorder.names() == ["addChannel", "changeChannel"]


@pytest.mark.asyncio
async def test_im_created(populated, router, store):
    await router.dispatch("im_created", {"user": "U1", "channel": {"id": "D1", "is_im": True, "user": "U1"}}, "T1")

    channel = store.get_channel("D1", "T1")
    assert channel.type == "im"
    assert channel.private is True
    assert set(channel.members) == {"U1"}


@pytest.mark.asyncio
async def test_user_and_bot_events(team, router, store, recorder):
    await router.dispatch(
        "team_join", {"user": {"id": "U3", "name": "dan", "profile": {"real_name": "Dan", "image_24": "d24"}}}, "T1"
    )
    await router.dispatch("user_change", {"user": {"id": "U3", "name": "daniel"}}, "T1")
    await router.dispatch("bot_added", {"bot": {"id": "B1", "name": "ci", "icons": {"image_36": "ci36"}}}, "T1")

    user = store.get_user("U3", "T1")
    assert user.name == "daniel"
    assert user.real_name == "Dan"
    assert store.get_bot("B1", "T1").icon_url == "ci36"
    assert recorder.names() == ["addUser", "changeUser", "addBot"]


@pytest.mark.asyncio
async def test_team_rename(team, router, recorder):
    await router.dispatch("team_rename", {"name": "Acme Inc"}, "T1")

    assert team.name == "Acme Inc"
    assert team.domain == "acme"
    assert recorder.names() == ["changeTeam"]


@pytest.mark.asyncio
async def test_team_profile_change_refetches(team, router, mock_client, recorder):
    await router.dispatch("team_profile_change", {"profile": {"fields": []}}, "T1")

    mock_client.team_info.assert_awaited_once_with("T1")
    assert team.name == "Team T1"
    assert recorder.names() == ["changeTeam"]


@pytest.mark.asyncio
async def test_app_uninstalled_removes_team(team, router, store):
    await router.dispatch("app_uninstalled", {}, "T1")

    assert store.get_team("T1") is None


@pytest.mark.asyncio
async def test_connection_lifecycle(router, recorder):
    await router.dispatch("hello", {})
    await router.dispatch("goodbye", {})

    assert recorder.names() == ["connected", "disconnected"]


@pytest.mark.asyncio
async def test_unknown_event_type_is_ignored(router, recorder):
    await router.dispatch("dnd_updated", {"dnd_status": {}}, "T1")

    assert recorder.events == []


@pytest.mark.asyncio
async def test_envelope_for_other_app_is_ignored(populated, store, recorder):
    """Test that push envelopes are filtered by app id."""
    router = EventRouter(store, app_id="A1")
    event = {"type": "message", "channel": "C1", "user": "U1", "text": "hi", "ts": "1.0"}

    await router.handle_envelope({"team_id": "T1", "api_app_id": "A2", "event": event})
    assert recorder.events == []

    await router.handle_envelope({"team_id": "T1", "api_app_id": "A1", "event": event})
    assert recorder.names() == ["message"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event_type, data",
    [
        ("team_rename", {"name": "Nameless"}),
        ("team_profile_change", {}),
        ("app_uninstalled", {}),
        ("presence_change", {"presence": "away"}),
        ("user_typing", {"channel": "C1"}),
        ("member_joined_channel", {"channel": "C1"}),
        ("channel_created", {"channel": {"name": "no-id"}}),
    ],
)
async def test_events_missing_identity_are_dropped(populated, router, recorder, mock_client, event_type, data):
    """Test that events without a team, user or id are dropped instead of raising."""
    await router.dispatch(event_type, data)

    assert recorder.events == []
    mock_client.team_info.assert_not_awaited()
    mock_client.unregister_token.assert_not_called()


@pytest.mark.asyncio
async def test_presence_change(populated, router, recorder):
    await router.dispatch("presence_change", {"user": "U1", "presence": "away"}, "T1")

    user, presence = recorder.of("presenceChange")[0]
    assert user.name == "alice"
    assert presence == "away"
