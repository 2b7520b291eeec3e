"""
Routing of inbound Slack events into the entity store.

RTM and the Events API deliver the same event types; both report the team
out-of-band, so the router stamps ``team_id`` onto each fragment before
handing it to the store.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger
from slack_sdk.errors import SlackApiError

from teamcache.slack.emitter import Event
from teamcache.slack.errors import (
    BadResponseError,
    MalformedFragmentError,
    TeamNotFoundError,
    UnresolvedEntityError,
)
from teamcache.slack.models import Message
from teamcache.slack.store import EntityStore

Payload = Dict[str, Any]
Handler = Callable[[Payload, Optional[str]], Awaitable[None]]

# Subtypes that only echo membership/rename activity or thread bookkeeping
FILTERED_SUBTYPES = frozenset({"channel_join", "channel_name", "group_join", "group_name", "message_replied"})

CHANNEL_EVENTS = (
    "channel_created",
    "channel_joined",
    "channel_rename",
    "group_joined",
    "group_rename",
    "im_created",
    "mpim_joined",
)
USER_EVENTS = ("team_join", "user_change")
BOT_EVENTS = ("bot_added", "bot_changed")
TEAM_REFRESH_EVENTS = ("team_profile_change", "team_pref_change")


def _required_team(team_id: Optional[str]) -> str:
    if not team_id:
        raise UnresolvedEntityError("Event names no team")
    return team_id


def _required(data: Payload, *keys: str) -> str:
    """Get the first of ``keys`` present in the event, or reject the event."""
    for key in keys:
        if data.get(key):
            return data[key]
    raise UnresolvedEntityError(f"Event names no {' or '.join(keys)}")


class EventRouter:
    """Dispatches normalized event payloads to the store and emits content notifications."""

    def __init__(self, store: EntityStore, app_id: Optional[str] = None):
        """
        Initialize the router.

        Args:
            store: Store receiving entity fragments
            app_id: Only accept Events API envelopes for this app; defaults to settings
        """
        self.store = store
        self.emitter = store.emitter
        self.app_id = app_id or store.settings.app_id
        self._handlers: Dict[str, Handler] = {
            "authenticated": self._on_authenticated,
            "hello": self._on_hello,
            "goodbye": self._on_goodbye,
            "team_rename": self._on_team_rename,
            "member_joined_channel": self._on_member_joined,
            "member_left_channel": self._on_member_left,
            "message": self._on_message,
            "reaction_added": self._on_reaction_added,
            "reaction_removed": self._on_reaction_removed,
            "user_typing": self._on_typing,
            "presence_change": self._on_presence_change,
            "app_uninstalled": self._on_app_uninstalled,
        }
        for event_type in CHANNEL_EVENTS:
            self._handlers[event_type] = self._on_channel
        for event_type in USER_EVENTS:
            self._handlers[event_type] = self._on_user
        for event_type in BOT_EVENTS:
            self._handlers[event_type] = self._on_bot
        for event_type in TEAM_REFRESH_EVENTS:
            self._handlers[event_type] = self._on_team_refresh

    async def dispatch(self, event_type: str, data: Payload, team_id: Optional[str] = None) -> None:
        """
        Route one event.

        Events that cannot be resolved against the store are logged and dropped:
        the event source has no way to hear about the failure.
        """
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"Ignoring event {event_type}")
            return
        logger.debug(f"Event {event_type} for team {team_id}")
        try:
            await handler(data, team_id)
        except (UnresolvedEntityError, MalformedFragmentError) as e:
            logger.warning(f"Dropping {event_type} event for team {team_id}: {e}")
        except (BadResponseError, TeamNotFoundError, SlackApiError) as e:
            logger.error(f"Error handling {event_type} event for team {team_id}: {e}")

    async def handle_envelope(self, body: Payload) -> None:
        """Dispatch an Events API envelope (``team_id``, ``api_app_id``, ``event``)."""
        if self.app_id and body.get("api_app_id") != self.app_id:
            logger.debug(f"Ignoring envelope for app {body.get('api_app_id')}")
            return
        event = body.get("event") or {}
        await self.dispatch(event.get("type", ""), event, body.get("team_id"))

    # Sessions and connection lifecycle

    async def _on_authenticated(self, data: Payload, team_id: Optional[str]) -> None:
        await self.store.authenticate(data["team"], data["self"], data.get("token"))

    async def _on_hello(self, data: Payload, team_id: Optional[str]) -> None:
        self.emitter.emit(Event.CONNECTED)

    async def _on_goodbye(self, data: Payload, team_id: Optional[str]) -> None:
        self.emitter.emit(Event.DISCONNECTED)

    async def _on_app_uninstalled(self, data: Payload, team_id: Optional[str]) -> None:
        self.store.remove_team(_required_team(team_id or data.get("team_id")))

    # Entity lifecycle

    async def _on_channel(self, data: Payload, team_id: Optional[str]) -> None:
        channel = data["channel"]
        if isinstance(channel, str):
            channel = {"id": channel}
        await self.store.add_channel(dict(channel, team_id=team_id))

    async def _on_user(self, data: Payload, team_id: Optional[str]) -> None:
        await self.store.add_user(dict(data["user"], team_id=team_id))

    async def _on_bot(self, data: Payload, team_id: Optional[str]) -> None:
        await self.store.add_bot(dict(data["bot"], team_id=team_id))

    async def _on_team_rename(self, data: Payload, team_id: Optional[str]) -> None:
        self.store.add_team({"id": _required_team(team_id), "name": data["name"]})

    async def _on_team_refresh(self, data: Payload, team_id: Optional[str]) -> None:
        try:
            team = await self.store.client.team_info(_required_team(team_id))
        except BadResponseError as e:
            logger.warning(f"Ignoring team refresh for {team_id}: {e}")
            return
        self.store.add_team(team)

    # Membership

    def _member_and_channel(self, data: Payload, team_id: Optional[str]):
        user = self.store.get_user(_required(data, "user"), team_id)
        channel = self.store.get_channel(_required(data, "channel"), team_id)
        return user, channel

    async def _on_member_joined(self, data: Payload, team_id: Optional[str]) -> None:
        user, channel = self._member_and_channel(data, team_id)
        if user and channel:
            self.store.add_member(channel, user)

    async def _on_member_left(self, data: Payload, team_id: Optional[str]) -> None:
        user, channel = self._member_and_channel(data, team_id)
        if user and channel:
            self.store.remove_member(channel, user)

    # Content

    async def _on_message(self, data: Payload, team_id: Optional[str]) -> None:
        subtype = data.get("subtype")
        if subtype in FILTERED_SUBTYPES:
            return
        data = dict(data, team_id=team_id)
        channel, author = await self.store.get_channel_and_author(data)
        if subtype == "message_changed":
            old = Message.from_payload(data["previous_message"], channel, author)
            new = Message.from_payload(data["message"], channel, author)
            self.emitter.emit(Event.MESSAGE_CHANGED, old, new)
        elif subtype == "message_deleted":
            previous = data.get("previous_message") or {"ts": data["deleted_ts"]}
            self.emitter.emit(Event.MESSAGE_DELETED, Message.from_payload(previous, channel, author))
        else:
            self.emitter.emit(Event.MESSAGE, Message.from_payload(data, channel, author))

    async def _on_reaction_added(self, data: Payload, team_id: Optional[str]) -> None:
        reaction = await self.store.build_reaction(dict(data, team_id=team_id))
        self.emitter.emit(Event.REACTION_ADDED, reaction)

    async def _on_reaction_removed(self, data: Payload, team_id: Optional[str]) -> None:
        reaction = await self.store.build_reaction(dict(data, team_id=team_id))
        self.emitter.emit(Event.REACTION_REMOVED, reaction)

    async def _on_typing(self, data: Payload, team_id: Optional[str]) -> None:
        channel = self.store.get_channel(_required(data, "channel"), team_id)
        user = self.store.get_user(_required(data, "user", "bot_id"), team_id)
        if channel and user:
            self.emitter.emit(Event.TYPING, channel, user)

    async def _on_presence_change(self, data: Payload, team_id: Optional[str]) -> None:
        user = self.store.get_user(_required(data, "user", "bot_id"), team_id)
        if user:
            self.emitter.emit(Event.PRESENCE_CHANGE, user, data.get("presence"))
