"""
Entity store reconciling Slack fragments into one object graph.

Every source (RTM events, Events API pushes, Web API listings and replies)
feeds the same ``add_*`` entry points. Each call either patches the record
already held for that id, or creates it, and then tells listeners, unless the
owning team is still hydrating.
"""
import asyncio
from collections import Counter
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Tuple, Union

from loguru import logger
from slack_sdk.errors import SlackApiError

from teamcache.config import Settings, get_settings
from teamcache.slack.client import SlackClient
from teamcache.slack.emitter import Event, EventEmitter
from teamcache.slack.errors import BadResponseError, TeamNotFoundError, UnresolvedEntityError
from teamcache.slack.fragments import (
    BotFragment,
    ChannelFragment,
    TeamFragment,
    UserFragment,
    normalize_bot,
    normalize_channel,
    normalize_team,
    normalize_user,
)
from teamcache.slack.ids import compose_id, decompose_id
from teamcache.slack.models import Bot, Channel, Message, Reaction, Team, User

Payload = Dict[str, Any]
Author = Union[User, Bot]


class StartupSuppressor:
    """
    Tracks which teams are hydrating.

    Windows are counted per team id, so overlapping hydrations of the same team
    (authentication plus a ``load()``) only end when the last one does.
    """

    def __init__(self):
        self._windows: Counter = Counter()

    def begin(self, team_id: str) -> None:
        self._windows[team_id] += 1

    def end(self, team_id: str) -> None:
        self._windows[team_id] -= 1
        if self._windows[team_id] <= 0:
            del self._windows[team_id]

    def active(self, team_id: str) -> bool:
        return self._windows[team_id] > 0

    @contextmanager
    def window(self, team_id: str) -> Iterator[None]:
        self.begin(team_id)
        try:
            yield
        finally:
            self.end(team_id)


class EntityStore:
    """Owns the teams (and through them users, channels and bots) mirrored from Slack."""

    def __init__(
        self,
        client: SlackClient,
        settings: Optional[Settings] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        """
        Initialize the store.

        Args:
            client: Web API client used for lookups and hydration
            settings: Settings to use instead of the environment-loaded ones
            emitter: Emitter to notify; a new one is created if not provided
        """
        self.client = client
        self.settings = settings or get_settings()
        self.separator = self.settings.id_separator
        self.emitter = emitter or EventEmitter()
        self.teams: Dict[str, Team] = {}
        self.self_users: Dict[str, User] = {}
        self.startup = StartupSuppressor()
        self._team_lookups: Dict[str, asyncio.Future] = {}
        self._team_loads: Dict[str, asyncio.Future] = {}

    def on(self, event, listener=None):
        """Register a listener on the store's emitter."""
        return self.emitter.on(event, listener)

    def _notify(self, team_id: str, event: Event, *args: Any) -> None:
        if self.startup.active(team_id):
            return
        self.emitter.emit(event, *args)

    # Teams

    def add_team(self, data: Union[TeamFragment, Payload]) -> Team:
        fragment = normalize_team(data)
        team = self.teams.get(fragment.id)
        if team:
            old = team.clone()
            team.patch(fragment)
            self._notify(team.id, Event.CHANGE_TEAM, old, team)
            return team
        team = Team.from_fragment(self, fragment)
        self.teams[team.id] = team
        logger.debug(f"Added team {team.id}")
        self._notify(team.id, Event.ADD_TEAM, team)
        return team

    def get_team(self, team_id: str) -> Optional[Team]:
        return self.teams.get(team_id)

    def remove_team(self, team_id: str) -> Optional[Team]:
        """
        Tear down a team: its maps, local identity and credentials.

        Proxy teams standing in through this team's credentials go with it.
        """
        team = self.teams.pop(team_id, None)
        self.self_users.pop(team_id, None)
        self.client.unregister_token(team_id)
        for proxy_id in [t.id for t in self.teams.values() if t.fake_id == team_id]:
            self.teams.pop(proxy_id, None)
            logger.debug(f"Removed proxy team {proxy_id}")
        logger.info(f"Removed team {team_id}")
        return team

    async def _resolve_team(self, team_id: str) -> Optional[Team]:
        """Get a team, fetching its profile once no matter how many callers are waiting."""
        team = self.teams.get(team_id)
        if team:
            return team
        lookup = self._team_lookups.get(team_id)
        if lookup is None:
            lookup = asyncio.ensure_future(self._lookup_team(team_id))
            self._team_lookups[team_id] = lookup
            lookup.add_done_callback(lambda _: self._team_lookups.pop(team_id, None))
        return await lookup

    async def _lookup_team(self, team_id: str) -> Optional[Team]:
        try:
            data = await self.client.team_info(team_id)
        except (TeamNotFoundError, BadResponseError, SlackApiError) as e:
            logger.warning(f"Could not look up team {team_id}: {e}")
            return None
        return self.add_team(data)

    async def ensure_team_loaded(self, team: Team) -> Team:
        """Load a partial team, sharing one in-flight load between concurrent callers."""
        if not team.partial:
            return team
        load = self._team_loads.get(team.id)
        if load is None:
            load = asyncio.ensure_future(team.load())
            self._team_loads[team.id] = load
            load.add_done_callback(lambda _: self._team_loads.pop(team.id, None))
        await load
        return team

    # Users

    async def add_user(self, data: Union[UserFragment, Payload], create_team: bool = True) -> Optional[User]:
        """
        Create or patch a user from a fragment.

        If the owning team is unknown and ``create_team`` is set, the team is
        looked up first and the fragment applied once; if that fails the fragment
        is dropped and ``None`` returned.
        """
        fragment = normalize_user(data)
        team = self.teams.get(fragment.team_id) if fragment.team_id else None
        if team is None:
            if create_team and fragment.team_id and await self._resolve_team(fragment.team_id):
                return await self.add_user(fragment, create_team=False)
            logger.warning(f"Dropping user {fragment.id}: team {fragment.team_id} not found")
            return None
        user = team.users.get(fragment.id)
        if user:
            old = user.clone()
            user.patch(fragment)
            self._notify(team.id, Event.CHANGE_USER, old, user)
            return user
        user = User.from_fragment(self, fragment)
        team.users[user.id] = user
        if not user.full_bot:
            self._notify(team.id, Event.ADD_USER, user)
        return user

    def get_user(self, user_id: str, team_id: Optional[str] = None) -> Optional[User]:
        """
        Find a user by team and id, or by qualified id when no team is given.

        Falls back to proxy teams standing in for ``team_id``, then to any team
        holding the id. Among several teams holding it, which one wins is
        unspecified.
        """
        if team_id is None:
            team_id, user_id = decompose_id(user_id, self.separator)
        team = self.teams.get(team_id) if team_id else None
        if team and user_id in team.users:
            return team.users[user_id]
        if team_id:
            for proxy in self.teams.values():
                if proxy.fake_id == team_id and user_id in proxy.users:
                    return proxy.users[user_id]
        for other in self.teams.values():
            if user_id in other.users:
                return other.users[user_id]
        return None

    # Channels

    async def add_channel(
        self, data: Union[ChannelFragment, Payload], create_team: bool = True
    ) -> Optional[Channel]:
        """
        Create or patch a channel from a fragment.

        The owner is ``team_id``, else the first of ``shared_team_ids``.
        """
        fragment = normalize_channel(data)
        team_id = fragment.owner_team_id
        if not team_id:
            logger.warning(f"Dropping channel {fragment.id}: no associated team")
            return None
        team = self.teams.get(team_id)
        if team is None:
            if create_team and await self._resolve_team(team_id):
                return await self.add_channel(fragment, create_team=False)
            logger.warning(f"Dropping channel {fragment.id}: team {team_id} not found")
            return None
        channel = team.channels.get(fragment.id)
        if channel:
            old = channel.clone()
            channel.patch(fragment)
            self._notify(team.id, Event.CHANGE_CHANNEL, old, channel)
            return channel
        channel = Channel.from_fragment(self, fragment)
        team.channels[channel.id] = channel
        if not self.startup.active(team.id):
            if self.settings.auto_join_channels and self.client.is_bot_token(team.id):
                await self._join(channel)
            self.emitter.emit(Event.ADD_CHANNEL, channel)
        return channel

    async def _join(self, channel: Channel) -> None:
        try:
            await channel.join()
        except (SlackApiError, BadResponseError) as e:
            logger.warning(f"Could not join channel {channel.id}: {e}")

    def get_channel(self, channel_id: str, team_id: Optional[str] = None) -> Optional[Channel]:
        if team_id is None:
            team_id, channel_id = decompose_id(channel_id, self.separator)
        team = self.teams.get(team_id) if team_id else None
        if team is None:
            return None
        return team.channels.get(channel_id)

    async def _fetch_channel(self, team: Team, channel_id: str) -> Optional[Channel]:
        try:
            data = await self.client.conversations_info(team.credentials_id, channel=channel_id)
        except (TeamNotFoundError, BadResponseError, SlackApiError) as e:
            logger.warning(f"Could not fetch channel {channel_id} for team {team.id}: {e}")
            return None
        return await self.add_channel(dict(data, team_id=team.id))

    # Bots

    async def add_bot(self, data: Union[BotFragment, Payload], create_team: bool = True) -> Optional[Bot]:
        """Create or patch a bot from a fragment."""
        fragment = normalize_bot(data)
        team = self.teams.get(fragment.team_id) if fragment.team_id else None
        if team is None:
            if create_team and fragment.team_id and await self._resolve_team(fragment.team_id):
                return await self.add_bot(fragment, create_team=False)
            logger.warning(f"Dropping bot {fragment.id}: team {fragment.team_id} not found")
            return None
        bot = team.bots.get(fragment.id)
        if bot:
            old = bot.clone()
            bot.patch(fragment)
            self._notify(team.id, Event.CHANGE_BOT, old, bot)
            return bot
        bot = Bot.from_fragment(self, fragment)
        team.bots[bot.id] = bot
        self._notify(team.id, Event.ADD_BOT, bot)
        return bot

    def get_bot(self, bot_id: str, team_id: Optional[str] = None) -> Optional[Bot]:
        if team_id is None:
            team_id, bot_id = decompose_id(bot_id, self.separator)
        team = self.teams.get(team_id) if team_id else None
        if team is None:
            return None
        return team.bots.get(bot_id)

    def get_user_or_bot(self, record_id: str, team_id: Optional[str] = None) -> Optional[Author]:
        if team_id is None:
            team_id, record_id = decompose_id(record_id, self.separator)
        team = self.teams.get(team_id) if team_id else None
        if team is None:
            return None
        return team.users.get(record_id) or team.bots.get(record_id)

    def full_id(self, team_id: str, local_id: str) -> str:
        return compose_id(team_id, local_id, self.separator)

    # Membership (not subject to startup suppression; hydration never calls these)

    def add_member(self, channel: Channel, user: User) -> None:
        channel.member_ids.add(user.id)
        self.emitter.emit(Event.MEMBER_JOINED_CHANNEL, user, channel)

    def remove_member(self, channel: Channel, user: User) -> None:
        channel.member_ids.discard(user.id)
        self.emitter.emit(Event.MEMBER_LEFT_CHANNEL, user, channel)

    # Sessions

    async def authenticate(self, team_data: Payload, self_data: Payload, token: Optional[str] = None) -> Team:
        """
        Bootstrap a team from an authenticated session and hydrate it.

        Args:
            team_data: The team object of the session
            self_data: The authenticated user (``id``, ``name``)
            token: Token to register for the team, if not registered yet

        Returns:
            The loaded team
        """
        team_id = team_data["id"]
        if token:
            self.client.register_token(team_id, token)
        known = self.teams.get(team_id)
        with self.startup.window(team_id):
            # a team we now hold credentials for is no longer a proxy
            team = self.add_team(dict(team_data, fake_id=None))
            if known is not None and known.is_proxy:
                team.partial = True
            me = await self.add_user({"id": self_data["id"], "name": self_data.get("name"), "team_id": team_id})
            if me:
                self.self_users[team_id] = me
            await self.ensure_team_loaded(team)
            if me and me.partial:
                await me.load()
        logger.info(f"Authenticated team {team_id}")
        return team

    async def add_token(self, token: str) -> Team:
        """Identify a token with ``auth.test``, then authenticate its team."""
        auth = await self.client.auth_test(token)
        return await self.authenticate(
            {"id": auth["team_id"], "name": auth.get("team")},
            {"id": auth["user_id"], "name": auth.get("user")},
            token,
        )

    # Content

    async def _proxy_team(self, source_team_id: str, team_id: str) -> Team:
        """Get the team a foreign message came from, standing it in through ``team_id`` if unknown."""
        source = self.teams.get(source_team_id)
        if source is None:
            with self.startup.window(source_team_id):
                source = self.add_team({"id": source_team_id, "fake_id": team_id})
            logger.debug(f"Created proxy team {source_team_id} through {team_id}")
        return await self.ensure_team_loaded(source)

    async def get_channel_and_author(self, data: Payload) -> Tuple[Channel, Author]:
        """
        Resolve the channel and author of a content event.

        A message from a shared channel names its origin in ``source_team``; its
        author is looked up (or created) on that team, which is stood in as a
        proxy of the receiving team if we hold no token for it.

        Raises:
            UnresolvedEntityError: If the team, channel or author cannot be found
        """
        team_id = data.get("team_id")
        team = await self._resolve_team(team_id) if team_id else None
        if team is None:
            raise UnresolvedEntityError(f"Team {team_id} not found", team_id=team_id)
        await self.ensure_team_loaded(team)

        source_team_id = team_id
        source = data.get("source_team")
        if source and source != team_id:
            source_team_id = source
            await self._proxy_team(source_team_id, team_id)

        channel_id = data.get("channel") or (data.get("item") or {}).get("channel")
        if not channel_id:
            raise UnresolvedEntityError("Event names no channel", team_id=team_id)
        channel = self.get_channel(channel_id, team_id) or await self._fetch_channel(team, channel_id)
        if channel is None:
            raise UnresolvedEntityError(f"Channel {channel_id} not found", team_id=team_id, channel=channel_id)

        author = await self._resolve_author(data, source_team_id)
        return channel, author

    async def _resolve_author(self, data: Payload, team_id: str) -> Author:
        user_id = data.get("user")
        bot_id = data.get("bot_id")
        for key in ("message", "previous_message"):
            nested = data.get(key) or {}
            user_id = user_id or nested.get("user")
            bot_id = bot_id or nested.get("bot_id")

        author: Optional[Author] = None
        if user_id:
            author = self.get_user(user_id, team_id) or await self.add_user({"id": user_id, "team_id": team_id})
        elif bot_id:
            author = self.get_bot(bot_id, team_id)
            if author is None:
                author = await self.add_bot(dict(data, bot_id=bot_id, team_id=team_id))
            if author and not author.user_id and self.get_user(bot_id, team_id) is None:
                await self.add_user(
                    {"id": bot_id, "team_id": team_id, "name": author.name, "is_bot": True, "full_bot": True}
                )
        if author is None:
            raise UnresolvedEntityError("User or bot not found", team_id=team_id, user=user_id, bot=bot_id)
        return author

    async def build_message(self, data: Payload) -> Message:
        channel, author = await self.get_channel_and_author(data)
        return Message.from_payload(data, channel, author)

    async def build_reaction(self, data: Payload) -> Reaction:
        """
        Build a reaction with a message for the item reacted to.

        The message's author is the item's author (``item_user``) when the event
        names one; the reacting user is kept on the reaction.
        """
        item = data.get("item") or {}
        target = {
            "team_id": data.get("team_id"),
            "source_team": data.get("source_team"),
            "channel": item.get("channel"),
            "user": data.get("item_user") or data.get("user"),
        }
        channel, author = await self.get_channel_and_author(target)
        reactor_team_id = data.get("source_team") or data.get("team_id")
        reactor = None
        if data.get("user"):
            reactor = self.get_user(data["user"], reactor_team_id) or await self.add_user(
                {"id": data["user"], "team_id": reactor_team_id}
            )
        message = Message.from_payload({"ts": item.get("ts") or data.get("ts")}, channel, author)
        return Reaction(
            ts=data.get("event_ts") or data.get("ts") or message.ts,
            reaction=data["reaction"],
            message=message,
            user=reactor,
        )
