"""
Data models for the mirrored Slack object graph.

Users, channels and bots belong to a team and hold the team's id rather than a
reference to it; the owning ``EntityStore`` resolves it on access. Every record
is updated through ``patch``, which only touches the fields present in the
incoming fragment, and ``clone`` gives the snapshot used for change notifications.
"""
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from teamcache.slack import icons
from teamcache.slack.errors import UnresolvedEntityError
from teamcache.slack.fragments import (
    CHANNEL_TYPE_FLAGS,
    BotFragment,
    ChannelFragment,
    MessageFragment,
    TeamFragment,
    UserFragment,
    normalize_bot,
    normalize_channel,
    normalize_message,
    normalize_team,
    normalize_user,
)
from teamcache.slack.ids import compose_id

if TYPE_CHECKING:
    from teamcache.slack.store import EntityStore

Sendable = Union[str, Dict[str, Any]]


class Entity(BaseModel):
    """Base for records owned by an ``EntityStore``."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    partial: bool = True
    _store: Any = PrivateAttr(default=None)

    @property
    def store(self) -> "EntityStore":
        if self._store is None:
            raise UnresolvedEntityError(f"{type(self).__name__} is not attached to a store")
        return self._store

    def clone(self):
        """Get a snapshot of the current state for diffing after a patch."""
        return self.model_copy()


class IconMixin:
    """Icon accessors for records carrying an ``icon`` image map."""

    @property
    def icon_url(self) -> Optional[str]:
        return icons.best_icon_url(self.icon)

    @property
    def icon_emoji(self) -> Optional[str]:
        return icons.icon_emoji(self.icon)


class TeamMember(Entity):
    """A record scoped to one team."""

    id: str
    team_id: str

    @property
    def team(self) -> Optional["Team"]:
        return self.store.get_team(self.team_id)

    @property
    def full_id(self) -> str:
        """The team-qualified id, safe to hand out across teams."""
        return compose_id(self.team_id, self.id, self.store.separator)

    @property
    def credentials_id(self) -> str:
        """Team id whose token is used for Web API calls about this record."""
        team = self.team
        return team.credentials_id if team else self.team_id

    @classmethod
    def _attach(cls, store: "EntityStore", record_id: str, team_id: Optional[str]):
        if not team_id or store.get_team(team_id) is None:
            raise UnresolvedEntityError(
                f"Cannot create {cls.__name__.lower()} {record_id}: team {team_id} not found",
                id=record_id,
                team_id=team_id,
            )
        record = cls(id=record_id, team_id=team_id)
        record._store = store
        return record


class User(IconMixin, TeamMember):
    """A workspace member, or a bot seen through its user record."""

    name: Optional[str] = None
    color: Optional[str] = None
    real_name: Optional[str] = None
    display_name: Optional[str] = None
    icon: Optional[Dict[str, Any]] = None
    status_text: Optional[str] = None
    status_emoji: Optional[str] = None
    bot: bool = False
    full_bot: bool = False  # Shadow record synthesized from a bare bot id

    _im_channel_id: Optional[str] = PrivateAttr(default=None)

    @classmethod
    def from_fragment(cls, store: "EntityStore", fragment: Union[UserFragment, Dict[str, Any]]) -> "User":
        fragment = normalize_user(fragment)
        user = cls._attach(store, fragment.id, fragment.team_id)
        user.patch(fragment)
        user.partial = not fragment.has("icon")
        return user

    def patch(self, fragment: Union[UserFragment, Dict[str, Any]]) -> None:
        fragment = normalize_user(fragment)
        if fragment.has("name"):
            self.name = fragment.name
        if fragment.has("color"):
            self.color = fragment.color
        if not self.real_name or fragment.has("real_name"):
            self.real_name = fragment.real_name or self.name
        if not self.display_name or fragment.has("display_name"):
            self.display_name = fragment.display_name or self.real_name
        if not self.icon or fragment.has("icon"):
            self.icon = fragment.icon
        if fragment.has("is_bot"):
            self.bot = bool(fragment.is_bot)
        if fragment.has("status_text"):
            self.status_text = fragment.status_text
        if fragment.has("status_emoji"):
            self.status_emoji = fragment.status_emoji
        if fragment.has("full_bot"):
            self.full_bot = fragment.full_bot
        elif fragment.has("icon"):
            # a real profile turns a shadow bot user into a full record
            self.full_bot = False
        if fragment.has("icon"):
            self.partial = False

    async def load(self) -> None:
        """
        Fetch the full profile with ``users.info``.

        Raises:
            BadResponseError: If the reply has no user
        """
        data = await self.store.client.users_info(self.credentials_id, user=self.id)
        self.patch(dict(data, team_id=self.team_id))
        self.partial = False

    async def im(self) -> Optional["Channel"]:
        """Get the direct-message channel with this user, opening it if needed."""
        if self._im_channel_id:
            channel = self.store.get_channel(self._im_channel_id, self.team_id)
            if channel:
                return channel
        data = await self.store.client.conversations_open(self.credentials_id, users=self.id)
        channel = self.store.get_channel(data["id"], self.team_id)
        if channel is None:
            channel = await self.store.add_channel(dict(data, team_id=self.team_id))
        if channel:
            self._im_channel_id = channel.id
        return channel


class Bot(IconMixin, TeamMember):
    """A bot integration, optionally bound to a user record."""

    name: Optional[str] = None
    display_name: Optional[str] = None
    app_id: Optional[str] = None
    user_id: Optional[str] = None
    icon: Optional[Dict[str, Any]] = None

    @property
    def user(self) -> Optional[User]:
        team = self.team
        if not team or not self.user_id:
            return None
        return team.users.get(self.user_id)

    @classmethod
    def from_fragment(cls, store: "EntityStore", fragment: Union[BotFragment, Dict[str, Any]]) -> "Bot":
        fragment = normalize_bot(fragment)
        bot = cls._attach(store, fragment.id, fragment.team_id)
        bot.patch(fragment)
        bot.partial = not (bot.icon and bot.user)
        return bot

    def patch(self, fragment: Union[BotFragment, Dict[str, Any]]) -> None:
        fragment = normalize_bot(fragment)
        if fragment.has("name"):
            self.name = fragment.name
        if fragment.has("display_name"):
            self.display_name = fragment.display_name
        if not self.display_name:
            self.display_name = self.name
        if fragment.has("app_id"):
            self.app_id = fragment.app_id
        if fragment.has("user_id"):
            self.user_id = fragment.user_id
        if fragment.has("icon"):
            self.icon = fragment.icon

    async def load(self) -> None:
        """
        Fetch the bot with ``bots.info``.

        Raises:
            BadResponseError: If the reply has no bot
        """
        data = await self.store.client.bots_info(self.credentials_id, bot=self.id)
        self.patch(dict(data, team_id=self.team_id))
        self.partial = False


def channel_type(fragment: ChannelFragment) -> str:
    """
    Derive the conversation type; ``is_channel > is_mpim > is_group > is_im``.

    Only meaningful for fragments that carry at least one of the flags; see ``Channel.patch``.
    """
    if fragment.is_channel:
        return "channel"
    if fragment.is_mpim:
        return "mpim"
    if fragment.is_group:
        return "group"
    if fragment.is_im:
        return "im"
    return "unknown"


class Channel(TeamMember):
    """A conversation: public/private channel, group DM or direct message."""

    name: Optional[str] = None
    type: str = "unknown"
    topic: Optional[str] = None
    purpose: Optional[str] = None
    is_private: bool = False
    member_ids: Set[str] = Field(default_factory=set)

    @property
    def private(self) -> bool:
        return self.type == "im" or self.is_private

    @property
    def members(self) -> Dict[str, User]:
        team = self.team
        if not team:
            return {}
        return {uid: team.users[uid] for uid in self.member_ids if uid in team.users}

    @classmethod
    def from_fragment(cls, store: "EntityStore", fragment: Union[ChannelFragment, Dict[str, Any]]) -> "Channel":
        fragment = normalize_channel(fragment)
        channel = cls._attach(store, fragment.id, fragment.owner_team_id)
        channel.patch(fragment)
        return channel

    def clone(self) -> "Channel":
        snapshot = super().clone()
        snapshot.member_ids = set(self.member_ids)
        return snapshot

    def patch(self, fragment: Union[ChannelFragment, Dict[str, Any]]) -> None:
        """
        Apply a channel fragment.

        The type is recomputed on every patch that sends any type flag, so a group
        turning into a public channel is picked up. A fragment with no flags at all
        (a rename, a topic change) keeps the stored type instead of resetting it to
        ``unknown``.
        """
        fragment = normalize_channel(fragment)
        if any(fragment.has(flag) for flag in CHANNEL_TYPE_FLAGS):
            self.type = channel_type(fragment)
        if fragment.has("name"):
            self.name = fragment.name or None
        if fragment.has("topic"):
            self.topic = fragment.topic
        if fragment.has("purpose"):
            self.purpose = fragment.purpose
        if fragment.has("is_private"):
            self.is_private = fragment.is_private
        if fragment.user:
            self._add_known_member(fragment.user)

    def _add_known_member(self, user_id: str) -> bool:
        team = self.team
        if team and user_id in team.users:
            self.member_ids.add(user_id)
            return True
        return False

    async def load(self) -> None:
        """
        Fetch conversation info, then page through its members.

        Only members already known to the team are recorded.

        Raises:
            BadResponseError: If any reply is malformed
        """
        client = self.store.client
        data = await client.conversations_info(self.credentials_id, channel=self.id)
        self.patch(data)
        cursor = None
        while True:
            member_ids, cursor = await client.conversations_members(self.credentials_id, channel=self.id, cursor=cursor)
            for member_id in member_ids:
                self._add_known_member(member_id)
            if not cursor:
                break
        self.partial = False

    async def join(self) -> None:
        if self.type == "im":
            return
        await self.store.client.conversations_join(self.credentials_id, channel=self.id)

    async def send_message(
        self,
        sendable: Sendable,
        username: Optional[str] = None,
        icon_url: Optional[str] = None,
        icon_emoji: Optional[str] = None,
        as_user: bool = False,
    ) -> str:
        """Post a message and return its ts."""
        payload = self._message_payload(sendable, username, icon_url, icon_emoji, as_user)
        return await self.store.client.chat_post_message(self.credentials_id, **payload)

    async def reply_message(
        self,
        sendable: Sendable,
        thread_ts: str,
        username: Optional[str] = None,
        icon_url: Optional[str] = None,
        icon_emoji: Optional[str] = None,
        as_user: bool = False,
    ) -> str:
        """Post a reply in the thread started by ``thread_ts`` and return its ts."""
        payload = self._message_payload(sendable, username, icon_url, icon_emoji, as_user)
        payload["thread_ts"] = thread_ts
        return await self.store.client.chat_post_message(self.credentials_id, **payload)

    async def send_me_message(self, sendable: Sendable) -> str:
        payload = self._message_payload(sendable)
        return await self.store.client.chat_me_message(self.credentials_id, **payload)

    async def edit_message(self, sendable: Sendable, ts: str) -> str:
        payload = self._message_payload(sendable, as_user=True)
        payload["ts"] = ts
        return await self.store.client.chat_update(self.credentials_id, **payload)

    async def delete_message(
        self,
        ts: str,
        username: Optional[str] = None,
        icon_url: Optional[str] = None,
        icon_emoji: Optional[str] = None,
        as_user: bool = False,
    ) -> str:
        payload = self._message_payload(None, username, icon_url, icon_emoji, as_user)
        payload["ts"] = ts
        return await self.store.client.chat_delete(self.credentials_id, **payload)

    def _message_payload(
        self,
        sendable: Optional[Sendable],
        username: Optional[str] = None,
        icon_url: Optional[str] = None,
        icon_emoji: Optional[str] = None,
        as_user: bool = False,
    ) -> Dict[str, Any]:
        if sendable is None:
            payload: Dict[str, Any] = {}
        elif isinstance(sendable, str):
            payload = {"text": sendable}
        else:
            payload = dict(sendable)
        payload["channel"] = self.id
        # icons only apply when posting under a custom username
        if username:
            payload["username"] = username
            if icon_url:
                payload["icon_url"] = icon_url
            if icon_emoji:
                payload["icon_emoji"] = icon_emoji
        if as_user:
            payload["as_user"] = True
        return payload


TEAM_FIELDS = ("name", "domain", "icon", "email_domain", "enterprise_id", "enterprise_name", "fake_id")


class Team(IconMixin, Entity):
    """
    A workspace and the users, channels and bots it owns.

    A team with ``fake_id`` set is a proxy for a workspace we hold no token for;
    Web API calls about it are made with the token of the team ``fake_id`` names.
    """

    id: str
    name: Optional[str] = None
    domain: Optional[str] = None
    icon: Optional[Dict[str, Any]] = None
    email_domain: Optional[str] = None
    enterprise_id: Optional[str] = None
    enterprise_name: Optional[str] = None
    fake_id: Optional[str] = None
    users: Dict[str, User] = Field(default_factory=dict, repr=False, exclude=True)
    channels: Dict[str, Channel] = Field(default_factory=dict, repr=False, exclude=True)
    bots: Dict[str, Bot] = Field(default_factory=dict, repr=False, exclude=True)

    @classmethod
    def from_fragment(cls, store: "EntityStore", fragment: Union[TeamFragment, Dict[str, Any]]) -> "Team":
        fragment = normalize_team(fragment)
        team = cls(id=fragment.id)
        team._store = store
        team.patch(fragment)
        return team

    @property
    def is_proxy(self) -> bool:
        return bool(self.fake_id)

    @property
    def credentials_id(self) -> str:
        return self.fake_id or self.id

    def clone(self) -> "Team":
        snapshot = super().clone()
        snapshot.users = dict(self.users)
        snapshot.channels = dict(self.channels)
        snapshot.bots = dict(self.bots)
        return snapshot

    def patch(self, fragment: Union[TeamFragment, Dict[str, Any]]) -> None:
        fragment = normalize_team(fragment)
        for field in TEAM_FIELDS:
            if fragment.has(field):
                setattr(self, field, getattr(fragment, field))

    async def load(self) -> None:
        """
        Hydrate the team: profile, then every page of conversations and members.

        Listings are fed through the store's ``add_channel``/``add_user`` inside the
        team's startup window, so nothing found here is announced to listeners.
        A proxy team only fetches its profile, through its real team's token.

        Raises:
            BadResponseError: If any reply is malformed
        """
        store = self.store
        with store.startup.window(self.id):
            data = await store.client.team_info(self.credentials_id, team=self.id)
            self.patch(dict(data, id=self.id))
            if not self.is_proxy:
                await self._load_channels()
                await self._load_users()
        self.partial = False
        logger.info(f"Loaded team {self.id}: {len(self.channels)} channels, {len(self.users)} users")

    async def _load_channels(self) -> None:
        store = self.store
        cursor = None
        pages = 0
        while True:
            channels, cursor = await store.client.conversations_list(self.id, cursor=cursor)
            pages += 1
            for channel_data in channels:
                await store.add_channel(dict(channel_data, team_id=self.id))
            if not cursor:
                break
        logger.debug(f"Fetched {pages} pages of conversations for team {self.id}")

    async def _load_users(self) -> None:
        store = self.store
        cursor = None
        pages = 0
        while True:
            members, cursor = await store.client.users_list(self.id, cursor=cursor)
            pages += 1
            for user_data in members:
                await store.add_user(dict(user_data, team_id=self.id))
            if not cursor:
                break
        logger.debug(f"Fetched {pages} pages of members for team {self.id}")

    async def join_all_channels(self) -> None:
        if self.partial:
            await self.store.ensure_team_loaded(self)
        for channel in list(self.channels.values()):
            await channel.join()


class Message(Entity):
    """
    A chat message, built per event and never stored.

    ``ts`` identifies the message within its channel. A message stays partial
    until it carries some content (deletion notices often carry none).
    """

    ts: str
    channel: Channel
    author: Union[User, Bot]
    text: Optional[str] = None
    blocks: Optional[List[Any]] = None
    attachments: Optional[List[Any]] = None
    files: Optional[List[Any]] = None
    thread_ts: Optional[str] = None
    me_message: bool = False

    @classmethod
    def from_payload(
        cls,
        payload: Union[MessageFragment, Dict[str, Any]],
        channel: Channel,
        author: Union[User, Bot],
    ) -> "Message":
        fragment = normalize_message(payload)
        message = cls(ts=fragment.ts, channel=channel, author=author)
        message.patch(fragment)
        return message

    @property
    def empty(self) -> bool:
        return not (self.text or self.attachments or self.blocks)

    def patch(self, fragment: Union[MessageFragment, Dict[str, Any]]) -> None:
        fragment = normalize_message(fragment)
        self.ts = fragment.ts
        for field in ("text", "blocks", "attachments", "files", "thread_ts"):
            if fragment.has(field):
                setattr(self, field, getattr(fragment, field))
        self.me_message = fragment.subtype == "me_message"
        if self.text or self.blocks or self.attachments or self.files:
            self.partial = False


class Reaction(BaseModel):
    """An emoji reaction and a freshly built message for the item reacted to."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    ts: str
    reaction: str
    message: Message
    user: Optional[Union[User, Bot]] = None
