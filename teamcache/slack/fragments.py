"""
Canonical fragments for partial entity updates.

Payloads for the same entity arrive in different shapes from RTM events, the
Events API and Web API listings (``name`` vs ``username``, ``id`` vs ``bot_id``,
``icons`` vs ``profile``...). Each ``normalize_*`` function maps every known shape
onto one fragment model before anything is patched.

A fragment only carries the keys that were present in the payload: a field is
"sent" when it is in ``model_fields_set``, even if its value is ``None`` or empty.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from teamcache.slack.errors import MalformedFragmentError

CHANNEL_TYPE_FLAGS = ("is_channel", "is_mpim", "is_group", "is_im")


class Fragment(BaseModel):
    """Base for partial updates; tracks which fields were actually sent."""

    model_config = ConfigDict(extra="ignore")

    def has(self, field: str) -> bool:
        return field in self.model_fields_set


class TeamFragment(Fragment):
    id: str
    name: Optional[str] = None
    domain: Optional[str] = None
    icon: Optional[Dict[str, Any]] = None
    email_domain: Optional[str] = None
    enterprise_id: Optional[str] = None
    enterprise_name: Optional[str] = None
    fake_id: Optional[str] = None


class UserFragment(Fragment):
    id: str
    team_id: Optional[str] = None
    name: Optional[str] = None
    color: Optional[str] = None
    real_name: Optional[str] = None
    display_name: Optional[str] = None
    icon: Optional[Dict[str, Any]] = None
    is_bot: bool = False
    status_text: Optional[str] = None
    status_emoji: Optional[str] = None
    full_bot: bool = False


class ChannelFragment(Fragment):
    id: str
    team_id: Optional[str] = None
    shared_team_ids: List[str] = []
    name: Optional[str] = None
    is_channel: bool = False
    is_mpim: bool = False
    is_group: bool = False
    is_im: bool = False
    is_private: bool = False
    topic: Optional[str] = None
    purpose: Optional[str] = None
    user: Optional[str] = None

    @property
    def owner_team_id(self) -> Optional[str]:
        """The team owning the channel; for shared channels the first shared team."""
        if self.team_id:
            return self.team_id
        if self.shared_team_ids:
            return self.shared_team_ids[0]
        return None


class BotFragment(Fragment):
    id: str
    team_id: Optional[str] = None
    user_id: Optional[str] = None
    app_id: Optional[str] = None
    name: Optional[str] = None
    display_name: Optional[str] = None
    icon: Optional[Dict[str, Any]] = None


class MessageFragment(Fragment):
    ts: str
    text: Optional[str] = None
    blocks: Optional[List[Any]] = None
    attachments: Optional[List[Any]] = None
    files: Optional[List[Any]] = None
    thread_ts: Optional[str] = None
    subtype: Optional[str] = None


def _copy_present(raw: Dict[str, Any], fields: Dict[str, Any], *keys: str) -> None:
    for key in keys:
        if key in raw:
            fields[key] = raw[key]


def normalize_team(raw: Dict[str, Any]) -> TeamFragment:
    """Normalize ``team.info`` replies, ``rtm.connect`` team objects and rename events."""
    if isinstance(raw, TeamFragment):
        return raw
    if not raw.get("id"):
        raise MalformedFragmentError("team", raw)
    fields: Dict[str, Any] = {"id": raw["id"]}
    _copy_present(raw, fields, "name", "domain", "icon", "email_domain", "enterprise_id", "enterprise_name")
    if "fake_id" in raw:
        fields["fake_id"] = raw["fake_id"]
    elif "fakeId" in raw:
        fields["fake_id"] = raw["fakeId"]
    return TeamFragment(**fields)


def normalize_user(raw: Dict[str, Any]) -> UserFragment:
    """
    Normalize user payloads.

    Handles ``users.info``/``users.list`` members, ``team_join``/``user_change``
    events, bare ``{"id", "team_id"}`` references and bot-as-user objects that
    carry ``username`` instead of ``name``.
    """
    if isinstance(raw, UserFragment):
        return raw
    user_id = raw.get("id") or raw.get("user_id")
    if not user_id:
        raise MalformedFragmentError("user", raw)
    fields: Dict[str, Any] = {"id": user_id}
    _copy_present(raw, fields, "team_id", "color", "is_bot", "full_bot")
    if "name" in raw:
        fields["name"] = raw["name"]
    elif "username" in raw:
        fields["name"] = raw["username"]

    profile = raw.get("profile") or {}
    if "profile" in raw or "real_name" in raw:
        fields["real_name"] = profile.get("real_name") or raw.get("real_name")
    if "profile" in raw:
        fields["display_name"] = profile.get("display_name")
    if "profile" in raw or "icons" in raw:
        fields["icon"] = raw.get("icons") or raw.get("profile") or None
    if "status_text" in profile:
        fields["status_text"] = profile["status_text"]
    if "status_emoji" in profile:
        fields["status_emoji"] = profile["status_emoji"]
    return UserFragment(**fields)


def normalize_channel(raw: Dict[str, Any]) -> ChannelFragment:
    """Normalize conversation objects from listings, ``conversations.info`` and channel events."""
    if isinstance(raw, ChannelFragment):
        return raw
    if not raw.get("id"):
        raise MalformedFragmentError("channel", raw)
    fields: Dict[str, Any] = {"id": raw["id"]}
    _copy_present(raw, fields, "team_id", "name", "user")
    if raw.get("shared_team_ids"):
        fields["shared_team_ids"] = list(raw["shared_team_ids"])
    for flag in CHANNEL_TYPE_FLAGS:
        if flag in raw:
            fields[flag] = bool(raw[flag])
    if "is_private" in raw or "private" in raw:
        fields["is_private"] = bool(raw.get("is_private") or raw.get("private"))
    for key in ("topic", "purpose"):
        if key in raw:
            value = raw[key]
            fields[key] = value.get("value") if isinstance(value, dict) else value
    return ChannelFragment(**fields)


def normalize_bot(raw: Dict[str, Any]) -> BotFragment:
    """
    Normalize bot payloads.

    Handles ``bots.info`` replies and ``bot_added``/``bot_changed`` objects (``id``,
    ``name``, ``icons``) as well as messages posted by bots (``bot_id``,
    ``username``, ``bot_profile``).
    """
    if isinstance(raw, BotFragment):
        return raw
    bot_id = raw.get("bot_id") or raw.get("id")
    if not bot_id:
        raise MalformedFragmentError("bot", raw)
    fields: Dict[str, Any] = {"id": bot_id}
    _copy_present(raw, fields, "team_id", "user_id")

    profile = raw.get("bot_profile") or {}
    if "name" in raw or "bot_profile" in raw:
        fields["name"] = profile.get("name") or raw.get("name")
    if "username" in raw:
        fields["display_name"] = raw["username"]
    if "bot_profile" in raw or "icons" in raw:
        fields["icon"] = profile.get("icons") or raw.get("icons") or None
    if profile.get("app_id") or "app_id" in raw:
        fields["app_id"] = profile.get("app_id") or raw.get("app_id")
    return BotFragment(**fields)


def normalize_message(raw: Dict[str, Any]) -> MessageFragment:
    """Normalize a message body (top-level event, ``message`` or ``previous_message``)."""
    if isinstance(raw, MessageFragment):
        return raw
    ts = raw.get("ts") or raw.get("deleted_ts")
    if not ts:
        raise MalformedFragmentError("message", raw)
    fields: Dict[str, Any] = {"ts": ts}
    _copy_present(raw, fields, "text", "blocks", "attachments", "files", "thread_ts", "subtype")
    return MessageFragment(**fields)
