"""
Slack Web API client used to fetch and mutate remote workspace state.
"""
import asyncio
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from teamcache.config import Settings, get_settings
from teamcache.slack.errors import BadResponseError, TeamNotFoundError

RETRYABLE_ERRORS = frozenset({"ratelimited", "internal_error", "fatal_error", "service_unavailable", "request_timeout"})

Page = Tuple[List[Any], Optional[str]]


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, SlackApiError) and error.response.get("error") in RETRYABLE_ERRORS


def _payload(response: Any, method: str, key: str) -> Any:
    """Get ``key`` out of a reply, rejecting replies without ``ok`` or the key."""
    if not response or not response.get("ok") or response.get(key) is None:
        raise BadResponseError(method, key)
    return response[key]


def _next_cursor(response: Any) -> Optional[str]:
    metadata = response.get("response_metadata") or {}
    return metadata.get("next_cursor") or None


class SlackClient:
    """
    Client for the Slack Web API across several teams.

    Tokens are registered per team; every call names the team whose token to
    use. Blocking ``WebClient`` calls run in a worker thread so they can be
    awaited from the event loop.
    """

    def __init__(self, token: Optional[str] = None, settings: Optional[Settings] = None):
        """
        Initialize the Slack client.

        Args:
            token: Default Slack API token. If not provided, read from settings (SLACK_API_TOKEN).
            settings: Settings to use instead of the environment-loaded ones
        """
        self.settings = settings or get_settings()
        self.token = token or self.settings.slack_api_token or None
        self._tokens: Dict[str, str] = {}
        self._webs: Dict[str, WebClient] = {}
        logger.debug("Initialized Slack client")

    def register_token(self, team_id: str, token: str) -> None:
        self._tokens[team_id] = token
        self._webs[team_id] = WebClient(token=token)
        logger.debug(f"Registered token for team {team_id}")

    def unregister_token(self, team_id: str) -> None:
        self._tokens.pop(team_id, None)
        self._webs.pop(team_id, None)

    def has_team(self, team_id: str) -> bool:
        return team_id in self._webs

    def is_bot_token(self, team_id: str) -> bool:
        return self._tokens.get(team_id, "").startswith("xoxb")

    def web(self, team_id: str) -> WebClient:
        """
        Get the WebClient holding the team's token.

        Raises:
            TeamNotFoundError: If no token is registered for the team
        """
        web = self._webs.get(team_id)
        if web is None:
            raise TeamNotFoundError(team_id)
        return web

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _request(self, web: WebClient, method: str, **kwargs) -> Any:
        return getattr(web, method)(**kwargs)

    async def _call(self, team_id: str, method: str, key: str, web: Optional[WebClient] = None, **kwargs) -> Any:
        web = web or self.web(team_id)
        try:
            logger.debug(f"Calling {method} for team {team_id}")
            response = await asyncio.to_thread(self._request, web, method, **kwargs)
        except SlackApiError as e:
            logger.error(f"Slack API error calling {method} for team {team_id}: {e}")
            raise
        return response, _payload(response, method, key)

    async def _page(self, team_id: str, method: str, key: str, cursor: Optional[str], **kwargs) -> Page:
        if cursor:
            kwargs["cursor"] = cursor
        response, items = await self._call(team_id, method, key, limit=self.settings.list_page_limit, **kwargs)
        return list(items), _next_cursor(response)

    async def auth_test(self, token: Optional[str] = None) -> Dict[str, Any]:
        """
        Identify the team and user a token belongs to.

        Returns:
            The ``auth.test`` reply (``team_id``, ``user_id``, ``team``, ``user``...)
        """
        token = token or self.token
        if not token:
            raise ValueError(
                "Slack API token not provided. Set SLACK_API_TOKEN environment variable or pass token to constructor."
            )
        response, _ = await self._call("", "auth_test", "team_id", web=WebClient(token=token))
        return dict(response.data) if hasattr(response, "data") else dict(response)

    async def team_info(self, team_id: str, team: Optional[str] = None) -> Dict[str, Any]:
        """Get a team's profile; ``team`` may name another team visible to ``team_id``."""
        _, data = await self._call(team_id, "team_info", "team", team=team or team_id)
        return data

    async def conversations_list(self, team_id: str, cursor: Optional[str] = None) -> Page:
        """Get one page of conversations and the cursor of the next one."""
        return await self._page(
            team_id, "conversations_list", "channels", cursor, types=self.settings.conversation_types
        )

    async def users_list(self, team_id: str, cursor: Optional[str] = None) -> Page:
        """Get one page of members and the cursor of the next one."""
        return await self._page(team_id, "users_list", "members", cursor)

    async def conversations_members(self, team_id: str, channel: str, cursor: Optional[str] = None) -> Page:
        """Get one page of member ids of a conversation."""
        return await self._page(team_id, "conversations_members", "members", cursor, channel=channel)

    async def conversations_info(self, team_id: str, channel: str) -> Dict[str, Any]:
        _, data = await self._call(team_id, "conversations_info", "channel", channel=channel)
        return data

    async def users_info(self, team_id: str, user: str) -> Dict[str, Any]:
        _, data = await self._call(team_id, "users_info", "user", user=user)
        return data

    async def bots_info(self, team_id: str, bot: str) -> Dict[str, Any]:
        _, data = await self._call(team_id, "bots_info", "bot", bot=bot)
        return data

    async def conversations_open(self, team_id: str, users: str) -> Dict[str, Any]:
        _, data = await self._call(team_id, "conversations_open", "channel", users=users, return_im=True)
        return data

    async def conversations_join(self, team_id: str, channel: str) -> Dict[str, Any]:
        _, data = await self._call(team_id, "conversations_join", "channel", channel=channel)
        return data

    async def chat_post_message(self, team_id: str, **payload) -> str:
        _, ts = await self._call(team_id, "chat_postMessage", "ts", **payload)
        return ts

    async def chat_me_message(self, team_id: str, **payload) -> str:
        _, ts = await self._call(team_id, "chat_meMessage", "ts", **payload)
        return ts

    async def chat_update(self, team_id: str, **payload) -> str:
        _, ts = await self._call(team_id, "chat_update", "ts", **payload)
        return ts

    async def chat_delete(self, team_id: str, **payload) -> str:
        _, ts = await self._call(team_id, "chat_delete", "ts", **payload)
        return ts
