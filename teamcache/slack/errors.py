"""
Error types raised while mirroring a Slack workspace.

- TeamCacheError: Base exception
- BadResponseError: A Web API reply is missing ``ok`` or its payload
- TeamNotFoundError: No credentials are registered for a team
- UnresolvedEntityError: An entity or event cannot be tied to its team/channel/author
- MalformedFragmentError: A payload lacks the key that identifies its entity

Lookups (``get_user``, ``get_channel``...) never raise; they return ``None``.
"""
from typing import Any, Dict, Optional


class TeamCacheError(Exception):
    """Base exception for all teamcache errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TEAMCACHE_ERROR"
        self.details = details or {}


class BadResponseError(TeamCacheError):
    """A Web API reply did not carry ``ok`` or the expected payload key."""

    def __init__(self, method: str, key: str) -> None:
        super().__init__(
            f"Bad response from {method}: missing '{key}'",
            code="BAD_RESPONSE",
            details={"method": method, "key": key},
        )
        self.method = method
        self.key = key


class TeamNotFoundError(TeamCacheError):
    """No Web API credentials are registered for the team."""

    def __init__(self, team_id: str) -> None:
        super().__init__(
            f"No credentials registered for team {team_id}",
            code="TEAM_NOT_FOUND",
            details={"team_id": team_id},
        )
        self.team_id = team_id


class UnresolvedEntityError(TeamCacheError):
    """An entity could not be resolved against the store.

    Raised when:
    - A channel/user/bot is constructed for a team that is not in the store
    - A content event names a channel or author that cannot be found or fetched
    """

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="UNRESOLVED_ENTITY", details=details)


class MalformedFragmentError(TeamCacheError, ValueError):
    """A payload could not be normalized because its identity key is missing."""

    def __init__(self, kind: str, payload: Dict[str, Any]) -> None:
        super().__init__(
            f"Cannot normalize {kind} payload without an id",
            code="MALFORMED_FRAGMENT",
            details={"kind": kind, "keys": sorted(payload)},
        )
