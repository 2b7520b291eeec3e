"""
Composite identifiers for team-scoped Slack ids.

Slack ids are only unique within a workspace, so anything handed to a caller
that spans several teams uses ``"{team_id}{separator}{local_id}"``.
"""
from typing import Optional, Tuple

DEFAULT_SEPARATOR = "-"


def compose_id(team_id: str, local_id: str, separator: str = DEFAULT_SEPARATOR) -> str:
    """Join a team id and a team-scoped id into one qualified id."""
    return f"{team_id}{separator}{local_id}"


def decompose_id(full_id: str, separator: str = DEFAULT_SEPARATOR) -> Tuple[Optional[str], str]:
    """
    Split a qualified id back into ``(team_id, local_id)``.

    Team ids never contain the separator, so the split happens on its first
    occurrence. An id without the separator is returned as ``(None, full_id)``.
    """
    team_id, found, local_id = full_id.partition(separator)
    if not found:
        return None, full_id
    return team_id, local_id
