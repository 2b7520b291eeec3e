"""
Icon selection for Slack image maps.

Teams, users and bots all describe their avatar as a map such as
``{"image_34": ..., "image_72": ..., "image_original": ..., "image_default": True}``.
"""
from typing import Any, Dict, Optional

IMAGE_PREFIX = "image_"


def _icon_rank(key: str):
    size = key[len(IMAGE_PREFIX):]
    if size == "original":
        return (0, 0)
    if size.isdigit():
        return (1, -int(size))
    return (2, 0)


def best_icon_url(icon: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Pick the highest-resolution image URL from an icon map.

    ``image_original`` wins, then numeric sizes from largest to smallest, then
    any other ``image_*`` key. Non-string values (``image_default: True``) are ignored.
    """
    if not icon:
        return None
    keys = [key for key, value in icon.items() if key.startswith(IMAGE_PREFIX) and isinstance(value, str)]
    if not keys:
        return None
    return icon[min(keys, key=_icon_rank)] or None


def icon_emoji(icon: Optional[Dict[str, Any]]) -> Optional[str]:
    """Get the emoji used as an icon, if the map has one."""
    if not icon:
        return None
    emoji = icon.get("emoji")
    return emoji if isinstance(emoji, str) and emoji else None
