"""
Settings for teamcache, loaded from environment variables and ``.env``.
"""
from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Slack
    slack_api_token: str = Field(
        default="",
        validation_alias=AliasChoices("SLACK_API_TOKEN", "TEAMCACHE_SLACK_API_TOKEN"),
    )
    app_id: Optional[str] = None  # Ignore push events addressed to other apps

    # Store
    id_separator: str = "-"
    auto_join_channels: bool = True  # Bot tokens join channels created after startup

    # Listings
    conversation_types: str = "public_channel,private_channel,mpim,im"
    list_page_limit: int = 200

    # CLI
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="TEAMCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
