"""
Configuration settings.
=======================

This module defines the configuration settings for the luotain feed discovery service.

Order of precedence:
    1. Environment variables
    2. `.env` file
    3. Secrets directory (e.g. `/run/secrets`).
    4. YAML configuration file, with the following locations:
        - User defined settings file ($LUOTAIN_CONFIG_FILE)
        - User defined settings ($XDG_CONFIG_HOME)
        - System wide settings ($XDG_CONFIG_DIRS)
        - Local settings: `./config.yaml`
        - Docker settings: `/config/config.yaml`

"""
import logging
import os
from contextvars import ContextVar
from importlib.metadata import PackageNotFoundError, metadata
from pathlib import Path
from typing import Literal, Type

from platformdirs import site_config_dir, user_config_dir
from pydantic import Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

logger = logging.getLogger(__name__)

DEFAULT_BOT_ID = "Luotain"

_pkg_name, *_ = __package__.split(".")
try:
    _pkg_metadata = dict(metadata(_pkg_name))
except PackageNotFoundError:
    _pkg_metadata = {"Version": "0.0.0"}
finally:
    # Set the homepage from the metadata
    _project_url = _pkg_metadata.get("Project-URL", "")
    _pkg_metadata.setdefault("Home-page", _project_url.split(", ")[-1] if _project_url else "")


# User defined settings
_user_config_path = Path(user_config_dir(_pkg_name), "config.yaml")
DEFAULT_CONFIG_PATH = _user_config_path

# Locations to look for the settings file
# notice: order is reversed to give precedence to the user defined settings
_settings_file_location: list[Path] = [
    Path("/config/config.yaml"),  # Docker settings
    Path.cwd() / "config.yaml",  # Local settings
    Path(site_config_dir(_pkg_name)) / "config.yaml",  # System wide settings
    _user_config_path
]
if _conf_file := os.getenv("LUOTAIN_CONFIG_FILE"):
    _conf_file = Path(_conf_file)
    _settings_file_location.append(_conf_file)
    DEFAULT_CONFIG_PATH = _conf_file


class Settings(BaseSettings):
    DEBUG: bool = Field(
        False,
        description="Enable debug mode.",
    )

    TRACING_ENABLED: bool = Field(
        True,
        description="Enable OpenTelemetry tracing.",
    )

    BOT_ID: str = Field(DEFAULT_BOT_ID, description="Bot ID.")
    BOT_USER_AGENT: str = Field(
        "Mozilla/5.0 (compatible;)",
        description="User agent for requests. Computed from package metadata and `BOT_ID` when not set.",
    )

    # Logging settings
    LOGGING_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO",
        description="Logging level.",
    )

    # Network limits
    REQUEST_TIMEOUT: float = Field(10.0, gt=0, description="Deadline in seconds for feed, page and lookup requests.")
    ICON_TIMEOUT: float = Field(5.0, gt=0, description="Deadline in seconds for icon metadata requests.")
    MAX_RESPONSE_SIZE: int = Field(10 * 1024 * 1024, gt=0, description="Maximum response body size in bytes.")
    MAX_REDIRECTS: int = Field(10, ge=0, description="Maximum number of redirects to follow.")
    MAX_WORKERS: int = Field(8, ge=1, description="Number of candidate feeds validated in parallel.")

    # Upstream endpoints
    ITUNES_LOOKUP_URL: str = Field(
        "https://itunes.apple.com/lookup",
        description="iTunes lookup API endpoint.",
    )
    REDDIT_ABOUT_URL: str = Field(
        "https://www.reddit.com/r/{subreddit}/about.json",
        description="Subreddit metadata endpoint, formatted with `subreddit`.",
    )

    @model_validator(mode="before")
    @classmethod
    def _compute_user_agent(cls, values):
        """
        Compute the user-agent string.
        """
        if not isinstance(values, dict):
            return values
        bot_info = _pkg_metadata.copy()
        bot_info.setdefault("BOT_ID", values.get("BOT_ID", DEFAULT_BOT_ID))
        user_agent = "Mozilla/5.0 (compatible; {BOT_ID}/{Version}; +{Home-page})" if bot_info.get("Home-page") \
            else "Mozilla/5.0 (compatible; {BOT_ID}/{Version})"
        user_agent = user_agent.format(**bot_info)
        values.setdefault('BOT_USER_AGENT', user_agent)
        return values

    @classmethod
    def settings_customise_sources(cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            YamlConfigSettingsSource(settings_cls),
        )

    model_config = SettingsConfigDict(
        secrets_dir='/run/secrets',
        yaml_file=_settings_file_location,
        yaml_file_encoding="utf-8",
        env_prefix="LUOTAIN_",
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',  # If dotenv contains extra keys, ignore them
    )


settings_var: ContextVar[Settings] = ContextVar(f"{__package__}.settings_var", default=Settings())


def get_settings() -> Settings:
    """Return the settings active in the current context."""
    return settings_var.get()
