"""Configuration management for tunechat."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr

from tunechat.matching.similarity import SIMILARITY_THRESHOLD

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".tunechat"
_CONFIG_FILE = "config.toml"
_DB_FILE = "tunechat.db"
_LOG_DIR = "logs"


def get_base_dir() -> Path:
    """Return the base directory for all tunechat runtime files (~/.tunechat/)."""
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """Settings for the HTTP API process."""

    host: str = Field(default="127.0.0.1", description="Interface the API binds to")
    port: int = Field(default=9848, description="Port for the HTTP API")
    log_level: str = Field(default="info", description="Logging level")


class SpotifyConfig(BaseModel):
    """Spotify developer app credentials used for server-side token exchange."""

    client_id: str = Field(default="", description="Spotify Developer App client ID")
    client_secret: SecretStr = Field(default=SecretStr(""), description="Spotify Developer App client secret")
    redirect_uri: str = Field(default="http://127.0.0.1:8888/callback", description="OAuth redirect URI")


class MatchingConfig(BaseModel):
    """Taste-matching parameters."""

    similarity_threshold: float = Field(
        default=SIMILARITY_THRESHOLD,
        ge=0.0,
        le=1.0,
        description="Minimum Jaccard score for a playlist or user to count as a match",
    )


class ChatConfig(BaseModel):
    """Realtime chat parameters."""

    max_message_length: int = Field(default=1000, ge=1, description="Maximum message length in characters")
    history_page_size: int = Field(default=50, ge=1, description="Messages loaded when a room is opened")
    channel_prefix: str = Field(default="room-", description="Prefix prepended to a room id to name its channel")


class SessionConfig(BaseModel):
    """Client-side session and token cache parameters."""

    token_buffer_seconds: int = Field(
        default=60,
        ge=0,
        description="A cached token with less than this many seconds left is refreshed",
    )


class ProviderConfig(BaseModel):
    """Server-side provider token exchange parameters."""

    server_token_buffer_seconds: int = Field(
        default=300,
        ge=0,
        description="A stored token with less than this many seconds left is exchanged",
    )


class AppConfig(BaseModel):
    """Top-level application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    spotify: SpotifyConfig = Field(default_factory=SpotifyConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def db_path(self) -> Path:
        return self.base_dir / _DB_FILE

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR

    def is_spotify_configured(self) -> bool:
        """Return True if the client credentials needed for token exchange are set."""
        return bool(self.spotify.client_id and self.spotify.client_secret.get_secret_value())


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base directory and log directory if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config() -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


def _format_toml_value(value: object) -> str:
    """Format a single Python value as a TOML literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_toml(config: AppConfig) -> str:
    """Serialize an AppConfig to a minimal TOML string.

    Only handles the flat two-level structure we actually use (tables with
    scalar values).
    """
    lines: list[str] = []
    for section_name in AppConfig.model_fields:
        section_model = getattr(config, section_name)
        lines.append(f"[{section_name}]")
        for key, value in section_model.model_dump(mode="python").items():
            lines.append(f"{key} = {_format_toml_value(value)}")
        lines.append("")
    return "\n".join(lines)


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
