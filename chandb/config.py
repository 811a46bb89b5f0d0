"""
Configuration management for ChanDB.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets (bot token) are never logged or exposed in error messages
    - Governor defaults are conservative until the remote side reports limits

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Changing max_message_size changes how new rows are chunked; rows
      already written stay readable since chunk headers are explicit
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class RemoteBackend(Enum):
    """Supported remote platform backends."""

    DISCORD = "discord"
    MEMORY = "memory"


class DropMode(Enum):
    """What DROP TABLE does to the backing channel."""

    DELETE = "delete"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class DiscordConfig:
    """Discord REST backend configuration.

    Attributes:
        token: Bot token (needs Manage Channels, Send Messages, Manage Messages)
        guild_id: Guild (server) whose channels hold the tables
        api_base: REST API base URL
        timeout_seconds: Per-request timeout
    """

    token: str = ""
    guild_id: str = ""
    api_base: str = "https://discord.com/api/v10"
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> DiscordConfig:
        """Load configuration from environment variables."""
        return cls(
            token=os.getenv("DISCORD_BOT_TOKEN", ""),
            guild_id=os.getenv("DISCORD_GUILD_ID", ""),
            api_base=os.getenv("DISCORD_API_BASE", "https://discord.com/api/v10"),
            timeout_seconds=float(os.getenv("DISCORD_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class GovernorConfig:
    """Rate-limit governor configuration.

    Attributes:
        route_limit: Calls per window per route before any feedback is seen
        route_window_seconds: Window length for the default route budget
        global_limit: Calls per window across all routes
        global_window_seconds: Window length for the global budget
        max_retries: Retries for a single call before surfacing the failure
        max_total_wait_seconds: Total cool-down/backoff time allowed per call
        backoff_base_seconds: First backoff delay for transport failures
        backoff_max_seconds: Cap for the exponential backoff
    """

    route_limit: int = 5
    route_window_seconds: float = 5.0
    global_limit: int = 50
    global_window_seconds: float = 1.0
    max_retries: int = 5
    max_total_wait_seconds: float = 60.0
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0

    @classmethod
    def from_env(cls) -> GovernorConfig:
        """Load configuration from environment variables."""
        return cls(
            route_limit=int(os.getenv("GOVERNOR_ROUTE_LIMIT", "5")),
            route_window_seconds=float(os.getenv("GOVERNOR_ROUTE_WINDOW_SECONDS", "5")),
            global_limit=int(os.getenv("GOVERNOR_GLOBAL_LIMIT", "50")),
            global_window_seconds=float(os.getenv("GOVERNOR_GLOBAL_WINDOW_SECONDS", "1")),
            max_retries=int(os.getenv("GOVERNOR_MAX_RETRIES", "5")),
            max_total_wait_seconds=float(os.getenv("GOVERNOR_MAX_TOTAL_WAIT_SECONDS", "60")),
            backoff_base_seconds=float(os.getenv("GOVERNOR_BACKOFF_BASE_SECONDS", "0.5")),
            backoff_max_seconds=float(os.getenv("GOVERNOR_BACKOFF_MAX_SECONDS", "8")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Storage engine configuration.

    Attributes:
        max_message_size: Per-message content limit used for chunking
        page_size: Messages requested per history page
        channel_prefix: Prefix prepended to table names to form channel names
        drop_mode: Delete or archive (rename) the channel on DROP TABLE
        strict_scan: Fail scans on foreign (non-row) messages instead of skipping
    """

    max_message_size: int = 2000
    page_size: int = 100
    channel_prefix: str = ""
    drop_mode: DropMode = DropMode.DELETE
    strict_scan: bool = True

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        mode = os.getenv("CHANDB_DROP_MODE", "delete").lower()
        try:
            drop_mode = DropMode(mode)
        except ValueError:
            raise ValueError(f"Invalid CHANDB_DROP_MODE '{mode}'. Must be one of: delete, archive")

        return cls(
            max_message_size=int(os.getenv("CHANDB_MAX_MESSAGE_SIZE", "2000")),
            page_size=int(os.getenv("CHANDB_PAGE_SIZE", "100")),
            channel_prefix=os.getenv("CHANDB_CHANNEL_PREFIX", ""),
            drop_mode=drop_mode,
            strict_scan=_env_bool("CHANDB_STRICT_SCAN", "true"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ChanDbConfig:
    """Complete configuration.

    Attributes:
        backend: Which remote platform backend to use
        discord: Discord configuration (if backend is DISCORD)
        governor: Rate-limit governor configuration
        storage: Storage engine configuration
        observability: Logging configuration
    """

    backend: RemoteBackend = RemoteBackend.DISCORD
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    governor: GovernorConfig = field(default_factory=GovernorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ChanDbConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("CHANDB_BACKEND", "discord").lower()
        try:
            backend = RemoteBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid CHANDB_BACKEND '{backend_str}'. Must be one of: discord, memory")

        config = cls(
            backend=backend,
            discord=DiscordConfig.from_env(),
            governor=GovernorConfig.from_env(),
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.backend == RemoteBackend.DISCORD:
            if not self.discord.token:
                raise ValueError("DISCORD_BOT_TOKEN is required when CHANDB_BACKEND=discord")
            if not self.discord.guild_id:
                raise ValueError("DISCORD_GUILD_ID is required when CHANDB_BACKEND=discord")

        # Room for the largest chunk header plus at least one small value
        if self.storage.max_message_size < 64:
            raise ValueError("CHANDB_MAX_MESSAGE_SIZE must be at least 64")
        if not 1 <= self.storage.page_size <= 100:
            raise ValueError("CHANDB_PAGE_SIZE must be between 1 and 100")

        if self.governor.route_limit < 1 or self.governor.global_limit < 1:
            raise ValueError("Governor limits must be positive")
        if self.governor.max_retries < 0:
            raise ValueError("GOVERNOR_MAX_RETRIES must not be negative")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be one of: json, text")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "ChanDB configuration loaded",
            extra={
                "backend": self.backend.value,
                "discord_guild_id": self.discord.guild_id
                if self.backend == RemoteBackend.DISCORD
                else None,
                "discord_token_set": bool(self.discord.token),
                "max_message_size": self.storage.max_message_size,
                "page_size": self.storage.page_size,
                "drop_mode": self.storage.drop_mode.value,
                "governor_route_limit": self.governor.route_limit,
                "governor_max_retries": self.governor.max_retries,
                "log_level": self.observability.log_level,
            },
        )
