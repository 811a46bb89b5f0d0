"""
Base protocol and types for the remote chat platform abstraction.

This module defines the ChatPlatform protocol that all backends must
implement, along with the common types for channels, messages, rate-limit
feedback and platform-level errors.

Invariants:
    - Message ids are decimal strings that increase with creation time
    - fetch_messages() returns messages in ascending id order (oldest first)
    - Every call returns a RemoteResult carrying the rate-limit feedback
    - Platform errors never leak past the governor; it translates them

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
    - Keep RawMessage free of backend-specific payload objects
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Generic,
    List,
    Mapping,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
    TYPE_CHECKING,
)
import logging

if TYPE_CHECKING:
    from ..config import ChanDbConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Discord epoch (2015-01-01T00:00:00Z) in Unix milliseconds
SNOWFLAKE_EPOCH_MS = 1420070400000


class PlatformError(Exception):
    """Base exception for remote platform operations."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitedError(PlatformError):
    """Remote side rejected the call with a cool-down (HTTP 429)."""

    def __init__(
        self,
        message: str,
        retry_after: float,
        is_global: bool = False,
        limits: Optional[RateLimitInfo] = None,
    ) -> None:
        super().__init__(message, status=429)
        self.retry_after = retry_after
        self.is_global = is_global
        self.limits = limits


class PlatformUnavailableError(PlatformError):
    """Transport failure, timeout or server-side error. Retryable."""
    pass


class PlatformNotFoundError(PlatformError):
    """Channel or message does not exist."""

    def __init__(self, message: str, resource_type: str, resource_id: str) -> None:
        super().__init__(message, status=404)
        self.resource_type = resource_type
        self.resource_id = resource_id


def snowflake_time_ms(snowflake: str) -> int:
    """Creation time (Unix ms) encoded in a snowflake id."""
    return (int(snowflake) >> 22) + SNOWFLAKE_EPOCH_MS


class MessageKind(Enum):
    """Kinds of channel messages the storage layer distinguishes."""

    DEFAULT = "default"
    PIN_NOTICE = "pin_notice"  # system message posted when a message is pinned
    OTHER = "other"


@dataclass(frozen=True)
class Channel:
    """A remote channel backing one table.

    Attributes:
        id: Channel identifier
        name: Channel name (the normalized table name)
        created_at_ms: Creation timestamp (Unix ms)
        topic: Channel topic, if any
    """
    id: str
    name: str
    created_at_ms: int
    topic: Optional[str] = None


@dataclass(frozen=True)
class RawMessage:
    """A message as read from the channel log.

    Attributes:
        id: Message identifier (row id when this is an anchor)
        channel_id: Channel the message belongs to
        content: Current message text (reflects the latest edit)
        kind: Regular or system message
        pinned: Whether the message is pinned (schema record)
        edited: Whether the message has been edited
    """
    id: str
    channel_id: str
    content: str
    kind: MessageKind = MessageKind.DEFAULT
    pinned: bool = False
    edited: bool = False

    @property
    def is_data(self) -> bool:
        """Whether this message can carry a row or chunk."""
        return self.kind == MessageKind.DEFAULT and not self.pinned

    @property
    def created_at_ms(self) -> int:
        return snowflake_time_ms(self.id)


@dataclass(frozen=True)
class RateLimitInfo:
    """Rate-limit feedback attached to a remote response.

    Attributes:
        limit: Calls allowed per window for the bucket
        remaining: Calls left in the current window
        reset_after: Seconds until the window resets
        bucket: Opaque bucket identifier reported by the remote side
        is_global: Whether this feedback concerns the global limit
    """
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_after: Optional[float] = None
    bucket: Optional[str] = None
    is_global: bool = False

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> Optional[RateLimitInfo]:
        """Parse ``X-RateLimit-*`` headers.

        Returns:
            RateLimitInfo, or None when the response carried no feedback
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        if not any(k.startswith("x-ratelimit-") for k in lowered):
            return None

        def _num(name: str, kind: Any) -> Any:
            raw = lowered.get(name)
            if raw is None:
                return None
            try:
                return kind(raw)
            except ValueError:
                logger.warning(f"Ignoring unparsable rate-limit header {name}={raw!r}")
                return None

        return cls(
            limit=_num("x-ratelimit-limit", int),
            remaining=_num("x-ratelimit-remaining", int),
            reset_after=_num("x-ratelimit-reset-after", float),
            bucket=lowered.get("x-ratelimit-bucket"),
            is_global=lowered.get("x-ratelimit-global", "").lower() == "true",
        )


@dataclass(frozen=True)
class RemoteResult(Generic[T]):
    """Value returned by a remote call plus the observed rate-limit feedback."""
    value: T
    limits: Optional[RateLimitInfo] = None


@runtime_checkable
class ChatPlatform(Protocol):
    """Protocol for remote chat platform backends.

    Ordering contract:
        - Message ids within a channel increase with creation order
        - fetch_messages(after=X) returns the oldest messages newer than X
        - Edits change content in place; the id and position stay the same

    Size contract:
        - max_message_size is the per-message content limit in characters
        - page_size_cap is the maximum messages returned by one fetch

    Example:
        >>> platform = DiscordPlatform(config.discord)
        >>> await platform.connect()
        >>> result = await platform.send_message(channel_id, "R1:1|\\"a\\"")
        >>> print(result.value.id)
    """

    max_message_size: int
    page_size_cap: int

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the platform. Must be called before other operations."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected."""
        ...

    @abstractmethod
    async def list_channels(self, guild_id: str) -> RemoteResult[List[Channel]]:
        ...

    @abstractmethod
    async def create_channel(
        self, guild_id: str, name: str, topic: Optional[str] = None
    ) -> RemoteResult[Channel]:
        ...

    @abstractmethod
    async def rename_channel(self, channel_id: str, name: str) -> RemoteResult[Channel]:
        ...

    @abstractmethod
    async def delete_channel(self, channel_id: str) -> RemoteResult[None]:
        ...

    @abstractmethod
    async def send_message(self, channel_id: str, content: str) -> RemoteResult[RawMessage]:
        ...

    @abstractmethod
    async def edit_message(
        self, channel_id: str, message_id: str, content: str
    ) -> RemoteResult[RawMessage]:
        ...

    @abstractmethod
    async def delete_message(self, channel_id: str, message_id: str) -> RemoteResult[None]:
        ...

    @abstractmethod
    async def get_message(self, channel_id: str, message_id: str) -> RemoteResult[RawMessage]:
        ...

    @abstractmethod
    async def fetch_messages(
        self, channel_id: str, after: Optional[str], limit: int
    ) -> RemoteResult[List[RawMessage]]:
        """Fetch one page of history.

        Args:
            channel_id: Channel to read
            after: Return only messages with id greater than this (None = from start)
            limit: Maximum messages to return (clamped to page_size_cap)

        Returns:
            Messages in ascending id order
        """
        ...

    @abstractmethod
    async def get_pins(self, channel_id: str) -> RemoteResult[List[RawMessage]]:
        ...

    @abstractmethod
    async def pin_message(self, channel_id: str, message_id: str) -> RemoteResult[None]:
        ...


def create_platform(config: "ChanDbConfig") -> ChatPlatform:
    """Factory function to create a platform backend from configuration.

    Args:
        config: ChanDB configuration

    Returns:
        Appropriate ChatPlatform implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import RemoteBackend
    from .discord import DiscordPlatform
    from .memory import InMemoryPlatform

    if config.backend == RemoteBackend.DISCORD:
        return DiscordPlatform(config.discord)
    elif config.backend == RemoteBackend.MEMORY:
        return InMemoryPlatform(
            max_message_size=config.storage.max_message_size,
            page_size_cap=config.storage.page_size,
        )
    else:
        raise ValueError(f"Unsupported remote backend: {config.backend}")
