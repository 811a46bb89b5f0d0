"""
Remote chat platform abstraction for ChanDB.

This module provides a pluggable platform backend interface supporting:
- Discord REST API (production)
- In-memory (for testing)

plus the RateLimitGovernor that every remote call passes through.

Invariants:
    - The channel log is the source of truth; nothing is persisted locally
    - Messages in a channel are ordered by id
    - Platform errors are translated into ChanDB errors by the governor

How to change safely:
    - New backends must implement the ChatPlatform protocol
    - Return rate-limit feedback from every call so the governor can adapt
"""

from .base import (
    Channel,
    ChatPlatform,
    MessageKind,
    PlatformError,
    PlatformNotFoundError,
    PlatformUnavailableError,
    RateLimitedError,
    RateLimitInfo,
    RawMessage,
    RemoteResult,
    create_platform,
)
from .discord import DiscordPlatform
from .governor import Permit, RateLimitGovernor, TokenBucket, route_key
from .memory import InMemoryPlatform

__all__ = [
    # Protocol and types
    "ChatPlatform",
    "Channel",
    "RawMessage",
    "MessageKind",
    "RateLimitInfo",
    "RemoteResult",
    "PlatformError",
    "PlatformNotFoundError",
    "PlatformUnavailableError",
    "RateLimitedError",
    # Factory
    "create_platform",
    # Implementations
    "DiscordPlatform",
    "InMemoryPlatform",
    # Governor
    "RateLimitGovernor",
    "TokenBucket",
    "Permit",
    "route_key",
]
