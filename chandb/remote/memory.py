"""
In-memory chat platform implementation for testing.

This module provides a simple in-memory platform backend for:
- Unit tests
- Integration tests
- Local development without a bot token

Invariants:
    - All data is lost on process exit
    - Provides the same ordering and size guarantees as the real platform
    - Pinning a message appends a system pin notice, like the real platform
    - Safe for concurrent coroutines

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ChatPlatform protocol
    - Add features to help with testing scenarios (fault injection)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from .base import (
    SNOWFLAKE_EPOCH_MS,
    Channel,
    MessageKind,
    PlatformError,
    PlatformNotFoundError,
    PlatformUnavailableError,
    RateLimitedError,
    RateLimitInfo,
    RawMessage,
    RemoteResult,
)

logger = logging.getLogger(__name__)

FaultPredicate = Callable[[str, Dict[str, Any]], bool]


@dataclass
class InMemoryChannel:
    """In-memory channel storage."""
    channel: Channel
    guild_id: str
    messages: Dict[str, RawMessage] = field(default_factory=dict)


@dataclass
class _Fault:
    remaining: int
    operation: Optional[str]
    make_error: Callable[[str], PlatformError]


class InMemoryPlatform:
    """In-memory implementation of ChatPlatform for testing.

    Attributes:
        max_message_size: Per-message content limit (characters)
        page_size_cap: Maximum messages per history page
        calls: Log of (operation, arguments) for every call made
        advertised_limits: Rate-limit feedback attached to every result

    Fault injection:
        - reject_next(): next calls fail with a 429 and a cool-down
        - fail_next(): next calls fail with a transport error
        - fail_when(): calls matching a predicate fail until clear_faults()

    Example:
        >>> platform = InMemoryPlatform()
        >>> await platform.connect()
        >>> chan = (await platform.create_channel("guild", "users")).value
        >>> msg = (await platform.send_message(chan.id, "hello")).value
    """

    def __init__(
        self,
        max_message_size: int = 2000,
        page_size_cap: int = 100,
        advertised_limits: Optional[RateLimitInfo] = None,
    ) -> None:
        """Initialize in-memory platform.

        Args:
            max_message_size: Per-message content limit
            page_size_cap: Maximum messages per fetch
            advertised_limits: Rate-limit feedback returned with each call
        """
        self.max_message_size = max_message_size
        self.page_size_cap = page_size_cap
        self.advertised_limits = advertised_limits
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._channels: Dict[str, InMemoryChannel] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._last_id = 0
        self._faults: List[_Fault] = []
        self._predicates: List[FaultPredicate] = []

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryPlatform connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._channels.clear()
        logger.debug("InMemoryPlatform closed")

    async def list_channels(self, guild_id: str) -> RemoteResult[List[Channel]]:
        self._enter("list_channels", guild_id=guild_id)
        channels = [c.channel for c in self._channels.values() if c.guild_id == guild_id]
        return self._result(channels)

    async def create_channel(
        self, guild_id: str, name: str, topic: Optional[str] = None
    ) -> RemoteResult[Channel]:
        self._enter("create_channel", guild_id=guild_id, name=name)
        async with self._lock:
            channel_id = self._next_id()
            channel = Channel(
                id=channel_id,
                name=name,
                created_at_ms=(int(channel_id) >> 22) + SNOWFLAKE_EPOCH_MS,
                topic=topic,
            )
            self._channels[channel_id] = InMemoryChannel(channel=channel, guild_id=guild_id)
        return self._result(channel)

    async def rename_channel(self, channel_id: str, name: str) -> RemoteResult[Channel]:
        self._enter("rename_channel", channel_id=channel_id, name=name)
        async with self._lock:
            chan = self._channel(channel_id)
            chan.channel = replace(chan.channel, name=name)
        return self._result(chan.channel)

    async def delete_channel(self, channel_id: str) -> RemoteResult[None]:
        self._enter("delete_channel", channel_id=channel_id)
        async with self._lock:
            self._channel(channel_id)
            del self._channels[channel_id]
        return self._result(None)

    async def send_message(self, channel_id: str, content: str) -> RemoteResult[RawMessage]:
        self._enter("send_message", channel_id=channel_id, content=content)
        self._check_content(content)
        async with self._lock:
            chan = self._channel(channel_id)
            message = RawMessage(id=self._next_id(), channel_id=channel_id, content=content)
            chan.messages[message.id] = message
        return self._result(message)

    async def edit_message(
        self, channel_id: str, message_id: str, content: str
    ) -> RemoteResult[RawMessage]:
        self._enter("edit_message", channel_id=channel_id, message_id=message_id, content=content)
        self._check_content(content)
        async with self._lock:
            chan = self._channel(channel_id)
            message = self._message(chan, message_id)
            message = replace(message, content=content, edited=True)
            chan.messages[message_id] = message
        return self._result(message)

    async def delete_message(self, channel_id: str, message_id: str) -> RemoteResult[None]:
        self._enter("delete_message", channel_id=channel_id, message_id=message_id)
        async with self._lock:
            chan = self._channel(channel_id)
            self._message(chan, message_id)
            del chan.messages[message_id]
        return self._result(None)

    async def get_message(self, channel_id: str, message_id: str) -> RemoteResult[RawMessage]:
        self._enter("get_message", channel_id=channel_id, message_id=message_id)
        chan = self._channel(channel_id)
        return self._result(self._message(chan, message_id))

    async def fetch_messages(
        self, channel_id: str, after: Optional[str], limit: int
    ) -> RemoteResult[List[RawMessage]]:
        self._enter("fetch_messages", channel_id=channel_id, after=after, limit=limit)
        chan = self._channel(channel_id)
        limit = max(1, min(limit, self.page_size_cap))
        floor = int(after) if after is not None else -1
        page = [m for m in chan.messages.values() if int(m.id) > floor][:limit]
        return self._result(page)

    async def get_pins(self, channel_id: str) -> RemoteResult[List[RawMessage]]:
        self._enter("get_pins", channel_id=channel_id)
        chan = self._channel(channel_id)
        pins = [m for m in chan.messages.values() if m.pinned]
        pins.reverse()  # newest pin first
        return self._result(pins)

    async def pin_message(self, channel_id: str, message_id: str) -> RemoteResult[None]:
        self._enter("pin_message", channel_id=channel_id, message_id=message_id)
        async with self._lock:
            chan = self._channel(channel_id)
            message = self._message(chan, message_id)
            chan.messages[message_id] = replace(message, pinned=True)
            notice = RawMessage(
                id=self._next_id(),
                channel_id=channel_id,
                content="",
                kind=MessageKind.PIN_NOTICE,
            )
            chan.messages[notice.id] = notice
        return self._result(None)

    # Fault injection

    def reject_next(
        self,
        count: int = 1,
        retry_after: float = 0.5,
        is_global: bool = False,
        operation: Optional[str] = None,
    ) -> None:
        """Reject the next ``count`` calls with a rate-limit cool-down."""
        self._faults.append(
            _Fault(
                remaining=count,
                operation=operation,
                make_error=lambda op: RateLimitedError(
                    f"429 on {op}", retry_after=retry_after, is_global=is_global
                ),
            )
        )

    def fail_next(self, count: int = 1, operation: Optional[str] = None) -> None:
        """Fail the next ``count`` calls with a transport error."""
        self._faults.append(
            _Fault(
                remaining=count,
                operation=operation,
                make_error=lambda op: PlatformUnavailableError(f"connection reset during {op}"),
            )
        )

    def fail_when(self, predicate: FaultPredicate) -> None:
        """Fail every call for which ``predicate(operation, args)`` is true."""
        self._predicates.append(predicate)

    def clear_faults(self) -> None:
        """Remove all injected faults."""
        self._faults.clear()
        self._predicates.clear()

    # Testing helpers

    def call_count(self, operation: Optional[str] = None) -> int:
        """Number of calls made (optionally for one operation)."""
        if operation is None:
            return len(self.calls)
        return sum(1 for op, _ in self.calls if op == operation)

    def get_all_messages(self, channel_id: str) -> List[RawMessage]:
        """All messages in a channel, oldest first (testing helper)."""
        return list(self._channels[channel_id].messages.values())

    def channel_by_name(self, name: str) -> Optional[Channel]:
        """Find a channel by name (testing helper)."""
        for chan in self._channels.values():
            if chan.channel.name == name:
                return chan.channel
        return None

    async def post_raw(self, channel_id: str, content: str) -> RawMessage:
        """Post a message bypassing fault injection and call logging (testing helper)."""
        async with self._lock:
            chan = self._channel(channel_id)
            message = RawMessage(id=self._next_id(), channel_id=channel_id, content=content)
            chan.messages[message.id] = message
        return message

    # Internals

    def _enter(self, operation: str, **args: Any) -> None:
        if not self._connected:
            raise PlatformUnavailableError("Not connected")
        self.calls.append((operation, args))

        for predicate in self._predicates:
            if predicate(operation, args):
                raise PlatformUnavailableError(f"injected failure during {operation}")

        for fault in self._faults:
            if fault.remaining > 0 and fault.operation in (None, operation):
                fault.remaining -= 1
                if fault.remaining == 0:
                    self._faults.remove(fault)
                raise fault.make_error(operation)

    def _result(self, value: Any) -> RemoteResult[Any]:
        return RemoteResult(value=value, limits=self.advertised_limits)

    def _check_content(self, content: str) -> None:
        if not content:
            raise PlatformError("Cannot send an empty message", status=400)
        if len(content) > self.max_message_size:
            raise PlatformError(
                f"Content length {len(content)} exceeds {self.max_message_size}",
                status=400,
            )

    def _channel(self, channel_id: str) -> InMemoryChannel:
        chan = self._channels.get(channel_id)
        if chan is None:
            raise PlatformNotFoundError(
                f"Unknown channel {channel_id}", resource_type="channel", resource_id=channel_id
            )
        return chan

    def _message(self, chan: InMemoryChannel, message_id: str) -> RawMessage:
        message = chan.messages.get(message_id)
        if message is None:
            raise PlatformNotFoundError(
                f"Unknown message {message_id}", resource_type="message", resource_id=message_id
            )
        return message

    def _next_id(self) -> str:
        """Snowflake-like id: creation time in the high bits, strictly increasing."""
        now_ms = int(time.time() * 1000)
        self._last_id = max(self._last_id + 1, (now_ms - SNOWFLAKE_EPOCH_MS) << 22)
        return str(self._last_id)
