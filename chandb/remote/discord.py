"""
Discord REST platform implementation.

This module provides the production backend: channels of one guild hold the
tables, messages hold the rows. It talks to the Discord REST API (v10)
directly through httpx.

Required bot permissions:
    - Manage Channels (create/rename/delete table channels)
    - Send Messages, Manage Messages (rows, pins)
    - Read Message History, Message Content intent

Invariants:
    - Every response's X-RateLimit-* headers are returned to the caller
    - 429 responses become RateLimitedError with the server's cool-down
    - Timeouts, transport errors and 5xx become PlatformUnavailableError
    - Row text never pings anyone (allowed_mentions is empty)

How to change safely:
    - Test against a scratch guild before deploying
    - Keep payload models tolerant of unknown fields (the API adds fields)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError

from .._version import __version__
from .base import (
    Channel,
    MessageKind,
    PlatformError,
    PlatformNotFoundError,
    PlatformUnavailableError,
    RateLimitedError,
    RateLimitInfo,
    RawMessage,
    RemoteResult,
    snowflake_time_ms,
)

logger = logging.getLogger(__name__)

GUILD_TEXT = 0
MESSAGE_TYPE_DEFAULT = 0
MESSAGE_TYPE_PIN_NOTICE = 6
MESSAGE_TYPE_REPLY = 19
SUPPRESS_EMBEDS = 1 << 2

# JSON error codes of 404 responses
UNKNOWN_RESOURCE_CODES = {
    10003: "channel",
    10004: "guild",
    10008: "message",
}


class ChannelPayload(BaseModel):
    """Subset of the Discord channel object the store needs."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    type: int = GUILD_TEXT
    topic: Optional[str] = None

    def to_channel(self) -> Channel:
        return Channel(
            id=self.id,
            name=self.name,
            created_at_ms=snowflake_time_ms(self.id),
            topic=self.topic,
        )


class MessagePayload(BaseModel):
    """Subset of the Discord message object the store needs."""

    model_config = ConfigDict(extra="ignore")

    id: str
    channel_id: str
    content: str = ""
    type: int = MESSAGE_TYPE_DEFAULT
    pinned: bool = False
    edited_timestamp: Optional[str] = None

    def to_message(self) -> RawMessage:
        if self.type in (MESSAGE_TYPE_DEFAULT, MESSAGE_TYPE_REPLY):
            kind = MessageKind.DEFAULT
        elif self.type == MESSAGE_TYPE_PIN_NOTICE:
            kind = MessageKind.PIN_NOTICE
        else:
            kind = MessageKind.OTHER
        return RawMessage(
            id=self.id,
            channel_id=self.channel_id,
            content=self.content,
            kind=kind,
            pinned=self.pinned,
            edited=self.edited_timestamp is not None,
        )


class DiscordPlatform:
    """Discord implementation of the ChatPlatform protocol.

    Attributes:
        config: DiscordConfig instance
        max_message_size: Discord's content limit (2000 characters)
        page_size_cap: Discord's history page cap (100 messages)

    Example:
        >>> platform = DiscordPlatform(DiscordConfig(token="...", guild_id="123"))
        >>> await platform.connect()
        >>> channels = (await platform.list_channels("123")).value
    """

    max_message_size = 2000
    page_size_cap = 100

    def __init__(self, config: Any, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        """Initialize Discord platform.

        Args:
            config: DiscordConfig instance with token and API base
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_connected(self) -> bool:
        """Whether the HTTP client is open."""
        return self._client is not None and not self._client.is_closed

    async def connect(self) -> None:
        """Create the HTTP client.

        Raises:
            PlatformError: If no token is configured
        """
        if self.is_connected:
            return
        if not self.config.token:
            raise PlatformError("Discord bot token is not configured")

        self._client = httpx.AsyncClient(
            base_url=self.config.api_base,
            headers={
                "Authorization": f"Bot {self.config.token}",
                "User-Agent": f"DiscordBot (https://github.com/chandb/chandb, {__version__})",
            },
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )
        logger.info("Discord client ready", extra={"api_base": self.config.api_base})

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Discord client closed")

    async def list_channels(self, guild_id: str) -> RemoteResult[List[Channel]]:
        result = await self._request("GET", f"/guilds/{guild_id}/channels")
        channels = [
            payload.to_channel()
            for payload in self._parse_list(ChannelPayload, result.value)
            if payload.type == GUILD_TEXT
        ]
        return RemoteResult(channels, result.limits)

    async def create_channel(
        self, guild_id: str, name: str, topic: Optional[str] = None
    ) -> RemoteResult[Channel]:
        body: Dict[str, Any] = {"name": name, "type": GUILD_TEXT}
        if topic:
            body["topic"] = topic
        result = await self._request("POST", f"/guilds/{guild_id}/channels", json=body)
        return RemoteResult(self._parse(ChannelPayload, result.value).to_channel(), result.limits)

    async def rename_channel(self, channel_id: str, name: str) -> RemoteResult[Channel]:
        result = await self._request("PATCH", f"/channels/{channel_id}", json={"name": name})
        return RemoteResult(self._parse(ChannelPayload, result.value).to_channel(), result.limits)

    async def delete_channel(self, channel_id: str) -> RemoteResult[None]:
        result = await self._request("DELETE", f"/channels/{channel_id}")
        return RemoteResult(None, result.limits)

    async def send_message(self, channel_id: str, content: str) -> RemoteResult[RawMessage]:
        body = {
            "content": content,
            "allowed_mentions": {"parse": []},
            "flags": SUPPRESS_EMBEDS,
        }
        result = await self._request("POST", f"/channels/{channel_id}/messages", json=body)
        return RemoteResult(self._parse(MessagePayload, result.value).to_message(), result.limits)

    async def edit_message(
        self, channel_id: str, message_id: str, content: str
    ) -> RemoteResult[RawMessage]:
        body = {"content": content, "allowed_mentions": {"parse": []}}
        result = await self._request(
            "PATCH", f"/channels/{channel_id}/messages/{message_id}", json=body
        )
        return RemoteResult(self._parse(MessagePayload, result.value).to_message(), result.limits)

    async def delete_message(self, channel_id: str, message_id: str) -> RemoteResult[None]:
        result = await self._request("DELETE", f"/channels/{channel_id}/messages/{message_id}")
        return RemoteResult(None, result.limits)

    async def get_message(self, channel_id: str, message_id: str) -> RemoteResult[RawMessage]:
        result = await self._request("GET", f"/channels/{channel_id}/messages/{message_id}")
        return RemoteResult(self._parse(MessagePayload, result.value).to_message(), result.limits)

    async def fetch_messages(
        self, channel_id: str, after: Optional[str], limit: int
    ) -> RemoteResult[List[RawMessage]]:
        params = {
            "after": after if after is not None else "0",
            "limit": max(1, min(limit, self.page_size_cap)),
        }
        result = await self._request("GET", f"/channels/{channel_id}/messages", params=params)
        messages = [p.to_message() for p in self._parse_list(MessagePayload, result.value)]
        # The API returns newest first even when paging forward with `after`
        messages.sort(key=lambda m: int(m.id))
        return RemoteResult(messages, result.limits)

    async def get_pins(self, channel_id: str) -> RemoteResult[List[RawMessage]]:
        result = await self._request("GET", f"/channels/{channel_id}/pins")
        pins = [p.to_message() for p in self._parse_list(MessagePayload, result.value)]
        return RemoteResult(pins, result.limits)

    async def pin_message(self, channel_id: str, message_id: str) -> RemoteResult[None]:
        result = await self._request(
            "PUT",
            f"/channels/{channel_id}/pins/{message_id}",
            headers={"X-Audit-Log-Reason": "add table schema"},
        )
        return RemoteResult(None, result.limits)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> RemoteResult[Any]:
        """Send one request and translate the response.

        Raises:
            RateLimitedError: On 429
            PlatformNotFoundError: On 404
            PlatformUnavailableError: On timeout, transport error or 5xx
            PlatformError: On any other non-success status
        """
        if self._client is None:
            raise PlatformUnavailableError("Not connected to Discord")

        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            raise PlatformUnavailableError(f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise PlatformUnavailableError(f"{method} {path} failed: {e}") from e

        limits = RateLimitInfo.from_headers(response.headers)

        logger.debug(
            "Discord request",
            extra={
                "method": method,
                "path": path,
                "status": response.status_code,
                "remaining": limits.remaining if limits else None,
            },
        )

        if response.status_code == 429:
            body = self._json_or_empty(response)
            retry_after = body.get("retry_after")
            if retry_after is None:
                retry_after = response.headers.get("Retry-After", "1")
            is_global = bool(body.get("global")) or (
                response.headers.get("X-RateLimit-Global", "").lower() == "true"
            )
            raise RateLimitedError(
                f"{method} {path} rate limited",
                retry_after=float(retry_after),
                is_global=is_global,
                limits=limits,
            )

        if response.status_code == 404:
            raise self._not_found(method, path, self._json_or_empty(response))

        if response.status_code >= 500:
            raise PlatformUnavailableError(
                f"{method} {path} failed with {response.status_code}",
                status=response.status_code,
            )

        if response.status_code >= 400:
            message = self._json_or_empty(response).get("message", response.text)
            raise PlatformError(
                f"{method} {path} rejected ({response.status_code}): {message}",
                status=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return RemoteResult(None, limits)
        return RemoteResult(response.json(), limits)

    @staticmethod
    def _not_found(method: str, path: str, body: Dict[str, Any]) -> PlatformNotFoundError:
        """Name the missing resource from the error code, else from the path."""
        segments = path.strip("/").split("/")
        ids = dict(zip(segments[::2], segments[1::2]))
        resource_type = UNKNOWN_RESOURCE_CODES.get(body.get("code"))
        if resource_type is None:
            if "messages" in ids or "pins" in ids:
                resource_type = "message"
            elif "channels" in ids:
                resource_type = "channel"
            else:
                resource_type = "guild"
        if resource_type == "message":
            resource_id = ids.get("messages") or ids.get("pins") or ""
        else:
            resource_id = ids.get(f"{resource_type}s", "")
        return PlatformNotFoundError(
            f"{method} {path} not found: {body.get('message', 'unknown resource')}",
            resource_type=resource_type,
            resource_id=resource_id,
        )

    @staticmethod
    def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _parse(model: Any, data: Any) -> Any:
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            raise PlatformError(f"Unexpected {model.__name__} payload: {e}") from e

    @classmethod
    def _parse_list(cls, model: Any, data: Any) -> List[Any]:
        if not isinstance(data, list):
            raise PlatformError(f"Expected a list of {model.__name__}, got {type(data).__name__}")
        return [cls._parse(model, item) for item in data]
