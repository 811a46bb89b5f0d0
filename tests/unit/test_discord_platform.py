"""
Unit tests for the Discord REST platform.

Requests are served by an httpx.MockTransport; no network access.

Tests cover:
- Request shape (paths, auth, payloads)
- Payload parsing
- Rate-limit header parsing
- HTTP error translation
"""

import json

import httpx
import pytest

from chandb.config import DiscordConfig, StorageConfig
from chandb.errors import NotFoundError
from chandb.remote.base import (
    MessageKind,
    PlatformError,
    PlatformNotFoundError,
    PlatformUnavailableError,
    RateLimitedError,
)
from chandb.remote.discord import DiscordPlatform
from chandb.remote.governor import route_key
from chandb.schema.registry import render_schema
from chandb.schema.types import TableSchema, column
from chandb.storage.store import ChannelStore

CONFIG = DiscordConfig(token="secret", guild_id="42")

RATE_HEADERS = {
    "X-RateLimit-Limit": "5",
    "X-RateLimit-Remaining": "4",
    "X-RateLimit-Reset-After": "1.5",
    "X-RateLimit-Bucket": "abc",
}


def message_payload(message_id, content, **extra):
    payload = {"id": message_id, "channel_id": "100", "content": content, "type": 0}
    payload.update(extra)
    return payload


async def connected(handler):
    platform = DiscordPlatform(CONFIG, transport=httpx.MockTransport(handler))
    await platform.connect()
    return platform


class TestDiscordPlatform:
    """Tests for DiscordPlatform requests and parsing."""

    @pytest.mark.asyncio
    async def test_connect_requires_token(self):
        """A missing token fails fast."""
        platform = DiscordPlatform(DiscordConfig(token="", guild_id="42"))

        with pytest.raises(PlatformError):
            await platform.connect()

    @pytest.mark.asyncio
    async def test_send_message(self):
        """Messages are posted without mentions and parsed back."""
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=message_payload("555", "R1:1"), headers=RATE_HEADERS)

        platform = await connected(handler)
        result = await platform.send_message("100", "R1:1")
        await platform.close()

        assert seen["method"] == "POST"
        assert seen["path"] == "/api/v10/channels/100/messages"
        assert seen["auth"] == "Bot secret"
        assert seen["body"]["content"] == "R1:1"
        assert seen["body"]["allowed_mentions"] == {"parse": []}
        assert result.value.id == "555"
        assert result.value.kind == MessageKind.DEFAULT
        assert result.limits.remaining == 4
        assert result.limits.reset_after == 1.5
        assert result.limits.bucket == "abc"

    @pytest.mark.asyncio
    async def test_fetch_messages_ascending(self):
        """History is requested with the cursor and returned oldest first."""
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(
                200,
                json=[message_payload("30", "c"), message_payload("20", "b")],
            )

        platform = await connected(handler)
        result = await platform.fetch_messages("100", "10", 500)

        assert seen["params"] == {"after": "10", "limit": "100"}
        assert [m.id for m in result.value] == ["20", "30"]
        assert result.limits is None

    @pytest.mark.asyncio
    async def test_fetch_messages_from_start(self):
        """No cursor means paging from the beginning of the channel."""
        seen = {}

        def handler(request):
            seen["after"] = request.url.params["after"]
            return httpx.Response(200, json=[])

        platform = await connected(handler)
        await platform.fetch_messages("100", None, 50)

        assert seen["after"] == "0"

    @pytest.mark.asyncio
    async def test_message_kinds(self):
        """Pin notices and other system messages are told apart."""

        def handler(request):
            return httpx.Response(
                200,
                json=[
                    message_payload("1", "", type=6),
                    message_payload("2", "x", type=7),
                    message_payload("3", "y", pinned=True, edited_timestamp="2024-01-01"),
                ],
            )

        platform = await connected(handler)
        messages = (await platform.fetch_messages("100", None, 10)).value

        assert messages[0].kind == MessageKind.PIN_NOTICE
        assert messages[1].kind == MessageKind.OTHER
        assert messages[2].pinned and messages[2].edited

    @pytest.mark.asyncio
    async def test_list_channels_text_only(self):
        """Only text channels are listed."""

        def handler(request):
            return httpx.Response(
                200,
                json=[
                    {"id": "1", "name": "users", "type": 0, "topic": "t"},
                    {"id": "2", "name": "voice", "type": 2},
                ],
            )

        platform = await connected(handler)
        channels = (await platform.list_channels("42")).value

        assert [c.name for c in channels] == ["users"]
        assert channels[0].topic == "t"

    @pytest.mark.asyncio
    async def test_pin_no_content(self):
        """204 responses carry no value."""

        def handler(request):
            assert request.method == "PUT"
            return httpx.Response(204)

        platform = await connected(handler)
        result = await platform.pin_message("100", "555")

        assert result.value is None


class TestDiscordErrors:
    """Tests for HTTP error translation."""

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        """429 carries the cool-down and global flag."""

        def handler(request):
            return httpx.Response(429, json={"retry_after": 2.5, "global": True})

        platform = await connected(handler)
        with pytest.raises(RateLimitedError) as exc_info:
            await platform.send_message("100", "x")

        assert exc_info.value.retry_after == 2.5
        assert exc_info.value.is_global

    @pytest.mark.asyncio
    async def test_rate_limited_header_fallback(self):
        """Retry-After header is used when the body has no cool-down."""

        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "3"})

        platform = await connected(handler)
        with pytest.raises(RateLimitedError) as exc_info:
            await platform.get_pins("100")

        assert exc_info.value.retry_after == 3.0
        assert not exc_info.value.is_global

    @pytest.mark.asyncio
    async def test_not_found(self):
        """404 on a message path names the message."""

        def handler(request):
            return httpx.Response(404, json={"message": "Unknown Message", "code": 10008})

        platform = await connected(handler)
        with pytest.raises(PlatformNotFoundError) as exc_info:
            await platform.get_message("100", "555")

        assert exc_info.value.resource_type == "message"
        assert exc_info.value.resource_id == "555"

    @pytest.mark.asyncio
    async def test_unknown_channel_on_message_path(self):
        """The error code wins over the path: a deleted channel is reported as the channel."""

        def handler(request):
            return httpx.Response(404, json={"message": "Unknown Channel", "code": 10003})

        platform = await connected(handler)
        with pytest.raises(PlatformNotFoundError) as exc_info:
            await platform.get_message("555", "777")

        assert exc_info.value.resource_type == "channel"
        assert exc_info.value.resource_id == "555"

    @pytest.mark.asyncio
    async def test_not_found_without_code(self):
        """Without an error code the path names the resource."""

        def handler(request):
            return httpx.Response(404)

        platform = await connected(handler)
        with pytest.raises(PlatformNotFoundError) as message_error:
            await platform.delete_message("100", "555")
        with pytest.raises(PlatformNotFoundError) as channel_error:
            await platform.fetch_messages("100", None, 10)

        assert (message_error.value.resource_type, message_error.value.resource_id) == (
            "message",
            "555",
        )
        assert (channel_error.value.resource_type, channel_error.value.resource_id) == (
            "channel",
            "100",
        )

    @pytest.mark.asyncio
    async def test_unknown_channel_surfaces_as_missing_table(self, governor):
        """A row read on a channel deleted elsewhere reports the table, not the row."""
        schema = TableSchema(table_name="t", columns=(column("id", "integer"),))
        deleted = False

        def handler(request):
            path = request.url.path
            if path.endswith("/guilds/42/channels"):
                listed = [] if deleted else [{"id": "555", "name": "t", "type": 0}]
                return httpx.Response(200, json=listed)
            if deleted:
                return httpx.Response(404, json={"message": "Unknown Channel", "code": 10003})
            if path.endswith("/channels/555/pins"):
                return httpx.Response(
                    200, json=[message_payload("600", render_schema(schema), pinned=True)]
                )
            return httpx.Response(404, json={"message": "Unknown Message", "code": 10008})

        store = ChannelStore(await connected(handler), "42", StorageConfig(), governor)
        await store.open_table("t")
        deleted = True

        with pytest.raises(NotFoundError) as exc_info:
            await store.get("t", "777")

        assert exc_info.value.resource_type == "table"
        with pytest.raises(NotFoundError) as exc_info:
            await store.open_table("t")
        assert exc_info.value.resource_type == "table"

    @pytest.mark.asyncio
    async def test_server_error(self):
        """5xx is retryable."""

        def handler(request):
            return httpx.Response(502)

        platform = await connected(handler)
        with pytest.raises(PlatformUnavailableError):
            await platform.delete_message("100", "555")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        """Connection failures are retryable."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        platform = await connected(handler)
        with pytest.raises(PlatformUnavailableError):
            await platform.list_channels("42")

    @pytest.mark.asyncio
    async def test_forbidden(self):
        """Other 4xx statuses are plain rejections."""

        def handler(request):
            return httpx.Response(403, json={"message": "Missing Permissions"})

        platform = await connected(handler)
        with pytest.raises(PlatformError) as exc_info:
            await platform.create_channel("42", "users")

        assert exc_info.value.status == 403
        assert "Missing Permissions" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_governor_retries_discord_429(self, governor, fake_clock):
        """The governor waits out a real 429 response."""
        responses = [
            httpx.Response(429, json={"retry_after": 0.25, "global": False}),
            httpx.Response(200, json=message_payload("9", "ok")),
        ]

        def handler(request):
            return responses.pop(0)

        platform = await connected(handler)
        message = await governor.call(
            route_key("send_message", "100"), platform.send_message, "100", "ok"
        )

        assert message.id == "9"
        assert fake_clock.sleeps == [0.25]
