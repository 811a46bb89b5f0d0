"""
Unit tests for the message log reader.

Tests cover:
- Paged scans in log order
- Cursors and restarts
- Row chunk collection
"""

import pytest

from chandb.errors import NotFoundError
from chandb.storage.reader import Cursor, MessageLogReader


async def fill(platform, channel_id, count):
    return [(await platform.send_message(channel_id, f"m{i}")).value for i in range(count)]


async def collect(scan):
    return [m async for m in scan]


class TestCursor:
    """Tests for Cursor."""

    def test_dict_round_trip(self):
        """Cursors are plain values."""
        cursor = Cursor("100", after="123")

        assert Cursor.from_dict(cursor.to_dict()) == cursor
        assert str(cursor) == "100@123"
        assert str(Cursor("100")) == "100@start"


class TestMessageLogReader:
    """Tests for MessageLogReader."""

    @pytest.mark.asyncio
    async def test_scan_pages_in_order(self, small_platform, governor):
        """A scan yields every message once, oldest first, across pages."""
        channel = (await small_platform.create_channel("g", "t")).value
        sent = await fill(small_platform, channel.id, 7)
        reader = MessageLogReader(small_platform, governor, page_size=3)

        scan = reader.scan(channel.id)
        messages = await collect(scan)

        assert [m.id for m in messages] == [m.id for m in sent]
        assert scan.pages_fetched == 3
        assert scan.cursor == Cursor(channel.id, after=sent[-1].id)

    @pytest.mark.asyncio
    async def test_full_last_page_needs_one_more_request(self, small_platform, governor):
        """A scan ends only on a short page."""
        channel = (await small_platform.create_channel("g", "t")).value
        await fill(small_platform, channel.id, 6)
        reader = MessageLogReader(small_platform, governor, page_size=3)

        scan = reader.scan(channel.id)
        await collect(scan)

        assert scan.pages_fetched == 3
        assert small_platform.call_count("fetch_messages") == 3

    @pytest.mark.asyncio
    async def test_page_size_clamped_to_platform_cap(self, small_platform, governor):
        """The reader never asks for more than the platform serves."""
        reader = MessageLogReader(small_platform, governor, page_size=100)

        assert reader.page_size == 3

    @pytest.mark.asyncio
    async def test_resume_from_cursor(self, small_platform, governor):
        """A scan restarted from a cursor yields only newer messages."""
        channel = (await small_platform.create_channel("g", "t")).value
        await fill(small_platform, channel.id, 4)
        reader = MessageLogReader(small_platform, governor, page_size=3)
        first = reader.scan(channel.id)
        await collect(first)

        newer = await fill(small_platform, channel.id, 2)
        resumed = await collect(reader.scan(channel.id, first.cursor))

        assert [m.id for m in resumed] == [m.id for m in newer]

    @pytest.mark.asyncio
    async def test_scan_is_lazy(self, small_platform, governor):
        """Stopping early fetches no further pages."""
        channel = (await small_platform.create_channel("g", "t")).value
        await fill(small_platform, channel.id, 9)
        reader = MessageLogReader(small_platform, governor, page_size=3)

        scan = reader.scan(channel.id)
        async for message in scan:
            if message.content == "m1":
                break

        assert small_platform.call_count("fetch_messages") == 1
        assert scan.cursor.after == message.id

    @pytest.mark.asyncio
    async def test_iterating_again_restarts(self, small_platform, governor):
        """A LogScan starts over from its starting cursor each time."""
        channel = (await small_platform.create_channel("g", "t")).value
        await fill(small_platform, channel.id, 4)
        scan = MessageLogReader(small_platform, governor, page_size=3).scan(channel.id)

        first = await collect(scan)
        second = await collect(scan)

        assert [m.id for m in first] == [m.id for m in second]

    @pytest.mark.asyncio
    async def test_empty_channel(self, small_platform, governor):
        """An empty log yields nothing and keeps the start cursor."""
        channel = (await small_platform.create_channel("g", "t")).value
        scan = MessageLogReader(small_platform, governor).scan(channel.id)

        assert await collect(scan) == []
        assert scan.cursor == Cursor(channel.id)

    @pytest.mark.asyncio
    async def test_fetch_row_chunks(self, small_platform, governor):
        """A row's continuations are collected after its anchor."""
        channel = (await small_platform.create_channel("g", "t")).value
        anchor = (await small_platform.send_message(channel.id, "R3:1")).value
        await small_platform.send_message(channel.id, "R1:9")
        await small_platform.send_message(channel.id, f"C{anchor.id}.2/3:3")
        await small_platform.send_message(channel.id, "R1:8")
        await small_platform.send_message(channel.id, f"C{anchor.id}.1/3:2")
        reader = MessageLogReader(small_platform, governor, page_size=3)

        parts = await reader.fetch_row_chunks(channel.id, anchor.id)

        assert [chunk.index for _, chunk in parts] == [0, 1, 2]
        assert [chunk.body for _, chunk in parts] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_fetch_row_chunks_incomplete(self, small_platform, governor):
        """Missing continuations are left out, not invented."""
        channel = (await small_platform.create_channel("g", "t")).value
        anchor = (await small_platform.send_message(channel.id, "R2:1")).value
        reader = MessageLogReader(small_platform, governor, page_size=3)

        parts = await reader.fetch_row_chunks(channel.id, anchor.id)

        assert len(parts) == 1

    @pytest.mark.asyncio
    async def test_fetch_row_chunks_not_a_row(self, small_platform, governor):
        """Ids of missing messages, continuations or plain text aren't rows."""
        channel = (await small_platform.create_channel("g", "t")).value
        plain = (await small_platform.send_message(channel.id, "hello")).value
        cont = (await small_platform.send_message(channel.id, "C1.1/2:x")).value
        reader = MessageLogReader(small_platform, governor)

        for row_id in (plain.id, cont.id, "12345"):
            with pytest.raises(NotFoundError) as exc_info:
                await reader.fetch_row_chunks(channel.id, row_id)
            assert exc_info.value.resource_type == "row"
