"""
Unit tests for the mutation executor.

Tests cover:
- Single- and multi-chunk inserts
- Insert rollback
- Updates that keep, grow and shrink the chunk count
- Deletes
- Partial mutation reporting
"""

import pytest

from chandb.errors import (
    NotFoundError,
    PartialMutationError,
    RemoteUnavailableError,
    TruncatedPayloadError,
)
from chandb.schema.types import TableSchema, column
from chandb.storage.codec import decode_row
from chandb.storage.mutation import MutationExecutor
from chandb.storage.reader import MessageLogReader

SMALL = ("a", "b", "c")
BIG = ("a" * 40, "b" * 40, "c" * 40)


@pytest.fixture
def wide_schema():
    """Three text columns; BIG rows need three 80-character messages."""
    return TableSchema(
        table_name="wide",
        columns=(column("a", "text"), column("b", "text"), column("c", "text")),
    )


@pytest.fixture
def reader(small_platform, governor):
    return MessageLogReader(small_platform, governor, page_size=3)


@pytest.fixture
def executor(small_platform, governor, reader):
    """Executor writing 80-character messages."""
    return MutationExecutor(small_platform, governor, reader, max_message_size=80)


async def read_row(reader, schema, channel_id, row_id):
    parts = await reader.fetch_row_chunks(channel_id, row_id)
    return decode_row([c for _, c in parts], schema, row_id=row_id)


class TestInsert:
    """Tests for MutationExecutor.insert()."""

    @pytest.mark.asyncio
    async def test_single_chunk(self, executor, small_platform, wide_schema):
        """A small row is one message whose id is the row id."""
        channel = (await small_platform.create_channel("g", "wide")).value

        location = await executor.insert(channel.id, wide_schema, SMALL)

        messages = small_platform.get_all_messages(channel.id)
        assert location.chunk_ids == (location.row_id,)
        assert [m.id for m in messages] == [location.row_id]
        assert messages[0].content == 'R1:"a"|"b"|"c"'

    @pytest.mark.asyncio
    async def test_multi_chunk(self, executor, reader, small_platform, wide_schema):
        """A large row is an anchor followed by continuations naming it."""
        channel = (await small_platform.create_channel("g", "wide")).value

        location = await executor.insert(channel.id, wide_schema, BIG)

        messages = small_platform.get_all_messages(channel.id)
        assert [m.id for m in messages] == list(location.chunk_ids)
        assert messages[1].content.startswith(f"C{location.row_id}.1/3:")
        assert await read_row(reader, wide_schema, channel.id, location.row_id) == BIG

    @pytest.mark.asyncio
    async def test_rollback_on_failed_continuation(self, executor, small_platform, wide_schema):
        """If a continuation can't be sent the anchor is removed again."""
        channel = (await small_platform.create_channel("g", "wide")).value
        small_platform.fail_when(
            lambda op, args: op == "send_message" and args["content"].startswith("C")
        )

        with pytest.raises(RemoteUnavailableError):
            await executor.insert(channel.id, wide_schema, BIG)

        assert small_platform.get_all_messages(channel.id) == []

    @pytest.mark.asyncio
    async def test_failed_rollback_is_partial(self, executor, small_platform, wide_schema):
        """If the rollback fails too, the half-written row is reported."""
        channel = (await small_platform.create_channel("g", "wide")).value
        small_platform.fail_when(
            lambda op, args: op == "delete_message"
            or (op == "send_message" and args["content"].startswith("C"))
        )

        with pytest.raises(PartialMutationError) as exc_info:
            await executor.insert(channel.id, wide_schema, BIG)

        anchor = small_platform.get_all_messages(channel.id)[0]
        assert exc_info.value.row_id == anchor.id
        assert exc_info.value.table == "wide"
        assert exc_info.value.pending == ["chunk 1", "chunk 2"]


class TestUpdate:
    """Tests for MutationExecutor.update()."""

    @pytest.mark.asyncio
    async def test_in_place(self, executor, reader, small_platform, wide_schema):
        """Same chunk count: the anchor is edited, the id kept."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, SMALL)

        updated = await executor.update(channel.id, wide_schema, location.row_id, ("x", "y", "z"))

        assert updated == location
        assert small_platform.call_count("edit_message") == 1
        assert await read_row(reader, wide_schema, channel.id, location.row_id) == ("x", "y", "z")

    @pytest.mark.asyncio
    async def test_grow(self, executor, reader, small_platform, wide_schema):
        """Growing appends continuations and keeps the row id."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, SMALL)

        updated = await executor.update(channel.id, wide_schema, location.row_id, BIG)

        assert updated.row_id == location.row_id
        assert len(updated.chunk_ids) == 3
        assert await read_row(reader, wide_schema, channel.id, location.row_id) == BIG

    @pytest.mark.asyncio
    async def test_shrink(self, executor, reader, small_platform, wide_schema):
        """Shrinking deletes surplus continuations."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, BIG)

        updated = await executor.update(
            channel.id, wide_schema, location.row_id, SMALL, location
        )

        assert updated.chunk_ids == (location.row_id,)
        assert [m.id for m in small_platform.get_all_messages(channel.id)] == [location.row_id]
        assert await read_row(reader, wide_schema, channel.id, location.row_id) == SMALL

    @pytest.mark.asyncio
    async def test_missing_row(self, executor, small_platform, wide_schema):
        """Updating an absent row changes nothing."""
        channel = (await small_platform.create_channel("g", "wide")).value

        with pytest.raises(NotFoundError) as exc_info:
            await executor.update(channel.id, wide_schema, "12345", SMALL)

        assert exc_info.value.resource_type == "row"
        assert small_platform.call_count("edit_message") == 0

    @pytest.mark.asyncio
    async def test_stale_location(self, executor, small_platform, wide_schema):
        """A known location whose row was deleted elsewhere reports not found."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, SMALL)
        await small_platform.delete_message(channel.id, location.row_id)

        with pytest.raises(NotFoundError):
            await executor.update(channel.id, wide_schema, location.row_id, SMALL, location)

    @pytest.mark.asyncio
    async def test_stale_location_growing(self, executor, small_platform, wide_schema):
        """Growing a row deleted elsewhere reports not found and leaves no chunks behind."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, SMALL)
        await small_platform.delete_message(channel.id, location.row_id)

        with pytest.raises(NotFoundError) as exc_info:
            await executor.update(channel.id, wide_schema, location.row_id, BIG, location)

        assert exc_info.value.resource_type == "row"
        assert small_platform.get_all_messages(channel.id) == []

    @pytest.mark.asyncio
    async def test_partial(self, executor, small_platform, wide_schema):
        """A failure after some messages changed is a partial mutation."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, SMALL)
        small_platform.fail_when(lambda op, args: op == "edit_message")

        with pytest.raises(PartialMutationError) as exc_info:
            await executor.update(channel.id, wide_schema, location.row_id, BIG, location)

        assert exc_info.value.row_id == location.row_id
        assert len(exc_info.value.completed) == 2

    @pytest.mark.asyncio
    async def test_truncated_row(self, executor, small_platform, wide_schema):
        """A row missing chunks must be repaired before it can be updated."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, BIG)
        await small_platform.delete_message(channel.id, location.chunk_ids[2])

        with pytest.raises(TruncatedPayloadError):
            await executor.update(channel.id, wide_schema, location.row_id, SMALL)


class TestDelete:
    """Tests for MutationExecutor.delete()."""

    @pytest.mark.asyncio
    async def test_removes_all_chunks(self, executor, small_platform, wide_schema):
        """Every message of the row is deleted."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, BIG)

        await executor.delete(channel.id, location.row_id)

        assert small_platform.get_all_messages(channel.id) == []

    @pytest.mark.asyncio
    async def test_missing_row(self, executor, small_platform, wide_schema):
        """Deleting an absent row fails."""
        channel = (await small_platform.create_channel("g", "wide")).value

        with pytest.raises(NotFoundError):
            await executor.delete(channel.id, "12345")

    @pytest.mark.asyncio
    async def test_truncated_row_is_deletable(self, executor, small_platform, wide_schema):
        """Rows missing chunks can still be deleted."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, BIG)
        await small_platform.delete_message(channel.id, location.chunk_ids[1])

        await executor.delete(channel.id, location.row_id)

        assert small_platform.get_all_messages(channel.id) == []

    @pytest.mark.asyncio
    async def test_partial(self, executor, small_platform, wide_schema):
        """Continuations that can't be removed are reported; the row is gone."""
        channel = (await small_platform.create_channel("g", "wide")).value
        location = await executor.insert(channel.id, wide_schema, BIG)
        anchor = location.row_id
        small_platform.fail_when(
            lambda op, args: op == "delete_message" and args["message_id"] != anchor
        )

        with pytest.raises(PartialMutationError) as exc_info:
            await executor.delete(channel.id, anchor, location, table="wide")

        remaining = [m.id for m in small_platform.get_all_messages(channel.id)]
        assert anchor not in remaining
        assert exc_info.value.pending == list(location.chunk_ids[1:])
        assert exc_info.value.table == "wide"
