"""
Store façade for ChanDB.

The single entry point used by a query engine: table lifecycle, row
point-reads, full scans and row mutations, all backed by channels of one
guild.

Invariants:
    - Every operation is fully resolved (or raises) before it returns
    - Row identifiers are anchor message ids, stable across updates
    - After a successful mutation, later reads through this store observe it
    - Decode errors are never dropped: a scan returns every row or raises

How to change safely:
    - Keep remote access inside the component that owns it (mapper,
      registry, reader, executor); the façade only orchestrates
    - Keep mutations of one table under its cache table_lock()
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..config import StorageConfig
from ..errors import DecodeError, NotFoundError, PartialMutationError, ValidationError
from ..remote.base import Channel, ChatPlatform
from ..remote.governor import RateLimitGovernor, route_key
from ..schema.registry import SchemaRegistry
from ..schema.types import Column, TableSchema
from .cache import LocalCache, TableSnapshot
from .codec import Row, RowAssembler, RowLocation, decode_row
from .mapper import ChannelTableMapper, normalize_table_name
from .mutation import MutationExecutor
from .reader import MessageLogReader

logger = logging.getLogger(__name__)

RowId = Union[str, int]
RowValues = Union[Sequence[Any], Mapping[str, Any]]


@dataclass(frozen=True)
class TableHandle:
    """An open table.

    Attributes:
        name: Normalized table name
        channel: Channel backing the table
        schema: Table schema
    """
    name: str
    channel: Channel
    schema: TableSchema


@dataclass
class RepairReport:
    """Outcome of a repair scan.

    Attributes:
        table: Table name
        rows: Number of intact rows
        orphan_chunks: Continuation ids without an anchor
        truncated_rows: Anchor ids of rows missing chunks
        corrupt_rows: Anchor ids of rows that failed to decode
        foreign_messages: Ids of messages not in row layout
        deleted: Message ids removed by the repair
    """
    table: str
    rows: int = 0
    orphan_chunks: List[str] = field(default_factory=list)
    truncated_rows: List[str] = field(default_factory=list)
    corrupt_rows: List[str] = field(default_factory=list)
    foreign_messages: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (
            self.orphan_chunks or self.truncated_rows or self.corrupt_rows or self.foreign_messages
        )


def _row_key(row_id: RowId) -> str:
    key = str(row_id)
    if not key.isdigit():
        raise ValidationError(f"Invalid row id '{row_id}'", field_name="row_id")
    return key


class ChannelStore:
    """Relational tables stored in the channels of one guild.

    Thread safety:
        Safe to share between coroutines. Operations on different tables
        run concurrently (subject to the governor); mutations and loads of
        one table are serialized.

    Example:
        >>> store = ChannelStore(platform, guild_id="123")
        >>> await store.create_table("users", [column("id", "integer"), column("name", "text")])
        >>> row_id = await store.insert("users", (1, "ann"))
        >>> await store.get("users", row_id)
        (1, 'ann')
    """

    def __init__(
        self,
        platform: ChatPlatform,
        guild_id: str,
        config: Optional[StorageConfig] = None,
        governor: Optional[RateLimitGovernor] = None,
    ) -> None:
        """Initialize the store.

        Args:
            platform: Connected remote platform
            guild_id: Guild whose channels hold the tables
            config: Storage settings
            governor: Shared rate-limit governor (a default one is created)
        """
        self.platform = platform
        self.guild_id = guild_id
        self.config = config or StorageConfig()
        self.governor = governor or RateLimitGovernor()

        max_size = min(self.config.max_message_size, platform.max_message_size)
        self.reader = MessageLogReader(platform, self.governor, self.config.page_size)
        self.mapper = ChannelTableMapper(
            platform,
            self.governor,
            guild_id,
            channel_prefix=self.config.channel_prefix,
            drop_mode=self.config.drop_mode,
        )
        self.registry = SchemaRegistry(platform, self.governor, max_size)
        self.mutations = MutationExecutor(platform, self.governor, self.reader, max_size)
        self.cache = LocalCache()
        self._handles: Dict[str, TableHandle] = {}

    @asynccontextmanager
    async def _operation(self, op: str, table: str) -> AsyncIterator[None]:
        """Time an operation and attach table context to its errors."""
        started = time.perf_counter()
        try:
            yield
        except NotFoundError as e:
            if e.resource_type != "channel":
                raise
            self._forget(table)
            self.mapper.invalidate()
            raise NotFoundError(
                f"Table '{table}' not found", resource_type="table", resource_id=table
            ) from e
        except DecodeError as e:
            raise e.with_context(table=table)
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.debug(
                f"{op} {table}: {elapsed_ms:.1f}ms",
                extra={"op": op, "table": table, "elapsed_ms": round(elapsed_ms, 3)},
            )

    def _forget(self, table: str) -> None:
        handle = self._handles.pop(table, None)
        if handle is not None:
            self.registry.forget(handle.channel.id)
        self.cache.invalidate(table)

    # Table lifecycle

    async def create_table(self, name: str, columns: Sequence[Column]) -> TableHandle:
        """Create a table.

        Raises:
            ValidationError: Invalid name or columns
            AlreadyExistsError: A table of that name exists
        """
        table = normalize_table_name(name)
        schema = TableSchema(table_name=table, columns=tuple(columns))
        self.registry.render(schema)
        async with self._operation("create_table", table):
            channel = await self.mapper.create_table(table, schema)
            await self.registry.write_schema(channel, schema)

        handle = TableHandle(name=table, channel=channel, schema=schema)
        self._handles[table] = handle
        self.cache.replace(table, TableSnapshot.empty(channel.id))
        return handle

    async def drop_table(self, name: str) -> None:
        """Drop a table (delete or archive its channel, per config).

        Raises:
            NotFoundError: The table doesn't exist
        """
        table = normalize_table_name(name)
        async with self._operation("drop_table", table):
            try:
                await self.mapper.drop_table(table)
            finally:
                self._forget(table)

    async def open_table(self, name: str) -> TableHandle:
        """Resolve a table's channel and load its schema.

        Raises:
            NotFoundError: The table doesn't exist
            SchemaMissingError: The channel has no schema record
        """
        table = normalize_table_name(name)
        handle = self._handles.get(table)
        if handle is not None:
            return handle

        async with self._operation("open_table", table):
            channel = await self.mapper.resolve_table(table)
            schema = await self.registry.read_schema(channel, table)

        handle = TableHandle(name=table, channel=channel, schema=schema)
        self._handles[table] = handle
        return handle

    def close_table(self, name: str) -> None:
        """Release a table's handle, schema and cached rows."""
        self._forget(normalize_table_name(name))

    async def list_tables(self) -> List[str]:
        async with self._operation("list_tables", "*"):
            return await self.mapper.list_tables()

    async def describe(self, name: str) -> TableSchema:
        return (await self.open_table(name)).schema

    # Reads

    async def get(self, name: str, row_id: RowId) -> Row:
        """Point-read a row.

        Raises:
            NotFoundError: The table or row doesn't exist
            DecodeError: The row's payload is corrupt
        """
        handle = await self.open_table(name)
        key = _row_key(row_id)
        cached = self.cache.get(handle.name, key)
        if cached is not None:
            return cached

        async with self._operation("get", handle.name):
            parts = await self.reader.fetch_row_chunks(handle.channel.id, key)
            return decode_row([chunk for _, chunk in parts], handle.schema, row_id=key)

    async def scan(self, name: str) -> List[Tuple[str, Row]]:
        """All rows of a table in insertion order.

        Served from the cache when the table is loaded; otherwise performs
        a full log scan and caches the result.

        Returns:
            (row id, row) pairs

        Raises:
            DecodeError: A row failed to decode (no partial result)
        """
        handle = await self.open_table(name)
        async with self._operation("scan", handle.name):
            return await self.cache.get_or_load(handle.name, lambda: self._load(handle))

    async def _load(self, handle: TableHandle) -> TableSnapshot:
        scan = self.reader.scan(handle.channel.id)
        assembler = RowAssembler(handle.schema, skip_foreign=not self.config.strict_scan)
        async for message in scan:
            assembler.feed(message)
        report = assembler.finish()
        logger.info(
            f"Loaded {len(report.rows)} rows of table {handle.name}",
            extra={
                "table": handle.name,
                "rows": len(report.rows),
                "pages": scan.pages_fetched,
                "orphans": len(report.orphans),
            },
        )
        return TableSnapshot.from_rows(report.rows, scan.cursor)

    # Mutations

    async def insert(self, name: str, row: RowValues) -> str:
        """Append a row.

        Returns:
            The new row's id

        Raises:
            ValidationError: Row doesn't match the schema (nothing sent)
            ValueTooLargeError: A value can't fit in one message (nothing sent)
            PartialMutationError: The insert stopped half-way
        """
        handle = await self.open_table(name)
        values = handle.schema.coerce_row(row)
        async with self._operation("insert", handle.name):
            async with self.cache.table_lock(handle.name):
                location = await self._insert(handle, values)
        return location.row_id

    async def _insert(self, handle: TableHandle, values: Row) -> RowLocation:
        try:
            location = await self.mutations.insert(handle.channel.id, handle.schema, values)
        except PartialMutationError as e:
            e.table = e.details["table"] = handle.name
            self.cache.invalidate(handle.name)
            raise
        self.cache.put(handle.name, location.row_id, values, location)
        return location

    async def insert_many(self, name: str, rows: Sequence[RowValues]) -> List[str]:
        """Append rows in order.

        All rows are validated before the first is sent. Stops at the
        first failure; rows inserted before it remain.
        """
        handle = await self.open_table(name)
        batch = [handle.schema.coerce_row(row) for row in rows]
        row_ids: List[str] = []
        async with self._operation("insert_many", handle.name):
            async with self.cache.table_lock(handle.name):
                for values in batch:
                    row_ids.append((await self._insert(handle, values)).row_id)
        return row_ids

    async def update(self, name: str, row_id: RowId, row: RowValues) -> None:
        """Replace a row's values; its id is unchanged.

        Raises:
            NotFoundError: The row doesn't exist
            PartialMutationError: The update stopped half-way
        """
        handle = await self.open_table(name)
        key = _row_key(row_id)
        values = handle.schema.coerce_row(row)
        async with self._operation("update", handle.name):
            async with self.cache.table_lock(handle.name):
                await self._update(handle, key, values)

    async def _update(self, handle: TableHandle, key: str, values: Row) -> None:
        try:
            location = await self.mutations.update(
                handle.channel.id,
                handle.schema,
                key,
                values,
                self.cache.location(handle.name, key),
            )
        except NotFoundError as e:
            if e.resource_type == "row":
                self.cache.remove(handle.name, key)
            raise
        except PartialMutationError as e:
            e.table = e.details["table"] = handle.name
            self.cache.invalidate(handle.name)
            raise
        self.cache.put(handle.name, key, values, location)

    async def upsert(self, name: str, row_id: Optional[RowId], row: RowValues) -> str:
        """Update a row if it exists, insert it otherwise.

        Returns:
            Id of the updated or inserted row
        """
        handle = await self.open_table(name)
        values = handle.schema.coerce_row(row)
        async with self._operation("upsert", handle.name):
            async with self.cache.table_lock(handle.name):
                if row_id is not None:
                    key = _row_key(row_id)
                    try:
                        await self._update(handle, key, values)
                        return key
                    except NotFoundError as e:
                        if e.resource_type != "row":
                            raise
                return (await self._insert(handle, values)).row_id

    async def delete(self, name: str, row_id: RowId) -> None:
        """Remove a row.

        Raises:
            NotFoundError: The row doesn't exist
            PartialMutationError: Continuations could not be removed (the
                row itself is gone)
        """
        handle = await self.open_table(name)
        key = _row_key(row_id)
        async with self._operation("delete", handle.name):
            async with self.cache.table_lock(handle.name):
                await self._delete(handle, key)

    async def _delete(self, handle: TableHandle, key: str) -> None:
        try:
            await self.mutations.delete(
                handle.channel.id,
                key,
                self.cache.location(handle.name, key),
                table=handle.name,
            )
        finally:
            # Gone on success, on NotFound and on PartialMutation alike
            self.cache.remove(handle.name, key)

    async def delete_many(self, name: str, row_ids: Sequence[RowId]) -> None:
        """Remove rows in order; stops at the first failure."""
        handle = await self.open_table(name)
        keys = [_row_key(r) for r in row_ids]
        async with self._operation("delete_many", handle.name):
            async with self.cache.table_lock(handle.name):
                for key in keys:
                    await self._delete(handle, key)

    # Cache maintenance

    def invalidate(self, name: Optional[str] = None) -> None:
        """Drop cached rows of one table (or all tables)."""
        self.cache.invalidate(normalize_table_name(name) if name is not None else None)

    async def sync(self, name: str) -> int:
        """Bring the cache up to date with rows appended since the last load.

        Reads the log forward from the cached cursor. Loads the full
        table when it isn't cached yet.

        Returns:
            Number of rows read from the log
        """
        handle = await self.open_table(name)
        async with self._operation("sync", handle.name):
            async with self.cache.table_lock(handle.name):
                cursor = self.cache.cursor(handle.name)
                if cursor is None:
                    snapshot = await self._load(handle)
                    self.cache.replace(handle.name, snapshot)
                    return len(snapshot.rows)

                scan = self.reader.scan(handle.channel.id, cursor)
                assembler = RowAssembler(handle.schema, skip_foreign=not self.config.strict_scan)
                async for message in scan:
                    assembler.feed(message)
                report = assembler.finish()
                for assembled in report.rows:
                    self.cache.put(handle.name, assembled.row_id, assembled.row, assembled.location)
                self.cache.advance(handle.name, scan.cursor)

        logger.info(
            f"Synced {len(report.rows)} rows of table {handle.name}",
            extra={"table": handle.name, "rows": len(report.rows), "cursor": str(scan.cursor)},
        )
        return len(report.rows)

    async def repair(self, name: str, delete_truncated: bool = False) -> RepairReport:
        """Scan a table for garbage left by interrupted mutations.

        Orphan continuation chunks are always removed. Rows missing
        chunks are removed only with ``delete_truncated``. Corrupt rows and
        foreign messages are reported, never removed. The table's cache is
        invalidated.
        """
        handle = await self.open_table(name)
        async with self._operation("repair", handle.name):
            async with self.cache.table_lock(handle.name):
                assembler = RowAssembler(handle.schema, collect_errors=True)
                async for message in self.reader.scan(handle.channel.id):
                    assembler.feed(message)
                result = assembler.finish()

                report = RepairReport(
                    table=handle.name,
                    rows=len(result.rows),
                    orphan_chunks=list(result.orphans),
                    truncated_rows=list(result.truncated),
                    corrupt_rows=list(result.corrupt),
                    foreign_messages=list(result.foreign),
                )

                targets = list(result.orphans)
                if delete_truncated:
                    for message_ids in result.truncated.values():
                        targets.extend(message_ids)

                for message_id in targets:
                    try:
                        await self.governor.call(
                            route_key("delete_message", handle.channel.id),
                            self.platform.delete_message,
                            handle.channel.id,
                            message_id,
                        )
                    except NotFoundError as e:
                        if e.resource_type == "channel":
                            raise
                        continue
                    report.deleted.append(message_id)

                self.cache.invalidate(handle.name)

        logger.info(
            f"Repaired table {handle.name}: removed {len(report.deleted)} messages",
            extra={
                "table": handle.name,
                "orphans": len(report.orphan_chunks),
                "truncated": len(report.truncated_rows),
                "corrupt": len(report.corrupt_rows),
                "deleted": len(report.deleted),
            },
        )
        return report

    async def close(self) -> None:
        """Release all handles and cached rows and close the platform."""
        self._handles.clear()
        self.cache.invalidate()
        await self.platform.close()
