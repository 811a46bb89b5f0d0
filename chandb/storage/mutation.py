"""
Mutation executor for ChanDB.

Performs row insert, update and delete as sequences of message
operations. A row of N chunks is N messages; no platform call covers more
than one message, so multi-chunk mutations are ordered to keep the row
readable (old or new version) as long as possible and report
PartialMutationError when they stop half-way.

Ordering:
    insert  anchor first, then continuations; a failed continuation rolls
            the anchor back so the row never becomes visible
    update  append chunks the new encoding adds, edit kept continuations,
            edit the anchor last, then delete surplus chunks
    delete  anchor first (the row disappears at once), then continuations

Invariants:
    - The row id is the anchor id and never changes on update
    - Continuations whose anchor is gone are garbage; readers skip them
    - A failure before any remote change surfaces as the original error

How to change safely:
    - Reordering steps changes what a reader sees after a crash; check
      RowAssembler's orphan handling before doing so
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from ..errors import (
    ChanDbError,
    NotFoundError,
    PartialMutationError,
    TruncatedPayloadError,
)
from ..remote.base import ChatPlatform, RawMessage
from ..remote.governor import RateLimitGovernor, route_key
from ..schema.types import TableSchema
from .codec import RowLocation, encode_row
from .reader import MessageLogReader

logger = logging.getLogger(__name__)


class MutationExecutor:
    """Executes row mutations against a table channel.

    Example:
        >>> executor = MutationExecutor(platform, governor, reader)
        >>> location = await executor.insert(channel_id, schema, (1, "ann"))
        >>> await executor.delete(channel_id, location.row_id, location)
    """

    def __init__(
        self,
        platform: ChatPlatform,
        governor: RateLimitGovernor,
        reader: MessageLogReader,
        max_message_size: int = 2000,
    ) -> None:
        self.platform = platform
        self.governor = governor
        self.reader = reader
        self.max_message_size = max_message_size

    async def _send(self, channel_id: str, content: str) -> RawMessage:
        return await self.governor.call(
            route_key("send_message", channel_id),
            self.platform.send_message,
            channel_id,
            content,
        )

    async def _edit(self, channel_id: str, message_id: str, content: str) -> RawMessage:
        return await self.governor.call(
            route_key("edit_message", channel_id),
            self.platform.edit_message,
            channel_id,
            message_id,
            content,
        )

    async def _delete(self, channel_id: str, message_id: str) -> None:
        await self.governor.call(
            route_key("delete_message", channel_id),
            self.platform.delete_message,
            channel_id,
            message_id,
        )

    async def locate(
        self, channel_id: str, row_id: str, require_complete: bool = True
    ) -> RowLocation:
        """Find the messages of a row in the log.

        Args:
            channel_id: Table channel
            row_id: Anchor id
            require_complete: Fail if continuations are missing

        Raises:
            NotFoundError: If the row doesn't exist
            TruncatedPayloadError: If chunks are missing and require_complete
        """
        parts = await self.reader.fetch_row_chunks(channel_id, row_id)
        total = parts[0][1].total
        if require_complete and len(parts) != total:
            raise TruncatedPayloadError(
                f"Row has {len(parts)} of {total} chunks", row_id=row_id
            )
        return RowLocation(row_id=row_id, chunk_ids=tuple(mid for mid, _ in parts))

    async def insert(
        self, channel_id: str, schema: TableSchema, row: Sequence[Any]
    ) -> RowLocation:
        """Append a new row.

        Returns:
            Location of the new row; its row_id is the anchor id

        Raises:
            ValidationError / ValueTooLargeError: Before any remote call
            PartialMutationError: If a continuation failed and the anchor
                could not be rolled back
        """
        chunks = encode_row(schema, row, self.max_message_size)
        anchor = await self._send(channel_id, chunks[0].render())
        sent: List[str] = [anchor.id]

        try:
            for chunk in chunks[1:]:
                message = await self._send(channel_id, chunk.render(anchor.id))
                sent.append(message.id)
        except ChanDbError as e:
            await self._rollback_insert(channel_id, schema, sent, len(chunks), e)
            raise

        logger.debug(
            f"Inserted row {anchor.id} ({len(sent)} messages)",
            extra={"table": schema.table_name, "row_id": anchor.id, "chunks": len(sent)},
        )
        return RowLocation(row_id=anchor.id, chunk_ids=tuple(sent))

    async def _rollback_insert(
        self,
        channel_id: str,
        schema: TableSchema,
        sent: List[str],
        total: int,
        cause: ChanDbError,
    ) -> None:
        anchor_id = sent[0]
        logger.warning(
            f"Insert of row {anchor_id} failed after {len(sent)} of {total} chunks; rolling back",
            extra={"table": schema.table_name, "row_id": anchor_id},
        )
        try:
            await self._delete(channel_id, anchor_id)
        except ChanDbError as e:
            raise PartialMutationError(
                f"Insert of row {anchor_id} failed and its anchor could not be removed: {e}",
                table=schema.table_name,
                row_id=anchor_id,
                completed=list(sent),
                pending=[f"chunk {i}" for i in range(len(sent), total)],
            ) from cause

        # The row is no longer visible; leftover continuations are garbage
        await self._discard(channel_id, schema, sent[1:])

    async def _discard(self, channel_id: str, schema: TableSchema, message_ids: List[str]) -> None:
        """Best-effort removal of chunks that belong to no visible row."""
        for message_id in message_ids:
            try:
                await self._delete(channel_id, message_id)
            except ChanDbError as e:
                logger.warning(
                    f"Could not remove orphan chunk {message_id}: {e}",
                    extra={"table": schema.table_name, "message_id": message_id},
                )

    async def _anchor_exists(self, channel_id: str, row_id: str) -> bool:
        try:
            await self.reader.fetch_message(channel_id, row_id)
        except NotFoundError as e:
            if e.resource_type == "channel":
                raise
            return False
        return True

    async def update(
        self,
        channel_id: str,
        schema: TableSchema,
        row_id: str,
        row: Sequence[Any],
        location: Optional[RowLocation] = None,
    ) -> RowLocation:
        """Replace a row's values, keeping its row id.

        Args:
            channel_id: Table channel
            schema: Table schema
            row_id: Anchor id of the row
            row: New values
            location: Known location of the row (looked up when omitted)

        Returns:
            New location of the row

        Raises:
            NotFoundError: If the row doesn't exist; chunks appended before
                that was noticed are removed again
            PartialMutationError: If the update stopped half-way
        """
        chunks = encode_row(schema, row, self.max_message_size)
        if location is None:
            location = await self.locate(channel_id, row_id)

        old_ids = list(location.chunk_ids)
        new_ids = old_ids[: len(chunks)]
        appended: List[str] = []
        completed: List[str] = []

        try:
            for chunk in chunks[len(old_ids):]:
                message = await self._send(channel_id, chunk.render(row_id))
                new_ids.append(message.id)
                appended.append(message.id)
                completed.append(message.id)
            for index in range(1, min(len(old_ids), len(chunks))):
                await self._edit(channel_id, old_ids[index], chunks[index].render(row_id))
                completed.append(old_ids[index])
            await self._edit(channel_id, row_id, chunks[0].render())
            completed.append(row_id)
        except ChanDbError as e:
            if isinstance(e, NotFoundError) and e.resource_type != "channel":
                # A location can be stale: the row may have been deleted elsewhere
                if not completed or not await self._anchor_exists(channel_id, row_id):
                    await self._discard(channel_id, schema, appended)
                    raise NotFoundError(f"Row {row_id} not found", "row", row_id) from e
            if not completed:
                raise
            raise PartialMutationError(
                f"Update of row {row_id} stopped after {len(completed)} messages: {e}",
                table=schema.table_name,
                row_id=row_id,
                completed=completed,
                pending=[mid for mid in old_ids if mid not in completed],
            ) from e

        await self._delete_surplus(channel_id, schema, row_id, old_ids[len(chunks):])

        logger.debug(
            f"Updated row {row_id} ({len(old_ids)} -> {len(new_ids)} messages)",
            extra={"table": schema.table_name, "row_id": row_id, "chunks": len(new_ids)},
        )
        return RowLocation(row_id=row_id, chunk_ids=tuple(new_ids))

    async def _delete_surplus(
        self, channel_id: str, schema: TableSchema, row_id: str, surplus: List[str]
    ) -> None:
        for position, message_id in enumerate(surplus):
            try:
                await self._delete(channel_id, message_id)
            except NotFoundError:
                continue
            except ChanDbError as e:
                raise PartialMutationError(
                    f"Row {row_id} was updated but surplus chunk {message_id} "
                    f"could not be removed: {e}",
                    table=schema.table_name,
                    row_id=row_id,
                    completed=[row_id],
                    pending=surplus[position:],
                ) from e

    async def delete(
        self,
        channel_id: str,
        row_id: str,
        location: Optional[RowLocation] = None,
        table: Optional[str] = None,
    ) -> None:
        """Remove a row.

        Raises:
            NotFoundError: If the row doesn't exist
            PartialMutationError: If continuations could not be removed
                (the row itself is already gone)
        """
        if location is None:
            location = await self.locate(channel_id, row_id, require_complete=False)

        try:
            await self._delete(channel_id, row_id)
        except NotFoundError as e:
            if e.resource_type == "channel":
                raise
            raise NotFoundError(f"Row {row_id} not found", "row", row_id) from e

        continuations = list(location.chunk_ids[1:])
        for position, message_id in enumerate(continuations):
            try:
                await self._delete(channel_id, message_id)
            except NotFoundError:
                continue
            except ChanDbError as e:
                raise PartialMutationError(
                    f"Row {row_id} was deleted but chunk {message_id} could not be removed: {e}",
                    table=table,
                    row_id=row_id,
                    completed=[row_id] + continuations[:position],
                    pending=continuations[position:],
                ) from e

        logger.debug(
            f"Deleted row {row_id} ({len(location.chunk_ids)} messages)",
            extra={"table": table, "row_id": row_id},
        )
