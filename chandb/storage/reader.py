"""
Message log reader for ChanDB.

Turns a channel's message history into a lazy, ordered stream of raw
messages, paging forward from a cursor through the governor.

Invariants:
    - Messages are yielded in ascending id order (oldest first)
    - Every message present when the scan started and not deleted during
      it is yielded exactly once
    - A scan stops after the first page shorter than the requested size
    - A cursor is a plain value; any scan can be restarted from it

How to change safely:
    - Never request more than the platform's page cap per call
    - Keep paging on the last id of each page, not on what the consumer
      has read, so an abandoned scan never skips messages on restart
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..errors import MalformedPayloadError, NotFoundError
from ..remote.base import ChatPlatform, RawMessage
from ..remote.governor import RateLimitGovernor, route_key
from .codec import Chunk, parse_chunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Cursor:
    """Position in a channel's log.

    Attributes:
        channel_id: Channel the cursor belongs to
        after: Id of the last message observed (None = start of the log)
    """
    channel_id: str
    after: Optional[str] = None

    def advance(self, message_id: str) -> Cursor:
        return Cursor(channel_id=self.channel_id, after=message_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"channel_id": self.channel_id, "after": self.after}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Cursor:
        return cls(channel_id=data["channel_id"], after=data.get("after"))

    def __str__(self) -> str:
        return f"{self.channel_id}@{self.after or 'start'}"


class LogScan:
    """Lazy scan of one channel from a starting cursor.

    Iterating issues page requests on demand. Each iteration starts over
    from the starting cursor; ``cursor`` reports the position after the
    last message yielded.
    """

    def __init__(self, reader: MessageLogReader, start: Cursor) -> None:
        self._reader = reader
        self.start = start
        self.cursor = start
        self.pages_fetched = 0

    def __aiter__(self) -> AsyncIterator[RawMessage]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RawMessage]:
        self.cursor = self.start
        after = self.start.after
        page_size = self._reader.page_size
        while True:
            page = await self._reader.fetch_page(self.start.channel_id, after, page_size)
            self.pages_fetched += 1
            for message in page:
                self.cursor = self.cursor.advance(message.id)
                yield message
            if len(page) < page_size:
                return
            after = page[-1].id


class MessageLogReader:
    """Reads channel history through the governor.

    Example:
        >>> reader = MessageLogReader(platform, governor, page_size=100)
        >>> scan = reader.scan(channel_id)
        >>> async for message in scan:
        ...     handle(message)
        >>> resume_from = scan.cursor
    """

    def __init__(
        self,
        platform: ChatPlatform,
        governor: RateLimitGovernor,
        page_size: int = 100,
    ) -> None:
        self.platform = platform
        self.governor = governor
        self.page_size = max(1, min(page_size, platform.page_size_cap))

    def scan(self, channel_id: str, cursor: Optional[Cursor] = None) -> LogScan:
        """Scan a channel from ``cursor`` (or from the start of the log)."""
        return LogScan(self, cursor or Cursor(channel_id))

    async def fetch_page(
        self, channel_id: str, after: Optional[str], limit: int
    ) -> List[RawMessage]:
        messages = await self.governor.call(
            route_key("fetch_messages", channel_id),
            self.platform.fetch_messages,
            channel_id,
            after,
            limit,
        )
        logger.debug(
            f"Fetched {len(messages)} messages from {channel_id}",
            extra={"channel_id": channel_id, "after": after, "count": len(messages)},
        )
        return messages

    async def fetch_message(self, channel_id: str, message_id: str) -> RawMessage:
        return await self.governor.call(
            route_key("get_message", channel_id),
            self.platform.get_message,
            channel_id,
            message_id,
        )

    async def fetch_row_chunks(self, channel_id: str, row_id: str) -> List[Tuple[str, Chunk]]:
        """Collect the messages of one row.

        The anchor is fetched directly; continuations are collected by
        scanning forward from the anchor until all are found or the log
        ends.

        Returns:
            (message id, chunk) pairs in chunk order; fewer than the
            anchor's total when continuations are missing

        Raises:
            NotFoundError: If ``row_id`` is not an existing row anchor
        """
        try:
            message = await self.fetch_message(channel_id, row_id)
        except NotFoundError as e:
            if e.resource_type == "channel":
                raise
            raise NotFoundError(f"Row {row_id} not found", "row", row_id) from e

        try:
            anchor = parse_chunk(message.content, message.id) if message.is_data else None
        except MalformedPayloadError:
            anchor = None
        if anchor is None or not anchor.is_anchor:
            raise NotFoundError(f"Message {row_id} is not a row", "row", row_id)

        parts: Dict[int, Tuple[str, Chunk]] = {0: (message.id, anchor)}
        if anchor.total > 1:
            async for candidate in self.scan(channel_id, Cursor(channel_id, after=row_id)):
                if not candidate.is_data:
                    continue
                try:
                    chunk = parse_chunk(candidate.content, candidate.id)
                except MalformedPayloadError:
                    continue
                if (
                    chunk.anchor_id == row_id
                    and chunk.total == anchor.total
                    and chunk.index not in parts
                ):
                    parts[chunk.index] = (candidate.id, chunk)
                    if len(parts) == anchor.total:
                        break

        return [parts[i] for i in sorted(parts)]
