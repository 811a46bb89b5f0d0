"""
Row codec for ChanDB.

Serializes a row into one or more size-bounded message payloads and back,
and reassembles rows from a stream of channel messages.

Payload layout:
    anchor:        R<total>:<values>
    continuation:  C<anchor-id>.<index>/<total>:<values>

    values are joined with '|'; each value is rendered per its column type:
        null     ~
        integer  42, -7
        float    1.5, 1e+16, inf, -inf, nan   (Python repr)
        boolean  true, false
        text     "..." with \\\\, \\" and \\| escapes

Invariants:
    - Encoding is deterministic for a given schema and row
    - Rows are split only at value boundaries, never inside a value
    - Chunk index 0 is the anchor; its message id is the row id
    - Continuations name their anchor explicitly, so rows interleaved by
      concurrent writers still reassemble
    - Decoding is pure; no remote calls happen here

How to change safely:
    - This is the persisted layout. Never change the rendering of an
      existing type; add a new header mark for a new layout instead
    - Keep continuation_header_size() >= the longest header the parser accepts
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from ..errors import (
    DecodeError,
    MalformedPayloadError,
    TruncatedPayloadError,
    TypeMismatchError,
    ValueTooLargeError,
)
from ..remote.base import RawMessage
from ..schema.types import Column, ColumnType, TableSchema

logger = logging.getLogger(__name__)

DELIMITER = "|"
ESCAPE = "\\"
QUOTE = '"'
NULL_MARKER = "~"
TRUE_LITERAL = "true"
FALSE_LITERAL = "false"

MAX_CHUNKS = 999
MAX_ID_DIGITS = 20

_ANCHOR_HEADER = re.compile(r"R([1-9][0-9]{0,2}):")
_CONTINUATION_HEADER = re.compile(r"C([0-9]{1,20})\.([1-9][0-9]{0,2})/([1-9][0-9]{0,2}):")
_INTEGER = re.compile(r"-?[0-9]+")
_FLOAT = re.compile(r"-?(?:[0-9]+(?:\.[0-9]+)?(?:e[+-]?[0-9]+)?|inf)|nan")

Row = tuple


@dataclass(frozen=True)
class Chunk:
    """One message-sized fragment of an encoded row.

    Attributes:
        index: Position within the row (0 = anchor)
        total: Number of chunks in the row
        body: Delimited values carried by this chunk
        anchor_id: Row id, known for parsed continuations
    """
    index: int
    total: int
    body: str
    anchor_id: Optional[str] = None

    @property
    def is_anchor(self) -> bool:
        return self.index == 0

    def render(self, anchor_id: Optional[str] = None) -> str:
        """Message content for this chunk.

        Args:
            anchor_id: Row id; required for continuation chunks

        Raises:
            ValueError: If a continuation is rendered without an anchor id
        """
        if self.is_anchor:
            return f"R{self.total}:{self.body}"
        anchor = anchor_id or self.anchor_id
        if anchor is None:
            raise ValueError("Continuation chunk needs the anchor id")
        return f"C{anchor}.{self.index}/{self.total}:{self.body}"


@dataclass(frozen=True)
class RowLocation:
    """Message ids holding a row, in chunk order.

    Attributes:
        row_id: Anchor message id
        chunk_ids: Anchor id followed by continuation ids
    """
    row_id: str
    chunk_ids: tuple[str, ...]


def parse_chunk(content: str, message_id: Optional[str] = None) -> Chunk:
    """Parse message content into a chunk.

    Raises:
        MalformedPayloadError: If the content has no chunk header
    """
    match = _ANCHOR_HEADER.match(content)
    if match:
        return Chunk(index=0, total=int(match.group(1)), body=content[match.end():])

    match = _CONTINUATION_HEADER.match(content)
    if match:
        index, total = int(match.group(2)), int(match.group(3))
        if index >= total:
            raise MalformedPayloadError(
                f"Chunk index {index} out of range for {total} chunks", row_id=message_id
            )
        return Chunk(
            index=index,
            total=total,
            body=content[match.end():],
            anchor_id=match.group(1),
        )

    raise MalformedPayloadError("Message is not a row chunk", row_id=message_id)


def escape_text(value: str) -> str:
    return (
        value.replace(ESCAPE, ESCAPE + ESCAPE)
        .replace(QUOTE, ESCAPE + QUOTE)
        .replace(DELIMITER, ESCAPE + DELIMITER)
    )


def encode_value(col: Column, value: Any) -> str:
    """Render one value per its column's declared type."""
    if value is None:
        return NULL_MARKER
    if col.type == ColumnType.BOOLEAN:
        return TRUE_LITERAL if value else FALSE_LITERAL
    if col.type == ColumnType.INTEGER:
        return str(int(value))
    if col.type == ColumnType.FLOAT:
        return repr(float(value))
    return QUOTE + escape_text(value) + QUOTE


def split_values(body: str) -> list[str]:
    """Split a payload body on unescaped delimiters."""
    tokens: list[str] = []
    current: list[str] = []
    escaped = False
    for ch in body:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == ESCAPE:
            current.append(ch)
            escaped = True
        elif ch == DELIMITER:
            tokens.append("".join(current))
            current = []
        else:
            current.append(ch)
    tokens.append("".join(current))
    return tokens


def _unescape_text(col: Column, raw: str) -> str:
    if len(raw) < 2 or raw[0] != QUOTE or raw[-1] != QUOTE:
        raise TypeMismatchError(col.name, raw)
    out: list[str] = []
    chars = iter(raw[1:-1])
    for ch in chars:
        if ch == ESCAPE:
            nxt = next(chars, None)
            if nxt not in (ESCAPE, QUOTE, DELIMITER):
                raise TypeMismatchError(col.name, raw)
            out.append(nxt)
        elif ch == QUOTE:
            raise TypeMismatchError(col.name, raw)
        else:
            out.append(ch)
    return "".join(out)


def parse_value(col: Column, raw: str) -> Any:
    """Parse one rendered value per its column's declared type.

    Raises:
        TypeMismatchError: If the raw text is not a value of that type
    """
    if raw == NULL_MARKER:
        if not col.nullable:
            raise TypeMismatchError(col.name, raw)
        return None

    if col.type == ColumnType.INTEGER:
        if not _INTEGER.fullmatch(raw):
            raise TypeMismatchError(col.name, raw)
        return int(raw)
    if col.type == ColumnType.FLOAT:
        if not _FLOAT.fullmatch(raw):
            raise TypeMismatchError(col.name, raw)
        return float(raw)
    if col.type == ColumnType.BOOLEAN:
        if raw == TRUE_LITERAL:
            return True
        if raw == FALSE_LITERAL:
            return False
        raise TypeMismatchError(col.name, raw)
    return _unescape_text(col, raw)


def anchor_header_size(digits: int) -> int:
    """Length of an anchor header for a total of ``digits`` digits."""
    return len(f"R{'9' * digits}:")


def continuation_header_size(digits: int) -> int:
    """Longest continuation header for totals of ``digits`` digits."""
    return len(f"C{'9' * MAX_ID_DIGITS}.{'9' * digits}/{'9' * digits}:")


def _pack(
    schema: TableSchema, tokens: list[str], anchor_capacity: int, capacity: int
) -> list[list[str]]:
    groups: list[list[str]] = []
    current: list[str] = []
    size = 0
    for col, token in zip(schema.columns, tokens):
        limit = anchor_capacity if not groups else capacity
        extra = len(token) + (1 if current else 0)
        if current and size + extra > limit:
            groups.append(current)
            current, size = [], 0
            limit, extra = capacity, len(token)
        if len(token) > limit:
            raise ValueTooLargeError(
                f"Value of column '{col.name}' is {len(token)} characters encoded; "
                f"at most {limit} fit in one message",
                column=col.name,
                size=len(token),
            )
        current.append(token)
        size += extra
    groups.append(current)
    return groups


def encode_row(schema: TableSchema, row: Sequence[Any], max_message_size: int) -> list[Chunk]:
    """Encode a row into the minimal number of chunks.

    A row that fits one message (with its anchor header) is a single chunk.
    Otherwise values are packed greedily, in order: the anchor holds as
    much as fits after ``R<total>:``, each continuation as much as fits
    after the longest ``C<anchor-id>.<index>/<total>:`` for the width of
    the total. Greedy packing of ordered values gives the fewest chunks.

    Args:
        schema: Table schema
        row: Row values (validated against the schema)
        max_message_size: Per-message content limit

    Returns:
        Chunks in order; continuations carry no anchor id yet

    Raises:
        ValidationError: If the row doesn't match the schema
        ValueTooLargeError: If one value can't fit in a chunk, or the row
            needs more than MAX_CHUNKS chunks
    """
    row = schema.coerce_row(row)
    tokens = [encode_value(col, value) for col, value in zip(schema.columns, row)]

    body = DELIMITER.join(tokens)
    if anchor_header_size(1) + len(body) <= max_message_size:
        return [Chunk(index=0, total=1, body=body)]

    # Header widths depend on the chunk count; widen until the count fits them
    for digits in range(1, len(str(MAX_CHUNKS)) + 1):
        groups = _pack(
            schema,
            tokens,
            max_message_size - anchor_header_size(digits),
            max_message_size - continuation_header_size(digits),
        )
        if len(groups) < 10 ** digits:
            break

    if len(groups) > MAX_CHUNKS:
        raise ValueTooLargeError(
            f"Row needs {len(groups)} messages (max {MAX_CHUNKS})", size=len(body)
        )

    total = len(groups)
    return [Chunk(index=i, total=total, body=DELIMITER.join(g)) for i, g in enumerate(groups)]


def decode_row(
    chunks: Sequence[Chunk],
    schema: TableSchema,
    row_id: Optional[str] = None,
) -> Row:
    """Decode a row from its chunks.

    Args:
        chunks: Chunks in index order, anchor first
        schema: Table schema
        row_id: Anchor id; continuations must name it

    Raises:
        TruncatedPayloadError: Missing, extra or out-of-order chunks
        MalformedPayloadError: Wrong number of values
        TypeMismatchError: A value doesn't parse as its column's type
    """
    table = schema.table_name
    if not chunks or not chunks[0].is_anchor:
        raise TruncatedPayloadError("Row has no anchor chunk", table=table, row_id=row_id)

    total = chunks[0].total
    if len(chunks) != total:
        raise TruncatedPayloadError(
            f"Row has {len(chunks)} of {total} chunks", table=table, row_id=row_id
        )
    for expected, chunk in enumerate(chunks):
        if chunk.index != expected or chunk.total != total:
            raise TruncatedPayloadError(
                f"Chunk {chunk.index}/{chunk.total} found where {expected}/{total} was expected",
                table=table,
                row_id=row_id,
            )
        if expected and row_id is not None and chunk.anchor_id != row_id:
            raise TruncatedPayloadError(
                f"Chunk {expected} belongs to row {chunk.anchor_id}", table=table, row_id=row_id
            )

    tokens = split_values(DELIMITER.join(c.body for c in chunks))
    if len(tokens) != len(schema.columns):
        raise MalformedPayloadError(
            f"Row has {len(tokens)} values, table has {len(schema.columns)} columns",
            table=table,
            row_id=row_id,
        )

    values = []
    for col, raw in zip(schema.columns, tokens):
        try:
            values.append(parse_value(col, raw))
        except TypeMismatchError as e:
            raise e.with_context(table=table, row_id=row_id)
    return tuple(values)


@dataclass
class AssembledRow:
    """A decoded row with the messages that hold it."""
    row_id: str
    row: Row
    location: RowLocation


@dataclass
class AssemblyReport:
    """Outcome of reassembling a message stream.

    Attributes:
        rows: Decoded rows in log (anchor) order
        orphans: Continuation message ids whose anchor is absent (garbage)
        truncated: Anchor id -> message ids of rows missing chunks
        corrupt: Anchor id -> decode error, for rows that failed to decode
        foreign: Ids of messages that are not in row layout
    """
    rows: list[AssembledRow] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)
    truncated: dict[str, list[str]] = field(default_factory=dict)
    corrupt: dict[str, DecodeError] = field(default_factory=dict)
    foreign: list[str] = field(default_factory=list)


@dataclass
class _PendingRow:
    total: int
    parts: dict[int, tuple[str, Chunk]]


class RowAssembler:
    """Groups a channel's messages into rows.

    Feed messages oldest first, then call finish(). Pinned and system
    messages are skipped. Continuations whose anchor was never seen are
    garbage from an interrupted delete and are skipped.

    By default any undecodable or incomplete row raises, so a scan never
    returns a silently incomplete result. With ``collect_errors`` the
    problems are collected into the report instead (used by repair).

    Example:
        >>> assembler = RowAssembler(schema)
        >>> async for message in reader.scan(channel_id):
        ...     assembler.feed(message)
        >>> rows = assembler.finish().rows
    """

    def __init__(
        self,
        schema: TableSchema,
        skip_foreign: bool = False,
        collect_errors: bool = False,
    ) -> None:
        """Initialize the assembler.

        Args:
            schema: Table schema used for decoding
            skip_foreign: Skip messages that are not row chunks instead of failing
            collect_errors: Report decode problems instead of raising
        """
        self.schema = schema
        self.skip_foreign = skip_foreign or collect_errors
        self.collect_errors = collect_errors
        self._pending: dict[str, _PendingRow] = {}
        self._report = AssemblyReport()

    def feed(self, message: RawMessage) -> None:
        """Add the next message of the log.

        Raises:
            MalformedPayloadError: For a foreign message, unless skipped
        """
        if not message.is_data:
            return

        try:
            chunk = parse_chunk(message.content, message.id)
        except MalformedPayloadError as e:
            if not self.skip_foreign:
                raise e.with_context(table=self.schema.table_name)
            logger.warning(
                f"Skipping foreign message {message.id}",
                extra={"table": self.schema.table_name, "message_id": message.id},
            )
            self._report.foreign.append(message.id)
            return

        if chunk.is_anchor:
            self._pending[message.id] = _PendingRow(
                total=chunk.total, parts={0: (message.id, chunk)}
            )
            return

        pending = self._pending.get(chunk.anchor_id)
        if pending is None or chunk.total != pending.total or chunk.index in pending.parts:
            logger.debug(
                f"Skipping orphan chunk {message.id} of row {chunk.anchor_id}",
                extra={"table": self.schema.table_name, "message_id": message.id},
            )
            self._report.orphans.append(message.id)
            return
        pending.parts[chunk.index] = (message.id, chunk)

    def finish(self) -> AssemblyReport:
        """Decode all rows seen so far.

        Raises:
            TruncatedPayloadError: A row is missing chunks (unless collecting)
            DecodeError: A row failed to decode (unless collecting)
        """
        table = self.schema.table_name
        for anchor_id, pending in self._pending.items():
            if len(pending.parts) != pending.total:
                error = TruncatedPayloadError(
                    f"Row has {len(pending.parts)} of {pending.total} chunks",
                    table=table,
                    row_id=anchor_id,
                )
                if not self.collect_errors:
                    raise error
                self._report.truncated[anchor_id] = [
                    mid for _, (mid, _) in sorted(pending.parts.items())
                ]
                continue

            ordered = [pending.parts[i] for i in range(pending.total)]
            try:
                row = decode_row([c for _, c in ordered], self.schema, row_id=anchor_id)
            except DecodeError as e:
                if not self.collect_errors:
                    raise
                self._report.corrupt[anchor_id] = e
                continue

            self._report.rows.append(
                AssembledRow(
                    row_id=anchor_id,
                    row=row,
                    location=RowLocation(anchor_id, tuple(mid for mid, _ in ordered)),
                )
            )

        self._pending.clear()
        return self._report
