"""
Schema registry for ChanDB tables.

Each table channel carries its schema as a pinned message holding a fenced
JSON document:

    ```json
    {
      "columns": [{"name": "id", "type": "integer"}, ...],
      "created_at_ms": 1700000000000,
      "fingerprint": "sha256:...",
      "format": "chandb.schema/1",
      "table_name": "users"
    }
    ```

Invariants:
    - The schema record is written exactly once, when the table is created
    - A record is recognized by its format marker; other pins are ignored
    - A recognized record whose fingerprint doesn't match its columns is
      corrupt and is reported, never silently accepted
    - Schemas are cached per channel id for the life of the registry

How to change safely:
    - Bump SCHEMA_FORMAT only together with a reader for the old format
    - Never change the fingerprint canonicalization (see TableSchema)
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, Optional

from ..errors import (
    ChanDbError,
    MalformedPayloadError,
    SchemaMissingError,
    ValueTooLargeError,
)
from ..remote.base import Channel, ChatPlatform
from ..remote.governor import RateLimitGovernor, route_key
from .types import TableSchema

logger = logging.getLogger(__name__)

SCHEMA_FORMAT = "chandb.schema/1"
FENCE_OPEN = "```json"
FENCE_CLOSE = "```"


def render_schema(schema: TableSchema) -> str:
    """Render a schema as pinned-message content."""
    document: Dict[str, Any] = schema.to_dict()
    document["format"] = SCHEMA_FORMAT
    document["fingerprint"] = schema.fingerprint()
    return f"{FENCE_OPEN}\n{json.dumps(document, indent=2, sort_keys=True)}\n{FENCE_CLOSE}"


def parse_schema(content: str, message_id: Optional[str] = None) -> Optional[TableSchema]:
    """Parse pinned-message content into a schema.

    Args:
        content: Message content
        message_id: Message id, for error context

    Returns:
        The schema, or None if the message is not a schema record

    Raises:
        MalformedPayloadError: If the message is a schema record but is
            invalid or fails its fingerprint check
    """
    text = content.strip()
    if text.startswith(FENCE_OPEN):
        text = text[len(FENCE_OPEN):]
    if text.endswith(FENCE_CLOSE):
        text = text[: -len(FENCE_CLOSE)]

    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(document, dict) or document.get("format") != SCHEMA_FORMAT:
        return None

    try:
        schema = TableSchema.from_dict(document)
    except (KeyError, TypeError, ValueError, ChanDbError) as e:
        raise MalformedPayloadError(
            f"Invalid schema record: {e}",
            table=document.get("table_name"),
            row_id=message_id,
        ) from e

    expected = document.get("fingerprint")
    if expected != schema.fingerprint():
        raise MalformedPayloadError(
            "Schema record fingerprint mismatch",
            table=schema.table_name,
            row_id=message_id,
            expected=expected,
            actual=schema.fingerprint(),
        )
    return schema


class SchemaRegistry:
    """Reads and writes the schema record of table channels.

    Thread safety:
        The schema cache is guarded by a lock; safe to share between
        coroutines.

    Example:
        >>> registry = SchemaRegistry(platform, governor)
        >>> await registry.write_schema(channel, schema)
        >>> same = await registry.read_schema(channel, "users")
    """

    def __init__(
        self,
        platform: ChatPlatform,
        governor: RateLimitGovernor,
        max_message_size: int = 2000,
    ) -> None:
        self.platform = platform
        self.governor = governor
        self.max_message_size = max_message_size
        self._schemas: Dict[str, TableSchema] = {}
        self._lock = threading.Lock()

    def render(self, schema: TableSchema) -> str:
        """Schema record content, checked against the message size limit.

        Raises:
            ValueTooLargeError: If the record doesn't fit one message
        """
        content = render_schema(schema)
        if len(content) > self.max_message_size:
            raise ValueTooLargeError(
                f"Schema record for '{schema.table_name}' is {len(content)} characters "
                f"(max {self.max_message_size})",
                size=len(content),
            )
        return content

    async def write_schema(self, channel: Channel, schema: TableSchema) -> str:
        """Persist a schema as the pinned record of a channel.

        Args:
            channel: Table channel
            schema: Schema to persist

        Returns:
            Id of the schema message

        Raises:
            ValueTooLargeError: If the record doesn't fit one message
        """
        content = self.render(schema)
        message = await self.governor.call(
            route_key("send_message", channel.id),
            self.platform.send_message,
            channel.id,
            content,
        )
        await self.governor.call(
            route_key("pin_message", channel.id),
            self.platform.pin_message,
            channel.id,
            message.id,
        )

        with self._lock:
            self._schemas[channel.id] = schema

        logger.info(
            f"Wrote schema for table {schema.table_name}",
            extra={
                "table": schema.table_name,
                "channel_id": channel.id,
                "fingerprint": schema.fingerprint(),
            },
        )
        return message.id

    async def read_schema(self, channel: Channel, table: str) -> TableSchema:
        """Load the schema of a table channel.

        Args:
            channel: Table channel
            table: Table name, for error context

        Returns:
            The table's schema

        Raises:
            SchemaMissingError: If no pinned schema record exists
            MalformedPayloadError: If the record is corrupt
        """
        cached = self.cached(channel.id)
        if cached is not None:
            return cached

        pins = await self.governor.call(
            route_key("get_pins", channel.id),
            self.platform.get_pins,
            channel.id,
        )

        schema = None
        for message in pins:
            schema = parse_schema(message.content, message.id)
            if schema is not None:
                break
        if schema is None:
            raise SchemaMissingError(table, channel.id)

        if schema.table_name != table:
            logger.warning(
                f"Schema record names table {schema.table_name}, channel maps to {table}",
                extra={"table": table, "channel_id": channel.id},
            )

        with self._lock:
            self._schemas[channel.id] = schema
        return schema

    def cached(self, channel_id: str) -> Optional[TableSchema]:
        with self._lock:
            return self._schemas.get(channel_id)

    def forget(self, channel_id: str) -> None:
        """Drop the cached schema of a channel."""
        with self._lock:
            self._schemas.pop(channel_id, None)
