"""
Channel-table mapper for ChanDB.

Maintains the mapping between logical table names and channels of one
guild.

Table names:
    - Case-insensitive; normalized to lowercase
    - 1-100 characters of [a-z0-9_-] (the channel-name alphabet)
    - Optionally namespaced by a configured channel prefix
    - Names ending in -archived-<digits> are reserved for dropped tables

Invariants:
    - At most one channel maps to a given table name
    - The name index is a cache of the channel listing; a lookup miss
      refreshes it once before reporting the table as absent
    - Create and drop invalidate the index

How to change safely:
    - The channel name is the only persisted link between a table and its
      channel; never change normalize_table_name() for existing names
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Callable, Dict, List, Optional

from ..config import DropMode
from ..errors import AlreadyExistsError, NotFoundError, ValidationError
from ..remote.base import Channel, ChatPlatform
from ..remote.governor import RateLimitGovernor, route_key
from ..schema.types import TableSchema

logger = logging.getLogger(__name__)

TABLE_NAME_PATTERN = re.compile(r"^[a-z0-9_-]{1,100}$")
ARCHIVED_SUFFIX = re.compile(r"-archived-[0-9]+$")
MAX_CHANNEL_NAME = 100


def normalize_table_name(name: str) -> str:
    """Lowercase and validate a table name.

    Raises:
        ValidationError: If the name can't be a channel name
    """
    if not isinstance(name, str):
        raise ValidationError(f"Table name must be a string, got {type(name).__name__}")
    normalized = name.strip().lower()
    if not TABLE_NAME_PATTERN.match(normalized):
        raise ValidationError(
            f"Invalid table name '{name}': use 1-100 characters of a-z, 0-9, '_' or '-'",
            field_name="table",
        )
    if ARCHIVED_SUFFIX.search(normalized):
        raise ValidationError(
            f"Invalid table name '{name}': the -archived-<n> suffix is reserved",
            field_name="table",
        )
    return normalized


class ChannelTableMapper:
    """Resolves, creates and drops the channels backing tables.

    Thread safety:
        The name index is replaced atomically under a lock.

    Example:
        >>> mapper = ChannelTableMapper(platform, governor, guild_id="123")
        >>> channel = await mapper.create_table("users", schema)
        >>> assert (await mapper.resolve_table("USERS")).id == channel.id
    """

    def __init__(
        self,
        platform: ChatPlatform,
        governor: RateLimitGovernor,
        guild_id: str,
        channel_prefix: str = "",
        drop_mode: DropMode = DropMode.DELETE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the mapper.

        Args:
            platform: Remote platform
            governor: Shared rate-limit governor
            guild_id: Guild whose channels hold the tables
            channel_prefix: Prefix prepended to every table's channel name
            drop_mode: Whether dropping deletes or archives the channel
            clock: Wall clock used for archive names
        """
        self.platform = platform
        self.governor = governor
        self.guild_id = guild_id
        self.channel_prefix = channel_prefix.lower()
        self.drop_mode = drop_mode
        self._clock = clock
        self._index: Optional[Dict[str, Channel]] = None
        self._lock = threading.Lock()

    def channel_name(self, table: str) -> str:
        """Channel name for a (normalized) table name.

        Raises:
            ValidationError: If prefix and name exceed the channel-name limit
        """
        name = f"{self.channel_prefix}{table}"
        if len(name) > MAX_CHANNEL_NAME:
            raise ValidationError(
                f"Channel name '{name}' exceeds {MAX_CHANNEL_NAME} characters",
                field_name="table",
            )
        return name

    def table_name(self, channel_name: str) -> Optional[str]:
        """Table name for a channel name, or None if the channel isn't a table."""
        if not channel_name.startswith(self.channel_prefix):
            return None
        table = channel_name[len(self.channel_prefix):]
        if not TABLE_NAME_PATTERN.match(table) or ARCHIVED_SUFFIX.search(table):
            return None
        return table

    async def refresh(self) -> Dict[str, Channel]:
        """Reload the name index from the channel listing."""
        channels = await self.governor.call(
            route_key("list_channels", self.guild_id),
            self.platform.list_channels,
            self.guild_id,
        )
        index: Dict[str, Channel] = {}
        for channel in sorted(channels, key=lambda c: int(c.id)):
            table = self.table_name(channel.name)
            if table is None:
                continue
            if table in index:
                logger.warning(
                    f"Ignoring duplicate channel {channel.id} for table {table}",
                    extra={"table": table, "channel_id": channel.id},
                )
                continue
            index[table] = channel

        with self._lock:
            self._index = index
        logger.debug(f"Indexed {len(index)} tables", extra={"guild_id": self.guild_id})
        return index

    def invalidate(self) -> None:
        with self._lock:
            self._index = None

    async def _current_index(self) -> Dict[str, Channel]:
        with self._lock:
            index = self._index
        if index is None:
            index = await self.refresh()
        return index

    async def list_tables(self) -> List[str]:
        """Names of all tables, sorted."""
        return sorted(await self._current_index())

    async def resolve_table(self, name: str) -> Channel:
        """Channel backing a table.

        Raises:
            ValidationError: If the name is invalid
            NotFoundError: If no channel maps to the table
        """
        table = normalize_table_name(name)
        index = await self._current_index()
        channel = index.get(table)
        if channel is None:
            channel = (await self.refresh()).get(table)
        if channel is None:
            raise NotFoundError(f"Table '{table}' not found", resource_type="table", resource_id=table)
        return channel

    async def create_table(self, name: str, schema: TableSchema) -> Channel:
        """Create the channel for a new table.

        The schema record itself is written by the SchemaRegistry.

        Raises:
            ValidationError: If the name is invalid
            AlreadyExistsError: If a channel for the table already exists
        """
        table = normalize_table_name(name)
        channel_name = self.channel_name(table)
        if table in await self.refresh():
            raise AlreadyExistsError(f"Table '{table}' already exists", table=table)

        columns = ", ".join(f"{c.name} {c.type.value}" for c in schema.columns)
        topic = f"chandb table {table} ({columns})"[:1024]
        channel = await self.governor.call(
            route_key("create_channel", self.guild_id),
            self.platform.create_channel,
            self.guild_id,
            channel_name,
            topic,
        )
        self.invalidate()

        logger.info(
            f"Created channel for table {table}",
            extra={"table": table, "channel_id": channel.id},
        )
        return channel

    async def drop_table(self, name: str) -> Channel:
        """Delete or archive the channel of a table.

        Returns:
            The channel that backed the table

        Raises:
            NotFoundError: If the table doesn't exist
        """
        table = normalize_table_name(name)
        channel = await self.resolve_table(table)

        try:
            if self.drop_mode == DropMode.ARCHIVE:
                suffix = f"-archived-{int(self._clock())}"
                archived = channel.name[: MAX_CHANNEL_NAME - len(suffix)] + suffix
                await self.governor.call(
                    route_key("rename_channel", channel.id),
                    self.platform.rename_channel,
                    channel.id,
                    archived,
                )
            else:
                await self.governor.call(
                    route_key("delete_channel", channel.id),
                    self.platform.delete_channel,
                    channel.id,
                )
        except NotFoundError as e:
            raise NotFoundError(
                f"Table '{table}' not found", resource_type="table", resource_id=table
            ) from e
        finally:
            self.invalidate()

        logger.info(
            f"Dropped table {table}",
            extra={"table": table, "channel_id": channel.id, "mode": self.drop_mode.value},
        )
        return channel
