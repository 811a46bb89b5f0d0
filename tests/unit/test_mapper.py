"""
Unit tests for the channel-table mapper.

Tests cover:
- Table name normalization
- Create / resolve / list / drop
- Channel prefixes and archive drops
- Name index caching
"""

import pytest

from chandb.config import DropMode
from chandb.errors import AlreadyExistsError, NotFoundError, ValidationError
from chandb.storage.mapper import ChannelTableMapper, normalize_table_name

GUILD = "g"


@pytest.fixture
def mapper(platform, governor):
    """Mapper with default settings."""
    return ChannelTableMapper(platform, governor, GUILD)


class TestNormalizeTableName:
    """Tests for normalize_table_name()."""

    def test_lowercases(self):
        """Names are case-insensitive."""
        assert normalize_table_name("Users") == "users"

    @pytest.mark.parametrize("name", ["", "has space", "semi;colon", "x" * 101, "t-archived-17"])
    def test_rejects_invalid(self, name):
        """Names must be valid, non-reserved channel names."""
        with pytest.raises(ValidationError):
            normalize_table_name(name)


class TestChannelTableMapper:
    """Tests for ChannelTableMapper."""

    @pytest.mark.asyncio
    async def test_create_and_resolve(self, mapper, users_schema):
        """A created table resolves to its channel under any case."""
        channel = await mapper.create_table("Users", users_schema)

        resolved = await mapper.resolve_table("USERS")

        assert resolved.id == channel.id
        assert channel.name == "users"
        assert "id integer" in channel.topic

    @pytest.mark.asyncio
    async def test_create_existing(self, mapper, users_schema):
        """Creating a table twice fails."""
        await mapper.create_table("users", users_schema)

        with pytest.raises(AlreadyExistsError) as exc_info:
            await mapper.create_table("users", users_schema)

        assert exc_info.value.table == "users"

    @pytest.mark.asyncio
    async def test_resolve_missing(self, mapper):
        """An absent table is reported as not found."""
        with pytest.raises(NotFoundError) as exc_info:
            await mapper.resolve_table("ghosts")

        assert exc_info.value.resource_type == "table"

    @pytest.mark.asyncio
    async def test_index_is_cached(self, mapper, platform, users_schema):
        """Resolving a known table doesn't list channels again."""
        await mapper.create_table("users", users_schema)
        await mapper.resolve_table("users")
        listings = platform.call_count("list_channels")

        await mapper.resolve_table("users")

        assert platform.call_count("list_channels") == listings

    @pytest.mark.asyncio
    async def test_miss_refreshes_once(self, mapper, platform):
        """A table created elsewhere is found after one refresh."""
        await mapper.list_tables()
        await platform.create_channel(GUILD, "orders")

        channel = await mapper.resolve_table("orders")

        assert channel.name == "orders"
        assert platform.call_count("list_channels") == 2

    @pytest.mark.asyncio
    async def test_list_tables(self, mapper, platform, users_schema):
        """Only this guild's table channels are listed, sorted."""
        await mapper.create_table("users", users_schema)
        await mapper.create_table("accounts", users_schema)
        await platform.create_channel("other-guild", "elsewhere")
        await platform.create_channel(GUILD, "Bad Name!")

        assert await mapper.list_tables() == ["accounts", "users"]

    @pytest.mark.asyncio
    async def test_prefix(self, platform, governor, users_schema):
        """A channel prefix namespaces the tables."""
        mapper = ChannelTableMapper(platform, governor, GUILD, channel_prefix="db-")
        await platform.create_channel(GUILD, "general")

        channel = await mapper.create_table("users", users_schema)

        assert channel.name == "db-users"
        assert await mapper.list_tables() == ["users"]

    @pytest.mark.asyncio
    async def test_drop_deletes_channel(self, mapper, platform, users_schema):
        """Dropping removes the channel."""
        channel = await mapper.create_table("users", users_schema)

        await mapper.drop_table("users")

        assert platform.channel_by_name("users") is None
        assert await mapper.list_tables() == []
        with pytest.raises(NotFoundError):
            await mapper.resolve_table("users")
        assert platform.call_count("delete_channel") == 1
        assert channel.id not in [c.id for c in (await platform.list_channels(GUILD)).value]

    @pytest.mark.asyncio
    async def test_drop_archives_channel(self, platform, governor, users_schema):
        """Archive mode renames the channel out of the table namespace."""
        mapper = ChannelTableMapper(
            platform, governor, GUILD, drop_mode=DropMode.ARCHIVE, clock=lambda: 1700000000.0
        )
        channel = await mapper.create_table("users", users_schema)

        await mapper.drop_table("users")

        assert platform.channel_by_name("users-archived-1700000000").id == channel.id
        assert await mapper.list_tables() == []

        await mapper.create_table("users", users_schema)
        assert await mapper.list_tables() == ["users"]

    @pytest.mark.asyncio
    async def test_drop_missing(self, mapper):
        """Dropping an absent table fails."""
        with pytest.raises(NotFoundError):
            await mapper.drop_table("ghosts")
