"""
Runtime wiring for ChanDB.

Builds a ChannelStore from configuration:
1. Load configuration from environment
2. Configure logging
3. Connect the remote platform
4. Share one RateLimitGovernor between all store components

Running the module lists the tables of the configured guild with their
columns:

    DISCORD_BOT_TOKEN=... DISCORD_GUILD_ID=... python -m chandb.main

Invariants:
    - One governor per store; it owns the whole rate budget of the bot token
    - The platform is closed when the store context exits
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import json_log_formatter

from .config import ChanDbConfig
from .remote.base import create_platform
from .remote.governor import RateLimitGovernor
from .storage.store import ChannelStore

logger = logging.getLogger(__name__)

LOCAL_GUILD_ID = "local"


def setup_logging(config: ChanDbConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: ChanDB configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def connect_store(config: Optional[ChanDbConfig] = None) -> AsyncIterator[ChannelStore]:
    """Open a store for the configured backend and guild.

    Args:
        config: Configuration (loaded from the environment when omitted)

    Example:
        >>> async with connect_store() as store:
        ...     print(await store.list_tables())
    """
    config = config or ChanDbConfig.from_env()
    config.log_config()

    platform = create_platform(config)
    await platform.connect()

    store = ChannelStore(
        platform,
        guild_id=config.discord.guild_id or LOCAL_GUILD_ID,
        config=config.storage,
        governor=RateLimitGovernor(config.governor),
    )
    logger.info(
        "ChanDB store ready",
        extra={"backend": config.backend.value, "guild_id": store.guild_id},
    )
    try:
        yield store
    finally:
        await store.close()
        logger.info("ChanDB store closed")


async def describe_guild(config: ChanDbConfig) -> None:
    """Print every table of the guild with its columns."""
    async with connect_store(config) as store:
        for table in await store.list_tables():
            schema = await store.describe(table)
            columns = ", ".join(
                f"{c.name} {c.type.value}{'' if c.nullable else ' not null'}"
                for c in schema.columns
            )
            print(f"{table}: {columns}")


def main() -> None:
    """Main entry point."""
    try:
        config = ChanDbConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    asyncio.run(describe_guild(config))


if __name__ == "__main__":
    main()
