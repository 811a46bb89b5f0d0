"""
Storage engine for ChanDB.

This module provides:
- Row codec: rows <-> size-bounded message payloads
- Message log reader: paged, cursor-based channel scans
- Channel-table mapper: table names <-> channels
- Mutation executor: insert/update/delete as message operations
- Local cache: write-through row snapshots
- ChannelStore: the façade tying them together
"""

from .cache import LocalCache, TableSnapshot
from .codec import (
    AssembledRow,
    AssemblyReport,
    Chunk,
    RowAssembler,
    RowLocation,
    decode_row,
    encode_row,
    parse_chunk,
)
from .mapper import ChannelTableMapper, normalize_table_name
from .mutation import MutationExecutor
from .reader import Cursor, LogScan, MessageLogReader
from .store import ChannelStore, RepairReport, TableHandle

__all__ = [
    # Codec
    "Chunk",
    "RowLocation",
    "RowAssembler",
    "AssembledRow",
    "AssemblyReport",
    "encode_row",
    "decode_row",
    "parse_chunk",
    # Reader
    "Cursor",
    "LogScan",
    "MessageLogReader",
    # Mapper
    "ChannelTableMapper",
    "normalize_table_name",
    # Mutations
    "MutationExecutor",
    # Cache
    "LocalCache",
    "TableSnapshot",
    # Façade
    "ChannelStore",
    "TableHandle",
    "RepairReport",
]
