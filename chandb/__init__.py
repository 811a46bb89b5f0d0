"""
ChanDB - relational table storage on top of chat channels.

This package implements a storage engine that persists tables using a chat
platform's channel/message primitives as the only durable medium:
- Each logical table is a channel
- Each row is one or more messages (anchor + continuation chunks)
- The table schema is a pinned message in the channel
- A local write-through cache keeps scans cheap

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │ Query engine │────▶│ ChannelStore │────▶│  SchemaRegistry  │
    └──────────────┘     └──────┬───────┘     └──────────────────┘
                                │
             ┌──────────────────┼──────────────────┐
             ▼                  ▼                  ▼
       ┌───────────┐     ┌─────────────┐    ┌──────────────────┐
       │LocalCache │     │  LogReader  │    │ MutationExecutor │
       └───────────┘     └──────┬──────┘    └────────┬─────────┘
                                │   RowCodec         │
                                ▼                    ▼
                        ┌─────────────────────────────────┐
                        │       RateLimitGovernor         │
                        └────────────────┬────────────────┘
                                         ▼
                        ┌─────────────────────────────────┐
                        │  ChatPlatform (Discord/memory)  │
                        └─────────────────────────────────┘

Invariants:
    - The channel message log is the source of truth
    - A row identifier is the id of the row's anchor message
    - Row identifiers are stable across updates and never reused
    - Every remote call goes through the RateLimitGovernor

How to change safely:
    - The row/schema encoding is the persisted layout; changes need a
      format marker bump and a reader for the old layout
    - New remote backends must implement the ChatPlatform protocol
"""

from ._version import __version__
from .storage.store import ChannelStore, TableHandle

__all__ = ["__version__", "ChannelStore", "TableHandle"]
