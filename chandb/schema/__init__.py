"""
Schema management for ChanDB.

This module provides:
- Column and table type definitions
- The pinned-message schema registry
"""

from .registry import SCHEMA_FORMAT, SchemaRegistry, parse_schema, render_schema
from .types import Column, ColumnType, TableSchema, column

__all__ = [
    # Types
    "Column",
    "ColumnType",
    "TableSchema",
    "column",
    # Registry
    "SchemaRegistry",
    "SCHEMA_FORMAT",
    "render_schema",
    "parse_schema",
]
