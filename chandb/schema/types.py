"""
Core type definitions for ChanDB table schemas.

This module defines the column model of a table:
- ColumnType: The closed set of declared column types
- Column: One named, typed column
- TableSchema: Ordered column list of a table

Invariants:
    - Column names are unique within a table
    - A table has at least one column
    - A schema is immutable after the table is created (no ALTER TABLE)
    - Values are plain Python scalars checked against the declared type:
      int for INTEGER, float (or int) for FLOAT, str for TEXT, bool for
      BOOLEAN, None only for nullable columns

How to change safely:
    - Adding a ColumnType requires a codec rendering and parser for it
    - Never change the string value of an existing ColumnType; it is
      persisted in every schema record

Example:
    >>> from chandb.schema.types import TableSchema, column
    >>> users = TableSchema(
    ...     table_name="users",
    ...     columns=(column("id", "integer"), column("name", "text", nullable=True)),
    ... )
"""

from __future__ import annotations

import hashlib
import json
import re
import sys
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any

from ..errors import ValidationError

COLUMN_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")
MAX_COLUMNS = 256


class ColumnType(Enum):
    """Supported declared column types."""

    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    BOOLEAN = "boolean"

    @classmethod
    def from_str(cls, value: str) -> ColumnType:
        """Convert string representation to ColumnType.

        Accepts the common SQL aliases (int, real, str, bool, ...).

        Raises:
            ValueError: If value is not a valid column type
        """
        normalized = _TYPE_ALIASES.get(value.lower(), value.lower())
        for kind in cls:
            if kind.value == normalized:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid column type '{value}'. Valid types: {valid}")


_TYPE_ALIASES = {
    "int": "integer",
    "bigint": "integer",
    "real": "float",
    "double": "float",
    "str": "text",
    "string": "text",
    "varchar": "text",
    "bool": "boolean",
}


@dataclass(frozen=True)
class Column:
    """Definition of a single table column.

    Attributes:
        name: Column name (unique within the table)
        type: Declared type
        nullable: Whether NULL is an accepted value
    """

    name: str
    type: ColumnType
    nullable: bool = False

    def __post_init__(self) -> None:
        if not COLUMN_NAME_PATTERN.match(self.name or ""):
            raise ValidationError(
                f"Invalid column name '{self.name}'", field_name=self.name
            )

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this column.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            if not self.nullable:
                return False, f"Column '{self.name}' is not nullable"
            return True, None

        validators = {
            ColumnType.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
            ColumnType.FLOAT: lambda v: isinstance(v, float)
            or (isinstance(v, int) and not isinstance(v, bool) and abs(v) <= sys.float_info.max),
            ColumnType.TEXT: lambda v: isinstance(v, str),
            ColumnType.BOOLEAN: lambda v: isinstance(v, bool),
        }
        if not validators[self.type](value):
            return (
                False,
                f"Column '{self.name}' expects {self.type.value}, got {type(value).__name__}",
            )
        return True, None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {"name": self.name, "type": self.type.value}
        if self.nullable:
            result["nullable"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Column:
        """Create from dictionary representation."""
        return cls(
            name=data["name"],
            type=ColumnType.from_str(data["type"]),
            nullable=data.get("nullable", False),
        )


def column(name: str, type: str | ColumnType, *, nullable: bool = False) -> Column:
    """Convenience function to create a Column.

    Example:
        >>> column("id", "integer")
        >>> column("note", ColumnType.TEXT, nullable=True)
    """
    if isinstance(type, str):
        type = ColumnType.from_str(type)
    return Column(name=name, type=type, nullable=nullable)


@dataclass(frozen=True)
class TableSchema:
    """Ordered column list of one table.

    Attributes:
        table_name: Normalized (lowercase) table name
        columns: Columns in row order
        created_at_ms: Creation timestamp (Unix ms)
    """

    table_name: str
    columns: tuple[Column, ...]
    created_at_ms: int = dataclass_field(default_factory=lambda: int(time.time() * 1000))

    def __post_init__(self) -> None:
        if not self.columns:
            raise ValidationError(f"Table '{self.table_name}' must have at least one column")
        if len(self.columns) > MAX_COLUMNS:
            raise ValidationError(
                f"Table '{self.table_name}' has {len(self.columns)} columns (max {MAX_COLUMNS})"
            )
        seen: set[str] = set()
        for col in self.columns:
            if col.name in seen:
                raise ValidationError(
                    f"Duplicate column '{col.name}' in table '{self.table_name}'",
                    field_name=col.name,
                )
            seen.add(col.name)

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def get_column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def coerce_row(self, values: Sequence[Any] | Mapping[str, Any]) -> tuple[Any, ...]:
        """Validate a row and return it as a tuple in column order.

        Args:
            values: Values in column order, or a mapping of column name to
                value (omitted nullable columns become None)

        Returns:
            Row tuple

        Raises:
            ValidationError: If arity, names or value types don't match

        Ints given for FLOAT columns are returned as floats.
        """
        if isinstance(values, Mapping):
            unknown = [k for k in values if self.get_column(k) is None]
            if unknown:
                raise ValidationError(
                    f"Unknown columns {unknown} for table '{self.table_name}'",
                    field_name=unknown[0],
                )
            row = tuple(values.get(c.name) for c in self.columns)
        else:
            if isinstance(values, (str, bytes)):
                raise ValidationError("A row must be a sequence of values, not a string")
            row = tuple(values)
            if len(row) != len(self.columns):
                raise ValidationError(
                    f"Table '{self.table_name}' expects {len(self.columns)} values, got {len(row)}"
                )

        errors = []
        for col, value in zip(self.columns, row):
            ok, message = col.validate_value(value)
            if not ok:
                errors.append(message)
        if errors:
            raise ValidationError(
                f"Invalid row for table '{self.table_name}': {errors[0]}",
                errors=errors,
            )
        # Ints stored in FLOAT columns read back as floats; store them that way too
        return tuple(
            float(value) if col.type == ColumnType.FLOAT and value is not None else value
            for col, value in zip(self.columns, row)
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        return {
            "table_name": self.table_name,
            "columns": [c.to_dict() for c in self.columns],
            "created_at_ms": self.created_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TableSchema:
        """Create from dictionary representation."""
        return cls(
            table_name=data["table_name"],
            columns=tuple(Column.from_dict(c) for c in data["columns"]),
            created_at_ms=data.get("created_at_ms", 0),
        )

    def fingerprint(self) -> str:
        """SHA-256 fingerprint of the column layout.

        The creation timestamp is not part of the fingerprint; two tables
        with the same name and columns have the same fingerprint.

        Returns:
            Fingerprint string in format 'sha256:<hash>'
        """
        canonical = json.dumps(
            {"table_name": self.table_name, "columns": [c.to_dict() for c in self.columns]},
            sort_keys=True,
            separators=(",", ":"),
        )
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"
