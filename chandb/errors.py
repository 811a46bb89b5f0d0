"""
Error types for ChanDB.

This module defines all exception types surfaced by the storage engine:
- ChanDbError: Base exception
- NotFoundError / AlreadyExistsError: Table or row presence conflicts
- ValidationError: Row or table definition rejected before any remote call
- DecodeError (Truncated / TypeMismatch / Malformed): Corrupt persisted payload
- SchemaMissingError: Channel exists but carries no schema record
- RateLimitExceededError / RemoteUnavailableError / RemoteRejectedError:
  Remote call failures after the governor's retry budget
- PartialMutationError: A multi-message mutation stopped half-way

Invariants:
    - All errors inherit from ChanDbError
    - Errors include context for debugging (table, row id, route)
    - Decode errors are never swallowed during a scan
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ChanDbError(Exception):
    """Base exception for all ChanDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CHANDB_ERROR"
        self.details = details or {}


class NotFoundError(ChanDbError):
    """Resource not found.

    Raised when:
    - Table (channel) doesn't exist
    - Row (anchor message) doesn't exist or was deleted
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class AlreadyExistsError(ChanDbError):
    """Table already exists."""

    def __init__(self, message: str, table: str) -> None:
        super().__init__(message, code="ALREADY_EXISTS", details={"table": table})
        self.table = table


class ValidationError(ChanDbError):
    """Row or table definition is invalid.

    Raised when:
    - Row arity doesn't match the schema
    - A value has the wrong type for its column
    - Table or column names are not acceptable
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class ValueTooLargeError(ChanDbError):
    """Row cannot be encoded within the platform's message size limit."""

    def __init__(self, message: str, column: Optional[str] = None, size: int = 0) -> None:
        super().__init__(
            message,
            code="VALUE_TOO_LARGE",
            details={"column": column, "size": size},
        )
        self.column = column
        self.size = size


class DecodeError(ChanDbError):
    """Persisted payload could not be decoded.

    Attributes:
        table: Table being read (if known)
        row_id: Offending message/row identifier (if known)
    """

    default_code = "DECODE_ERROR"

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        row_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        details.update({"table": table, "row_id": row_id})
        super().__init__(message, code=self.default_code, details=details)
        self.table = table
        self.row_id = row_id

    def with_context(self, table: Optional[str] = None, row_id: Optional[str] = None) -> DecodeError:
        """Fill in missing table/row context in place and return self."""
        if table and not self.table:
            self.table = table
            self.details["table"] = table
        if row_id and not self.row_id:
            self.row_id = row_id
            self.details["row_id"] = row_id
        return self


class TruncatedPayloadError(DecodeError):
    """A chunk of a multi-message row is missing or out of order."""

    default_code = "DECODE_TRUNCATED"


class TypeMismatchError(DecodeError):
    """A stored value does not parse as its column's declared type."""

    default_code = "DECODE_TYPE_MISMATCH"

    def __init__(
        self,
        column: str,
        raw: str,
        table: Optional[str] = None,
        row_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Value {raw!r} does not match type of column '{column}'",
            table=table,
            row_id=row_id,
            column=column,
            raw=raw,
        )
        self.column = column
        self.raw = raw


class MalformedPayloadError(DecodeError):
    """Message content is not a row or schema record in the expected layout."""

    default_code = "DECODE_MALFORMED"


class SchemaMissingError(ChanDbError):
    """Table channel exists but has no schema record.

    This is the "channel without schema" state left behind when table
    creation failed after the channel was created. It is not auto-healed.
    """

    def __init__(self, table: str, channel_id: Optional[str] = None) -> None:
        super().__init__(
            f"Schema missing for table '{table}'",
            code="SCHEMA_MISSING",
            details={"table": table, "channel_id": channel_id},
        )
        self.table = table
        self.channel_id = channel_id


class RateLimitExceededError(ChanDbError):
    """Remote side kept rejecting a call after the governor's retry budget."""

    def __init__(self, message: str, route: str, attempts: int, waited: float) -> None:
        super().__init__(
            message,
            code="RATE_LIMIT_EXCEEDED",
            details={"route": route, "attempts": attempts, "waited": waited},
        )
        self.route = route
        self.attempts = attempts
        self.waited = waited


class RemoteUnavailableError(ChanDbError):
    """Transport-level failure persisted after the governor's retry budget."""

    def __init__(self, message: str, route: str, attempts: int) -> None:
        super().__init__(
            message,
            code="REMOTE_UNAVAILABLE",
            details={"route": route, "attempts": attempts},
        )
        self.route = route
        self.attempts = attempts


class RemoteRejectedError(ChanDbError):
    """Remote side rejected a call for a non-retryable reason (e.g. 403)."""

    def __init__(self, message: str, route: str, status: Optional[int] = None) -> None:
        super().__init__(
            message,
            code="REMOTE_REJECTED",
            details={"route": route, "status": status},
        )
        self.route = route
        self.status = status


class PartialMutationError(ChanDbError):
    """A multi-message mutation succeeded for some chunks and failed for others.

    The row may be left in an inconsistent chunk state; run a repair scan.

    Attributes:
        row_id: Anchor id of the affected row
        completed: Message ids whose remote call succeeded
        pending: Description of the calls that did not happen
    """

    def __init__(
        self,
        message: str,
        table: Optional[str],
        row_id: str,
        completed: Optional[List[str]] = None,
        pending: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="PARTIAL_MUTATION",
            details={
                "table": table,
                "row_id": row_id,
                "completed": completed or [],
                "pending": pending or [],
            },
        )
        self.table = table
        self.row_id = row_id
        self.completed = completed or []
        self.pending = pending or []
