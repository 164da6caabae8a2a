"""
Exception taxonomy for mongodoc.

Guard violations (building a query after it started, loading without
criteria, ...) are raised immediately. Server-side write failures are
raised as OperationFailed subclasses carrying the server message and code.
"""
from typing import Any, Optional


class MongoDocError(Exception):
    """Base class for every error raised by mongodoc."""


class InvalidQuery(MongoDocError, ValueError):
    """A shorthand query string could not be parsed."""


class CursorAlreadyStarted(MongoDocError):
    """The query was modified (or restarted) after the cursor was created."""


class MissingCriteria(MongoDocError):
    """A document operation needs an _id or other criteria and has none."""


class EmptyInsert(MongoDocError):
    """An insert was attempted without any changed fields."""


class InvalidOperand(MongoDocError, TypeError):
    """An update operator was applied in memory to a value of the wrong type."""


class ReferenceTypeError(MongoDocError, TypeError):
    """A declared reference was assigned something that is not a Document."""


class UnsupportedOperation(MongoDocError, AttributeError):
    """An unknown search, cursor option or pass-through was requested."""


class QueryFailed(MongoDocError):
    """Executing a find failed; the rendered query is kept for diagnostics."""

    def __init__(self, message: str, query: str):
        super().__init__(f"{message} (query: {query})")
        self.query = query


class OperationFailed(MongoDocError):
    """The server reported a failure for a write or command."""

    def __init__(self, message: str, code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.code = code
        self.details = details


class InsertFailed(OperationFailed):
    pass


class UpdateFailed(OperationFailed):
    pass


class RemoveFailed(OperationFailed):
    pass


class UpsertFailed(OperationFailed):
    pass


class CommandFailed(OperationFailed):
    pass
