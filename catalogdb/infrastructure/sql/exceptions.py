"""Error taxonomy for the routing database client.

Driver exceptions raised while running a statement (constraint violations,
syntax errors) are not wrapped: they reach the caller verbatim.
"""

from __future__ import annotations


class DatabaseError(Exception):
    """Base class for every error raised by catalogdb."""


class DatabaseConnectionError(DatabaseError):
    """An endpoint could not be opened, validated or pinged."""

    def __init__(self, message: str, *, uri: str | None = None) -> None:
        super().__init__(message)
        self.uri = uri


class DriverRegistrationError(DatabaseError):
    """A driver name is unknown or registered twice with different adapters."""


class PoolNotInitializedError(DatabaseError):
    """The pool or router was used before `ainitialize()` / `aconnect()`."""


class DatabaseCloseError(DatabaseError):
    """One or more endpoints failed to close."""

    def __init__(self, message: str, errors: list[BaseException]) -> None:
        super().__init__(message)
        self.errors = errors


class QueryError(DatabaseError):
    """Base class for statement-level failures raised by catalogdb itself."""


class NoRowsError(QueryError):
    """A single-row read matched nothing."""


class BindError(QueryError):
    """Named or expanded parameters could not be bound to the statement."""


class QueryTimeoutError(QueryError, TimeoutError):
    """A statement did not finish within its timeout."""


class AcquireTimeoutError(QueryError, TimeoutError):
    """No pooled connection became free within the acquire timeout."""


class MigrationError(DatabaseError):
    """A migration run could not proceed."""


class DirtyDatabaseError(MigrationError):
    """A previous migration failed half-way; the version must be forced."""

    def __init__(self, version: int) -> None:
        super().__init__(f"database is dirty at version {version}; fix the schema and force the version")
        self.version = version


class SeedError(DatabaseError):
    """Seed discovery or execution failed."""
