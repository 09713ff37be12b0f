"""Statement instrumentation.

Every pooled connection reports the statements it runs to a `QueryLogger`,
which turns them into structured log events (statement text, argument count,
duration, error). The sink is best-effort: nothing raised while logging ever
reaches the query that produced the event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ...logger import get_logger

if TYPE_CHECKING:
    from ...logger import BoundLogger, LogLevel
    from .enums import ConnectionRole

_LEVELS = logging.getLevelNamesMapping()


@dataclass(frozen=True, slots=True)
class QueryEvent:
    statement: str
    arg_count: int
    elapsed_s: float
    error: BaseException | None = None

    @classmethod
    def from_asyncpg(cls, record: Any) -> QueryEvent:
        """Build an event from an asyncpg ``LoggedQuery``."""
        return cls(
            statement=record.query,
            arg_count=len(record.args or ()),
            elapsed_s=record.elapsed,
            error=record.exception,
        )


class QueryLogger:
    """Callable sink for `QueryEvent`s of one endpoint."""

    __slots__ = ("_endpoint", "_level", "_logger", "_role", "_system")

    def __init__(
        self,
        *,
        endpoint: str,
        role: ConnectionRole,
        db_system: str,
        level: LogLevel = "DEBUG",
        logger: BoundLogger | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._role = role
        self._system = db_system
        self._level = _LEVELS.get(level, logging.DEBUG)
        self._logger = logger or get_logger(__name__)

    def __call__(self, event: QueryEvent) -> None:
        try:
            fields = {
                "db_system": self._system,
                "db_role": str(self._role),
                "endpoint": self._endpoint,
                "statement": event.statement,
                "arg_count": event.arg_count,
                "duration_ms": round(event.elapsed_s * 1000, 3),
            }
            if event.error is not None:
                self._logger.error("Query failed", error=repr(event.error), **fields)
            else:
                self._logger.log(self._level, "Query executed", **fields)
        except Exception:  # noqa: BLE001, S110
            # log sink failures stay here
            pass

    def on_asyncpg_query(self, record: Any) -> None:
        """Listener for ``asyncpg.Connection.add_query_logger``."""
        try:
            event = QueryEvent.from_asyncpg(record)
        except Exception:  # noqa: BLE001, S110
            return
        self(event)
