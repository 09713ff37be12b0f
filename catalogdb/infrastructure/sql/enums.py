from __future__ import annotations

from enum import StrEnum


class DriverName(StrEnum):
    POSTGRES = "postgres"
    MYSQL = "mysql"


class BindVar(StrEnum):
    """Placeholder style a driver expects in SQL text."""

    DOLLAR = "dollar"  # $1, $2, ...
    FORMAT = "format"  # %s

    def placeholder(self, position: int) -> str:
        if self is BindVar.DOLLAR:
            return f"${position}"
        return "%s"


class ConnectionRole(StrEnum):
    MASTER = "master"
    REPLICA = "replica"
