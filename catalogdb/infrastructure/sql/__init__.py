"""SQL infrastructure: primary/replica routing over asyncpg and aiomysql.

This module provides:

- `ConnectionPool`: pooled connections to one endpoint (master or replica)
- `DatabaseRouter`: one master plus replicas, writes to master, reads round-robin
- `DatabaseConfig`: configuration of one logical database
- the driver registry (`register_driver`, `get_driver`)

Usage
-----
Master only::

    async with ConnectionPool(DriverName.POSTGRES, config.uri, config) as pool:
        rows = await pool.afetch("SELECT * FROM product")

Master + replicas (recommended)::

    async with DatabaseRouter(config) as db:
        await db.aexecute("INSERT ...")        # master
        await db.aselect("SELECT ...")         # replica
        await db.master.aget("SELECT ...")     # read-after-write
"""

from ...logger import redact_uri
from .binding import bind_named, compile_named, expand_in, rebind
from .config import DatabaseConfig, PoolLimits, parse_duration
from .drivers import Driver, DriverPool, DriverRegistry, get_driver, register_driver, registry
from .enums import BindVar, ConnectionRole, DriverName
from .exceptions import (
    AcquireTimeoutError,
    BindError,
    DatabaseCloseError,
    DatabaseConnectionError,
    DatabaseError,
    DirtyDatabaseError,
    DriverRegistrationError,
    MigrationError,
    NoRowsError,
    PoolNotInitializedError,
    QueryError,
    QueryTimeoutError,
    SeedError,
)
from .instrumentation import QueryEvent, QueryLogger
from .pool import ConnectionPool, IsolationLevel, NamedStatement
from .router import DatabaseRouter
from .stats import PoolStats, RouterStats

__all__ = [
    "AcquireTimeoutError",
    "BindError",
    "BindVar",
    "ConnectionPool",
    "ConnectionRole",
    "DatabaseCloseError",
    "DatabaseConfig",
    "DatabaseConnectionError",
    "DatabaseError",
    "DatabaseRouter",
    "DirtyDatabaseError",
    "Driver",
    "DriverName",
    "DriverPool",
    "DriverRegistrationError",
    "DriverRegistry",
    "IsolationLevel",
    "MigrationError",
    "NamedStatement",
    "NoRowsError",
    "PoolLimits",
    "PoolNotInitializedError",
    "PoolStats",
    "QueryError",
    "QueryEvent",
    "QueryLogger",
    "QueryTimeoutError",
    "RouterStats",
    "SeedError",
    "bind_named",
    "compile_named",
    "expand_in",
    "get_driver",
    "parse_duration",
    "rebind",
    "redact_uri",
    "register_driver",
    "registry",
]
