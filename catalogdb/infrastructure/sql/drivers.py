"""Driver registry and driver adapters.

A driver turns a connection URI plus `PoolLimits` into a pool object with the
asyncpg pool surface (``acquire``/``release``/``expire_connections``/
``close``/``terminate``/``get_size``/``get_idle_size``) whose connections
expose the asyncpg connection surface (``execute``, ``fetch``, ``fetchrow``,
``fetchval``, ``executemany``, ``transaction``, ``prepare``, ``cursor``).
asyncpg pools are used as they are; aiomysql pools are adapted.

Drivers live in a process-wide registry keyed by driver name. Built-in
drivers are registered lazily on first lookup, and registering the same
driver twice is a no-op.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, ClassVar, Protocol
from urllib.parse import parse_qsl, unquote, urlsplit

import aiomysql
import asyncpg
from pymysql.constants import CLIENT

from ...logger import get_logger
from .enums import BindVar, DriverName
from .exceptions import DriverRegistrationError
from .instrumentation import QueryEvent

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Sequence

    from .config import PoolLimits
    from .instrumentation import QueryLogger

logger = get_logger(__name__)


class DriverPool(Protocol):
    async def acquire(self) -> Any: ...

    async def release(self, connection: Any) -> None: ...

    async def expire_connections(self) -> None: ...

    async def close(self) -> None: ...

    def terminate(self) -> None: ...

    def get_size(self) -> int: ...

    def get_idle_size(self) -> int: ...


class Driver(Protocol):
    name: DriverName
    db_system: str
    bindvar: BindVar

    def validate_uri(self, uri: str) -> None: ...

    async def create_pool(
        self,
        uri: str,
        limits: PoolLimits,
        *,
        search_path: str,
        query_logger: QueryLogger,
    ) -> DriverPool: ...


# =============================================================================
# PostgreSQL (asyncpg)
# =============================================================================


class AsyncpgDriver:
    name: ClassVar[DriverName] = DriverName.POSTGRES
    db_system: ClassVar[str] = "postgresql"
    bindvar: ClassVar[BindVar] = BindVar.DOLLAR

    def validate_uri(self, uri: str) -> None:
        parts = urlsplit(uri)
        if parts.scheme not in ("postgres", "postgresql"):
            msg = f"unsupported scheme {parts.scheme!r} for postgres"
            raise ValueError(msg)
        _ = parts.port  # raises ValueError on a non-numeric port
        if not parts.hostname and "host=" not in parts.query:
            msg = "missing host"
            raise ValueError(msg)

    async def create_pool(
        self,
        uri: str,
        limits: PoolLimits,
        *,
        search_path: str,
        query_logger: QueryLogger,
    ) -> DriverPool:
        async def _init(connection: asyncpg.Connection) -> None:
            connection.add_query_logger(query_logger.on_asyncpg_query)

        return await asyncpg.create_pool(
            dsn=uri,
            min_size=limits.pool_min_size,
            max_size=limits.pool_max_size,
            max_inactive_connection_lifetime=limits.idle_time_seconds or 0.0,
            server_settings={"search_path": search_path},
            init=_init,
        )


# =============================================================================
# MySQL (aiomysql)
# =============================================================================


def _status(query: str, rowcount: int) -> str:
    verb = query.lstrip().split(None, 1)[0].upper() if query.strip() else ""
    return f"{verb} {max(rowcount, 0)}"


class AiomysqlStatement:
    """Client-side prepared statement bound to one connection."""

    __slots__ = ("_connection", "_query")

    def __init__(self, connection: AiomysqlConnection, query: str) -> None:
        self._connection = connection
        self._query = query

    def get_query(self) -> str:
        return self._query

    async def fetch(self, *args: object, timeout: float | None = None) -> list[dict[str, Any]]:
        return await self._connection.fetch(self._query, *args, timeout=timeout)

    async def fetchrow(self, *args: object, timeout: float | None = None) -> dict[str, Any] | None:
        return await self._connection.fetchrow(self._query, *args, timeout=timeout)

    async def fetchval(self, *args: object, column: int = 0, timeout: float | None = None) -> Any:
        return await self._connection.fetchval(self._query, *args, column=column, timeout=timeout)

    async def executemany(self, args: Iterable[Sequence[object]], *, timeout: float | None = None) -> None:
        await self._connection.executemany(self._query, args, timeout=timeout)


class AiomysqlConnection:
    """aiomysql connection speaking the asyncpg connection surface."""

    __slots__ = ("_query_logger", "raw")

    def __init__(self, raw: aiomysql.Connection, query_logger: QueryLogger) -> None:
        self.raw = raw
        self._query_logger = query_logger

    async def _run(
        self,
        query: str,
        args: Sequence[object],
        timeout: float | None,
        mode: str,
    ) -> Any:
        started = time.perf_counter()
        try:
            async with asyncio.timeout(timeout), self.raw.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(query, tuple(args) or None)
                if mode == "all":
                    result: Any = list(await cursor.fetchall())
                elif mode == "one":
                    result = await cursor.fetchone()
                else:
                    result = _status(query, cursor.rowcount)
                    while await cursor.nextset():
                        pass
        except Exception as exc:
            self._query_logger(QueryEvent(query, len(args), time.perf_counter() - started, exc))
            raise
        self._query_logger(QueryEvent(query, len(args), time.perf_counter() - started))
        return result

    async def execute(self, query: str, *args: object, timeout: float | None = None) -> str:
        return await self._run(query, args, timeout, "status")

    async def executemany(self, query: str, args: Iterable[Sequence[object]], *, timeout: float | None = None) -> None:
        rows = [tuple(row) for row in args]
        started = time.perf_counter()
        try:
            async with asyncio.timeout(timeout), self.raw.cursor() as cursor:
                await cursor.executemany(query, rows)
        except Exception as exc:
            self._query_logger(QueryEvent(query, len(rows), time.perf_counter() - started, exc))
            raise
        self._query_logger(QueryEvent(query, len(rows), time.perf_counter() - started))

    async def fetch(self, query: str, *args: object, timeout: float | None = None) -> list[dict[str, Any]]:
        return await self._run(query, args, timeout, "all")

    async def fetchrow(self, query: str, *args: object, timeout: float | None = None) -> dict[str, Any] | None:
        return await self._run(query, args, timeout, "one")

    async def fetchval(self, query: str, *args: object, column: int = 0, timeout: float | None = None) -> Any:
        row = await self.fetchrow(query, *args, timeout=timeout)
        if row is None:
            return None
        return list(row.values())[column]

    async def prepare(self, query: str, *, timeout: float | None = None) -> AiomysqlStatement:  # noqa: ARG002
        return AiomysqlStatement(self, query)

    @asynccontextmanager
    async def transaction(
        self,
        *,
        isolation: str | None = "read_committed",
        readonly: bool = False,
        deferrable: bool = False,  # noqa: ARG002
    ) -> AsyncIterator[AiomysqlConnection]:
        if isolation is not None:
            await self.execute(f"SET TRANSACTION ISOLATION LEVEL {isolation.replace('_', ' ').upper()}")
        await self.execute("START TRANSACTION READ ONLY" if readonly else "START TRANSACTION")
        try:
            yield self
        except BaseException:
            await self.raw.rollback()
            raise
        else:
            await self.raw.commit()

    def cursor(
        self,
        query: str,
        *args: object,
        prefetch: int = 50,
        timeout: float | None = None,
    ) -> _AiomysqlCursorFactory:
        return _AiomysqlCursorFactory(self, query, args, prefetch, timeout)


class _AiomysqlCursorFactory:
    __slots__ = ("_args", "_connection", "_prefetch", "_query", "_timeout")

    def __init__(
        self,
        connection: AiomysqlConnection,
        query: str,
        args: Sequence[object],
        prefetch: int,
        timeout: float | None,
    ) -> None:
        self._connection = connection
        self._query = query
        self._args = args
        self._prefetch = prefetch
        self._timeout = timeout

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        async with self._connection.raw.cursor(aiomysql.SSDictCursor) as cursor:
            async with asyncio.timeout(self._timeout):
                await cursor.execute(self._query, tuple(self._args) or None)
            while True:
                rows = await cursor.fetchmany(self._prefetch)
                if not rows:
                    return
                for row in rows:
                    yield row


class AiomysqlPool:
    """aiomysql pool speaking the asyncpg pool surface."""

    __slots__ = ("_query_logger", "raw")

    def __init__(self, raw: aiomysql.Pool, query_logger: QueryLogger) -> None:
        self.raw = raw
        self._query_logger = query_logger

    async def acquire(self) -> AiomysqlConnection:
        return AiomysqlConnection(await self.raw.acquire(), self._query_logger)

    async def release(self, connection: AiomysqlConnection) -> None:
        self.raw.release(connection.raw)

    async def expire_connections(self) -> None:
        await self.raw.clear()

    async def close(self) -> None:
        self.raw.close()
        await self.raw.wait_closed()

    def terminate(self) -> None:
        self.raw.terminate()

    def get_size(self) -> int:
        return self.raw.size

    def get_idle_size(self) -> int:
        return self.raw.freesize


def _recycle_seconds(limits: PoolLimits) -> int:
    # aiomysql has a single recycle age, measured from a connection's last use
    bounds = [seconds for seconds in (limits.lifetime_seconds, limits.idle_time_seconds) if seconds is not None]
    return math.ceil(min(bounds)) if bounds else -1


class AiomysqlDriver:
    name: ClassVar[DriverName] = DriverName.MYSQL
    db_system: ClassVar[str] = "mysql"
    bindvar: ClassVar[BindVar] = BindVar.FORMAT

    def _connect_params(self, uri: str) -> dict[str, Any]:
        parts = urlsplit(uri)
        if parts.scheme != "mysql":
            msg = f"unsupported scheme {parts.scheme!r} for mysql"
            raise ValueError(msg)
        if not parts.hostname:
            msg = "missing host"
            raise ValueError(msg)
        params: dict[str, Any] = {
            "host": parts.hostname,
            "port": parts.port or 3306,
            "user": unquote(parts.username or ""),
            "password": unquote(parts.password or ""),
            "db": parts.path.lstrip("/") or None,
            "charset": "utf8mb4",
        }
        params.update(parse_qsl(parts.query))
        return params

    def validate_uri(self, uri: str) -> None:
        self._connect_params(uri)

    async def create_pool(
        self,
        uri: str,
        limits: PoolLimits,
        *,
        search_path: str,  # noqa: ARG002
        query_logger: QueryLogger,
    ) -> DriverPool:
        raw = await aiomysql.create_pool(
            minsize=limits.pool_min_size,
            maxsize=limits.pool_max_size,
            pool_recycle=_recycle_seconds(limits),
            autocommit=True,
            client_flag=CLIENT.MULTI_STATEMENTS,
            **self._connect_params(uri),
        )
        return AiomysqlPool(raw, query_logger)


# =============================================================================
# Registry
# =============================================================================


class DriverRegistry:
    """Process-wide, idempotent mapping of driver name to `Driver`."""

    _BUILTINS: ClassVar[tuple[type[AsyncpgDriver] | type[AiomysqlDriver], ...]] = (AsyncpgDriver, AiomysqlDriver)

    def __init__(self) -> None:
        self._drivers: dict[str, Driver] = {}
        self._lock = threading.Lock()
        self._builtins_loaded = False

    def register(self, driver: Driver, *, replace: bool = False) -> None:
        """Register ``driver`` under its name.

        Registering the same driver, or another instance of the same class, is a
        no-op. Registering a different driver under a taken name raises unless
        ``replace`` is set.

        Raises
        ------
        DriverRegistrationError
            If the name is already bound to a different driver.
        """
        key = str(driver.name)
        with self._lock:
            existing = self._drivers.get(key)
            if existing is not None and not replace:
                if existing is driver or type(existing) is type(driver):
                    return
                msg = f"driver {key!r} is already registered with {type(existing).__name__}"
                raise DriverRegistrationError(msg)
            self._drivers[key] = driver
        logger.debug("Driver registered", driver=key, adapter=type(driver).__name__)

    def unregister(self, name: str) -> None:
        with self._lock:
            self._drivers.pop(str(name), None)

    def _ensure_builtins(self) -> None:
        with self._lock:
            if self._builtins_loaded:
                return
            for driver_cls in self._BUILTINS:
                self._drivers.setdefault(str(driver_cls.name), driver_cls())
            self._builtins_loaded = True

    def get(self, name: str) -> Driver:
        """Look up a driver, registering the built-in drivers on first use.

        Raises
        ------
        DriverRegistrationError
            If no driver is registered under ``name``.
        """
        self._ensure_builtins()
        with self._lock:
            driver = self._drivers.get(str(name))
        if driver is None:
            msg = f"unknown driver {name!r}"
            raise DriverRegistrationError(msg)
        return driver

    def names(self) -> list[str]:
        self._ensure_builtins()
        with self._lock:
            return sorted(self._drivers)


registry = DriverRegistry()


def register_driver(driver: Driver, *, replace: bool = False) -> None:
    registry.register(driver, replace=replace)


def get_driver(name: str) -> Driver:
    return registry.get(name)
