"""Connection pool wrapper for a single database endpoint.

`ConnectionPool` owns the driver pool of one physical endpoint (the master or
one replica), applies the `PoolLimits` of its `DatabaseConfig`, and exposes the
operations the routing client needs. For master/replica routing use
`DatabaseRouter`, which holds several of these.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Literal, Self, TypeVar, overload

from pydantic import BaseModel

from ...logger import get_logger, redact_uri
from .binding import bind_named, bind_values, compile_named, rebind
from .config import PoolLimits, coerce_duration
from .drivers import get_driver
from .enums import ConnectionRole, DriverName
from .exceptions import (
    AcquireTimeoutError,
    DatabaseConnectionError,
    DriverRegistrationError,
    NoRowsError,
    PoolNotInitializedError,
    QueryTimeoutError,
)
from .instrumentation import QueryLogger
from .stats import PoolStats

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable, Sequence
    from datetime import timedelta
    from types import TracebackType

    from ...logger import BoundLogger
    from .config import DatabaseConfig
    from .drivers import Driver, DriverPool
    from .enums import BindVar

type IsolationLevel = Literal["read_uncommitted", "read_committed", "repeatable_read", "serializable"]
type Duration = timedelta | float | str

ModelT = TypeVar("ModelT", bound=BaseModel)

_PING = "SELECT 1"


def _shorten(query: str, limit: int = 120) -> str:
    text = " ".join(query.split())
    return text if len(text) <= limit else f"{text[: limit - 3]}..."


class NamedStatement:
    """A prepared statement whose parameters are bound by name.

    Yielded by `ConnectionPool.aprepare_named`; valid only inside that block.
    """

    __slots__ = ("_names", "_statement")

    def __init__(self, statement: Any, names: list[str]) -> None:
        self._statement = statement
        self._names = names

    def _args(self, arg: Any) -> list[Any]:
        return bind_values(self._names, arg)

    async def fetch(self, arg: Any, *, timeout: float | None = None) -> list[Any]:
        return await self._statement.fetch(*self._args(arg), timeout=timeout)

    async def fetchrow(self, arg: Any, *, timeout: float | None = None) -> Any:
        return await self._statement.fetchrow(*self._args(arg), timeout=timeout)

    async def fetchval(self, arg: Any, *, timeout: float | None = None) -> Any:
        return await self._statement.fetchval(*self._args(arg), timeout=timeout)

    async def executemany(self, args: Iterable[Any], *, timeout: float | None = None) -> None:
        await self._statement.executemany([self._args(arg) for arg in args], timeout=timeout)


class ConnectionPool:
    """Pooled connections to one database endpoint.

    The pool is created and pinged by `ainitialize()`. Pool limits can be
    changed at any time through the ``set_*`` methods; the change is applied on
    the next pool access by opening a new pool generation and retiring the
    previous one once its in-flight work is released.

    Examples
    --------
    >>> async with ConnectionPool(DriverName.POSTGRES, config.uri, config) as pool:
    ...     await pool.aexecute("INSERT INTO product (name) VALUES ($1)", "Mug")
    ...     rows = await pool.afetch("SELECT * FROM product")
    """

    __slots__ = (
        "_config",
        "_driver",
        "_driver_name",
        "_endpoint",
        "_generation",
        "_generation_started",
        "_init_lock",
        "_limits",
        "_logger",
        "_pool",
        "_query_logger",
        "_retiring",
        "_role",
        "_stale",
        "_uri",
    )

    def __init__(
        self,
        driver: DriverName | str,
        uri: str,
        config: DatabaseConfig,
        *,
        role: ConnectionRole = ConnectionRole.MASTER,
        logger: BoundLogger | None = None,
    ) -> None:
        self._driver_name = str(driver)
        self._uri = uri
        self._endpoint = redact_uri(uri)
        self._config = config
        self._role = ConnectionRole(role)
        self._limits = config.pool_limits()
        self._logger = logger if logger is not None else get_logger(__name__)
        self._driver: Driver | None = None
        self._query_logger: QueryLogger | None = None
        self._pool: DriverPool | None = None
        self._init_lock = asyncio.Lock()
        self._stale = False
        self._generation = 0
        self._generation_started = 0.0
        self._retiring: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> Self:
        await self.ainitialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None and exc_val is not None:
            self._logger.error(
                "ConnectionPool context manager exiting with exception",
                exc_type=exc_type.__name__,
                exc_val=str(exc_val),
                endpoint=self._endpoint,
            )
        await self.aclose()

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @property
    def role(self) -> ConnectionRole:
        return self._role

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def endpoint(self) -> str:
        """Connection string with the password masked."""
        return self._endpoint

    @property
    def driver(self) -> Driver:
        """The registered driver for this endpoint, resolved on first use.

        Raises
        ------
        DatabaseConnectionError
            If the driver name is unknown or the URI is malformed for it.
        """
        if self._driver is None:
            try:
                driver = get_driver(self._driver_name)
            except DriverRegistrationError as exc:
                msg = f"unable to connect to '{self._endpoint}', error: {exc}"
                raise DatabaseConnectionError(msg, uri=self._endpoint) from exc
            try:
                driver.validate_uri(self._uri)
            except ValueError as exc:
                msg = f"unable to connect to '{self._endpoint}', error: malformed uri: {exc}"
                raise DatabaseConnectionError(msg, uri=self._endpoint) from exc
            self._driver = driver
            self._query_logger = QueryLogger(
                endpoint=self._endpoint,
                role=self._role,
                db_system=driver.db_system,
                level=self._config.query_log_level,
                logger=self._logger,
            )
        return self._driver

    @property
    def bindvar(self) -> BindVar:
        return self.driver.bindvar

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    @property
    def pool(self) -> DriverPool:
        """Access the underlying driver pool.

        Raises
        ------
        PoolNotInitializedError
            If pool has not been initialized via `ainitialize()`.
        """
        if self._pool is None:
            msg = f"Pool for '{self._endpoint}' not initialized. Call ainitialize() first."
            raise PoolNotInitializedError(msg)
        return self._pool

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def ainitialize(self) -> None:
        """Open the pool and verify it with a ping.

        This is idempotent; an asyncio lock keeps concurrent callers from
        opening two pools for the same endpoint.

        Raises
        ------
        DatabaseConnectionError
            If the driver is unknown, the URI is malformed, or the endpoint
            cannot be reached or pinged.
        """
        async with self._init_lock:
            if self._pool is not None:
                return
            self._pool = await self._aopen_generation()

    async def _aopen_generation(self) -> DriverPool:
        driver = self.driver
        assert self._query_logger is not None  # set together with the driver

        try:
            pool = await driver.create_pool(
                self._uri,
                self._limits,
                search_path=self._config.schema_search_path,
                query_logger=self._query_logger,
            )
        except Exception as exc:
            msg = f"unable to connect to '{self._endpoint}', error: {exc}"
            raise DatabaseConnectionError(msg, uri=self._endpoint) from exc

        try:
            connection = await pool.acquire()
            try:
                await connection.fetchval(_PING)
            finally:
                await pool.release(connection)
        except Exception as exc:
            pool.terminate()
            msg = f"unable to ping '{self._endpoint}', error: {exc}"
            raise DatabaseConnectionError(msg, uri=self._endpoint) from exc

        self._generation += 1
        self._generation_started = time.monotonic()
        self._logger.info(
            "ConnectionPool initialized",
            role=str(self._role),
            endpoint=self._endpoint,
            generation=self._generation,
            max_open_conns=self._limits.max_open_conns,
            max_idle_conns=self._limits.max_idle_conns,
            conn_max_lifetime_s=self._limits.conn_max_lifetime.total_seconds(),
            conn_max_idle_time_s=self._limits.conn_max_idle_time.total_seconds(),
        )
        return pool

    def _retire(self, pool: DriverPool) -> None:
        task = asyncio.create_task(self._aclose_retired(pool, self._generation - 1))
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    async def _aclose_retired(self, pool: DriverPool, generation: int) -> None:
        try:
            await pool.close()
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "Retired pool generation failed to close",
                endpoint=self._endpoint,
                generation=generation,
                error=str(exc),
            )
        else:
            self._logger.debug("Retired pool generation closed", endpoint=self._endpoint, generation=generation)

    async def _apool(self) -> DriverPool:
        """Return the live driver pool, applying pending limit changes and lifetime expiry."""
        pool = self.pool
        if self._stale:
            return await self._arefresh()

        lifetime = self._limits.lifetime_seconds
        if lifetime is not None and time.monotonic() - self._generation_started >= lifetime:
            self._generation_started = time.monotonic()
            await pool.expire_connections()
            self._logger.debug("Connections expired after max lifetime", endpoint=self._endpoint)
        return pool

    async def _arefresh(self) -> DriverPool:
        async with self._init_lock:
            if not self._stale:
                return self.pool
            previous = self.pool
            self._pool = await self._aopen_generation()
            self._stale = False
            self._retire(previous)
            return self._pool

    async def aclose(self) -> None:
        """Close the pool, waiting for checked-out connections to be released."""
        async with self._init_lock:
            pool, self._pool = self._pool, None

        if self._retiring:
            await asyncio.gather(*self._retiring)

        if pool is not None:
            await pool.close()
            self._logger.info("ConnectionPool closed", role=str(self._role), endpoint=self._endpoint)

    async def aping(self, *, timeout: float | None = None) -> None:
        """Verify the endpoint is alive.

        Raises
        ------
        DatabaseConnectionError
            If the ping fails.
        """
        pool = await self._apool()
        try:
            async with asyncio.timeout(timeout):
                connection = await pool.acquire()
                try:
                    await connection.fetchval(_PING)
                finally:
                    await pool.release(connection)
        except Exception as exc:
            msg = f"unable to ping '{self._endpoint}', error: {exc}"
            raise DatabaseConnectionError(msg, uri=self._endpoint) from exc

    # -------------------------------------------------------------------------
    # Pool tuning
    # -------------------------------------------------------------------------

    @property
    def limits(self) -> PoolLimits:
        return self._limits

    def _update_limits(self, **changes: Any) -> None:
        limits = self._limits.updated(**changes)
        if limits == self._limits:
            return
        self._limits = limits
        if self._pool is not None:
            self._stale = True
        self._logger.debug(
            "Pool limits updated",
            endpoint=self._endpoint,
            **{key: str(value) for key, value in limits.model_dump().items()},
        )

    def set_max_idle_conns(self, n: int) -> None:
        """Set how many idle connections are kept; ``n <= 0`` keeps none, a positive ``max_open_conns`` caps it."""
        self._update_limits(max_idle_conns=n)

    def set_max_open_conns(self, n: int) -> None:
        """Set the open-connection limit; ``n <= 0`` removes it. Lowers ``max_idle_conns`` when it would exceed it."""
        self._update_limits(max_open_conns=n)

    def set_conn_max_lifetime(self, d: Duration) -> None:
        """Set how long a connection may be reused; zero or negative means forever."""
        self._update_limits(conn_max_lifetime=coerce_duration(d))

    def set_conn_max_idle_time(self, d: Duration) -> None:
        """Set how long a connection may sit idle; zero or negative means forever."""
        self._update_limits(conn_max_idle_time=coerce_duration(d))

    def stats(self) -> PoolStats:
        pool = self._pool
        return PoolStats(
            role=self._role,
            endpoint=self._endpoint,
            initialized=pool is not None,
            open_connections=pool.get_size() if pool is not None else 0,
            idle=pool.get_idle_size() if pool is not None else 0,
            generation=self._generation,
            **self._limits.model_dump(),
        )

    # -------------------------------------------------------------------------
    # Connections and transactions
    # -------------------------------------------------------------------------

    def _is_retired(self, pool: DriverPool) -> bool:
        return self._pool is not None and self._pool is not pool

    async def _acheckout(self, pool: DriverPool) -> tuple[DriverPool, Any]:
        while True:
            # a retired generation is closing; its waiters either fail or get a connection about to be closed
            try:
                connection = await pool.acquire()
            except Exception:
                if not self._is_retired(pool):
                    raise
            else:
                if not self._is_retired(pool):
                    return pool, connection
                await pool.release(connection)
            pool = await self._apool()

    @asynccontextmanager
    async def aacquire(self, *, timeout: float | None = None) -> AsyncIterator[Any]:
        """Acquire a connection from the pool.

        Callers beyond ``max_open_conns`` wait until a connection is released,
        for at most ``timeout`` seconds (or the configured acquire timeout).
        A caller still waiting when a limit change retires the generation it
        waits on is moved to the current generation.

        Raises
        ------
        AcquireTimeoutError
            If no connection became free in time.
        """
        pool = await self._apool()
        wait = timeout if timeout is not None else self._config.acquire_timeout_seconds
        try:
            async with asyncio.timeout(wait):
                pool, connection = await self._acheckout(pool)
        except TimeoutError as exc:
            msg = f"timed out after {wait}s waiting for a connection to '{self._endpoint}'"
            raise AcquireTimeoutError(msg) from exc

        try:
            yield connection
        finally:
            await pool.release(connection)

    @asynccontextmanager
    async def atransaction(
        self,
        isolation: IsolationLevel | None = "read_committed",
        *,
        readonly: bool = False,
        deferrable: bool = False,
        timeout: float | None = None,
    ) -> AsyncIterator[Any]:
        """Acquire a connection and run the block inside a transaction.

        The transaction commits when the block exits normally and rolls back
        when it raises or is cancelled.

        Parameters
        ----------
        isolation
            Transaction isolation level.
        readonly
            If True, the transaction is read-only.
        deferrable
            If True and readonly=True, allows deferrable transactions (postgres).
        timeout
            Seconds to wait for a free connection.

        Yields
        ------
        Any
            A driver connection within a transaction context.
        """
        async with (
            self.aacquire(timeout=timeout) as connection,
            connection.transaction(isolation=isolation, readonly=readonly, deferrable=deferrable),
        ):
            yield connection

    @asynccontextmanager
    async def acursor(
        self,
        query: str,
        *args: object,
        prefetch: int = 50,
        timeout: float | None = None,
        isolation: IsolationLevel | None = "read_committed",
        readonly: bool = True,
    ) -> AsyncIterator[Any]:
        """Execute a query and yield an async iterator over its rows."""
        async with self.atransaction(isolation=isolation, readonly=readonly, timeout=timeout) as connection:
            cursor_factory = connection.cursor(query, *args, prefetch=prefetch, timeout=timeout)
            yield cursor_factory.__aiter__()

    @asynccontextmanager
    async def aprepare(self, query: str, *, timeout: float | None = None) -> AsyncIterator[Any]:
        """Prepare a statement on a held connection.

        The statement may be executed any number of times inside the block;
        the connection returns to the pool when the block exits.
        """
        async with self.aacquire(timeout=timeout) as connection:
            yield await self._await_statement(connection.prepare(query, timeout=timeout), query)

    @asynccontextmanager
    async def aprepare_named(self, query: str, *, timeout: float | None = None) -> AsyncIterator[NamedStatement]:
        """Prepare a ``:name`` statement; bind values by name on each execution."""
        compiled, names = compile_named(query, self.bindvar)
        async with self.aprepare(compiled, timeout=timeout) as statement:
            yield NamedStatement(statement, names)

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    async def _await_statement[T](self, awaitable: Awaitable[T], query: str) -> T:
        try:
            return await awaitable
        except TimeoutError as exc:
            msg = f"statement timed out on '{self._endpoint}': {_shorten(query)}"
            raise QueryTimeoutError(msg) from exc

    async def aexecute(self, query: str, *args: object, timeout: float | None = None) -> str:
        """Execute a statement without returning rows.

        Returns
        -------
        str
            Command status string (e.g., "INSERT 0 1").
        """
        async with self.aacquire(timeout=timeout) as connection:
            return await self._await_statement(connection.execute(query, *args, timeout=timeout), query)

    async def aexecutemany(self, query: str, args: Iterable[Sequence[object]], timeout: float | None = None) -> None:
        """Execute a statement once per parameter set."""
        async with self.aacquire(timeout=timeout) as connection:
            await self._await_statement(connection.executemany(query, args, timeout=timeout), query)

    async def afetch(self, query: str, *args: object, timeout: float | None = None) -> list[Any]:
        """Execute a query and return all rows."""
        async with self.aacquire(timeout=timeout) as connection:
            return await self._await_statement(connection.fetch(query, *args, timeout=timeout), query)

    async def afetchrow(self, query: str, *args: object, timeout: float | None = None) -> Any | None:
        """Execute a query and return the first row, or None if no rows returned."""
        async with self.aacquire(timeout=timeout) as connection:
            return await self._await_statement(connection.fetchrow(query, *args, timeout=timeout), query)

    async def afetchval(self, query: str, *args: object, timeout: float | None = None) -> Any:
        """Execute a query and return the first value of the first row."""
        async with self.aacquire(timeout=timeout) as connection:
            return await self._await_statement(connection.fetchval(query, *args, timeout=timeout), query)

    @overload
    async def aget(self, query: str, *args: object, model: type[ModelT], timeout: float | None = None) -> ModelT: ...

    @overload
    async def aget(self, query: str, *args: object, model: None = None, timeout: float | None = None) -> Any: ...

    async def aget(
        self,
        query: str,
        *args: object,
        model: type[ModelT] | None = None,
        timeout: float | None = None,
    ) -> ModelT | Any:
        """Fetch exactly one row, optionally validated into ``model``.

        Raises
        ------
        NoRowsError
            If the query returned no rows.
        """
        row = await self.afetchrow(query, *args, timeout=timeout)
        if row is None:
            msg = f"no rows in result set: {_shorten(query)}"
            raise NoRowsError(msg)
        return model.model_validate(dict(row)) if model is not None else row

    @overload
    async def aselect(
        self, query: str, *args: object, model: type[ModelT], timeout: float | None = None
    ) -> list[ModelT]: ...

    @overload
    async def aselect(self, query: str, *args: object, model: None = None, timeout: float | None = None) -> list[Any]: ...

    async def aselect(
        self,
        query: str,
        *args: object,
        model: type[ModelT] | None = None,
        timeout: float | None = None,
    ) -> list[ModelT] | list[Any]:
        """Fetch all rows, optionally validated into ``model``."""
        rows = await self.afetch(query, *args, timeout=timeout)
        if model is None:
            return rows
        return [model.model_validate(dict(row)) for row in rows]

    async def anamed_execute(self, query: str, arg: Any, *, timeout: float | None = None) -> str:
        """Execute a ``:name`` statement with values taken from ``arg``."""
        compiled, args = bind_named(query, arg, self.bindvar)
        return await self.aexecute(compiled, *args, timeout=timeout)

    async def anamed_fetch(self, query: str, arg: Any, *, timeout: float | None = None) -> list[Any]:
        """Run a ``:name`` query with values taken from ``arg`` and return all rows."""
        compiled, args = bind_named(query, arg, self.bindvar)
        return await self.afetch(compiled, *args, timeout=timeout)

    def rebind(self, query: str) -> str:
        """Transform ``?`` placeholders into this driver's style."""
        return rebind(query, self.bindvar)
