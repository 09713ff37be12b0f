"""Routing client over one master and zero or more replicas.

`DatabaseRouter` presents a single logical database. Writes, prepared
statements and transactions always run on the master; reads run on the replica
chosen by `replica_pick()`.

Replica selection
-----------------
- no replicas: the master is returned and a warning is logged; reads never
  fail because a replica is missing;
- one replica: always that replica;
- N >= 2 replicas: ``1 + (counter % (N - 1))`` where ``counter`` is a shared
  monotonic counter advanced before each pick. Index 0 is never chosen by this
  formula; the rotation is kept as deployed so existing replica weighting does
  not shift.

Read-after-write
----------------
Replicas lag behind the master. When a read must observe a write that just
happened, use the master explicitly::

    await db.aexecute("UPDATE product SET price = $1 WHERE id = $2", 10, 7)
    product = await db.master.aget("SELECT * FROM product WHERE id = $1", 7)

Usage
-----
>>> async with DatabaseRouter(config) as db:
...     await db.aexecute("INSERT INTO product (name) VALUES ($1)", "Mug")
...     products = await db.aselect("SELECT * FROM product", model=Product)
"""

from __future__ import annotations

import asyncio
import itertools
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Self, TypeVar, overload

from pydantic import BaseModel

from ...logger import get_logger
from .binding import rebind
from .enums import ConnectionRole
from .exceptions import DatabaseCloseError, PoolNotInitializedError
from .pool import ConnectionPool
from .stats import RouterStats

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Sequence
    from types import TracebackType

    from ...logger import BoundLogger
    from .config import DatabaseConfig
    from .enums import BindVar
    from .pool import Duration, IsolationLevel, NamedStatement

ModelT = TypeVar("ModelT", bound=BaseModel)


class DatabaseRouter:
    """Master/replica routing client for one logical database.

    Attributes
    ----------
    config : DatabaseConfig
        The configuration the pools are built from.
    master : ConnectionPool
        The writable endpoint.
    replicas : tuple[ConnectionPool, ...]
        Replica endpoints in configuration order.

    Examples
    --------
    >>> db = DatabaseRouter(config)
    >>> await db.aconnect()
    >>> try:
    ...     await db.aexecute("DELETE FROM review WHERE product_id = $1", 7)
    ...     reviews = await db.afetch("SELECT * FROM review")
    ... finally:
    ...     await db.aclose()
    """

    __slots__ = ("_config", "_connect_lock", "_counter", "_logger", "_master", "_replicas")

    def __init__(self, config: DatabaseConfig, *, logger: BoundLogger | None = None) -> None:
        self._config = config
        self._logger = logger if logger is not None else get_logger(__name__)
        self._master: ConnectionPool | None = None
        self._replicas: tuple[ConnectionPool, ...] = ()
        self._counter = itertools.count(1)
        self._connect_lock = asyncio.Lock()

    @classmethod
    async def aopen(cls, config: DatabaseConfig, *, logger: BoundLogger | None = None) -> Self:
        """Construct a router and connect it.

        Raises
        ------
        DatabaseConnectionError
            If the master or any replica cannot be opened or pinged.
        """
        router = cls(config, logger=logger)
        await router.aconnect()
        return router

    async def __aenter__(self) -> Self:
        await self.aconnect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None and exc_val is not None:
            self._logger.error(
                "DatabaseRouter exiting with exception",
                exc_type=exc_type.__name__,
                exc_val=str(exc_val),
                database=self._config.name,
            )
        await self.aclose()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _build_pool(self, uri: str, role: ConnectionRole) -> ConnectionPool:
        return ConnectionPool(self._config.driver, uri, self._config, role=role, logger=self._logger)

    async def aconnect(self) -> None:
        """Open the master, then every replica in order.

        The first endpoint that cannot be opened or pinged aborts the whole
        connect; pools opened before it are closed again. There is no retry.
        Concurrent calls open the pools once.

        Raises
        ------
        DatabaseConnectionError
            Naming the URI (password redacted) that failed.
        """
        async with self._connect_lock:
            if self._master is None:
                await self._aconnect_endpoints()

    async def _aconnect_endpoints(self) -> None:
        opened: list[ConnectionPool] = []
        try:
            master = self._build_pool(self._config.uri, ConnectionRole.MASTER)
            await master.ainitialize()
            opened.append(master)
            for uri in self._config.replica_uris:
                replica = self._build_pool(uri, ConnectionRole.REPLICA)
                await replica.ainitialize()
                opened.append(replica)
        except BaseException:
            for pool in reversed(opened):
                try:
                    await pool.aclose()
                except Exception as exc:  # noqa: BLE001
                    self._logger.warning("Failed to close pool after connect error", endpoint=pool.endpoint, error=str(exc))
            raise

        self._master, self._replicas = opened[0], tuple(opened[1:])
        self._logger.info(
            "DatabaseRouter connected",
            database=self._config.name,
            driver=str(self._config.driver),
            replica_count=len(self._replicas),
        )

    async def aclose(self) -> None:
        """Close the master, then every replica in order.

        Every close is attempted even when an earlier one fails; failures are
        logged and the first one is raised afterwards.

        Raises
        ------
        DatabaseCloseError
            If any endpoint failed to close. ``errors`` holds every failure and
            ``__cause__`` the first.
        """
        async with self._connect_lock:
            pools = [p for p in (self._master, *self._replicas) if p is not None]
            self._master, self._replicas = None, ()

        errors: list[BaseException] = []
        failed: list[str] = []
        for pool in pools:
            try:
                await pool.aclose()
            except Exception as exc:  # noqa: BLE001
                self._logger.error("Failed to close pool", role=str(pool.role), endpoint=pool.endpoint, error=str(exc))
                errors.append(exc)
                failed.append(pool.endpoint)

        if errors:
            msg = f"unable to close '{failed[0]}', error: {errors[0]}"
            if len(errors) > 1:
                msg += f" (and {len(errors) - 1} more)"
            raise DatabaseCloseError(msg, errors) from errors[0]

        if pools:
            self._logger.info("DatabaseRouter closed", database=self._config.name)

    async def aping(self, *, timeout: float | None = None) -> None:
        """Ping the master, then every replica.

        Raises
        ------
        DatabaseConnectionError
            Naming the first endpoint that did not answer.
        """
        await self.master.aping(timeout=timeout)
        for replica in self._replicas:
            await replica.aping(timeout=timeout)

    # -------------------------------------------------------------------------
    # Topology
    # -------------------------------------------------------------------------

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def is_connected(self) -> bool:
        return self._master is not None

    @property
    def master(self) -> ConnectionPool:
        """The writable endpoint; also the one to read from after a write.

        Raises
        ------
        PoolNotInitializedError
            If the router has not been connected.
        """
        if self._master is None:
            msg = f"DatabaseRouter '{self._config.name}' not connected. Call aconnect() first."
            raise PoolNotInitializedError(msg)
        return self._master

    @property
    def replicas(self) -> tuple[ConnectionPool, ...]:
        return self._replicas

    @property
    def replica(self) -> ConnectionPool:
        """Shorthand for `replica_pick()`."""
        return self.replica_pick()

    def replica_pick(self) -> ConnectionPool:
        """Choose the endpoint for the next read.

        Returns
        -------
        ConnectionPool
            The master when no replicas exist, the only replica when there is
            one, else replica ``1 + (counter % (N - 1))``.
        """
        master = self.master
        count = len(self._replicas)
        if count == 0:
            self._logger.warning("No replica configured, reading from master", database=self._config.name)
            return master
        if count == 1:
            return self._replicas[0]
        # next() on itertools.count is atomic under the GIL
        return self._replicas[1 + next(self._counter) % (count - 1)]

    @property
    def bindvar(self) -> BindVar:
        return self.master.bindvar

    def rebind(self, query: str) -> str:
        """Transform ``?`` placeholders into the configured driver's style."""
        return rebind(query, self.master.bindvar)

    # -------------------------------------------------------------------------
    # Pool tuning and statistics
    # -------------------------------------------------------------------------

    def _pools(self) -> tuple[ConnectionPool, ...]:
        return (self.master, *self._replicas)

    def set_max_idle_conns(self, n: int) -> None:
        for pool in self._pools():
            pool.set_max_idle_conns(n)

    def set_max_open_conns(self, n: int) -> None:
        for pool in self._pools():
            pool.set_max_open_conns(n)

    def set_conn_max_lifetime(self, d: Duration) -> None:
        for pool in self._pools():
            pool.set_conn_max_lifetime(d)

    def set_conn_max_idle_time(self, d: Duration) -> None:
        for pool in self._pools():
            pool.set_conn_max_idle_time(d)

    def stats(self) -> RouterStats:
        """Statistics of the master and each replica; reads state only."""
        return RouterStats(
            master=self.master.stats(),
            replicas=tuple(replica.stats() for replica in self._replicas),
        )

    # -------------------------------------------------------------------------
    # Write path (master)
    # -------------------------------------------------------------------------

    async def aexecute(self, query: str, *args: object, timeout: float | None = None) -> str:
        return await self.master.aexecute(query, *args, timeout=timeout)

    async def aexecutemany(self, query: str, args: Iterable[Sequence[object]], timeout: float | None = None) -> None:
        await self.master.aexecutemany(query, args, timeout=timeout)

    async def anamed_execute(self, query: str, arg: Any, *, timeout: float | None = None) -> str:
        return await self.master.anamed_execute(query, arg, timeout=timeout)

    @asynccontextmanager
    async def aprepare(self, query: str, *, timeout: float | None = None) -> AsyncIterator[Any]:
        async with self.master.aprepare(query, timeout=timeout) as statement:
            yield statement

    @asynccontextmanager
    async def aprepare_named(self, query: str, *, timeout: float | None = None) -> AsyncIterator[NamedStatement]:
        async with self.master.aprepare_named(query, timeout=timeout) as statement:
            yield statement

    @asynccontextmanager
    async def atransaction(
        self,
        isolation: IsolationLevel | None = "read_committed",
        *,
        readonly: bool = False,
        deferrable: bool = False,
        timeout: float | None = None,
    ) -> AsyncIterator[Any]:
        """Run the block in a master transaction; see `ConnectionPool.atransaction`."""
        async with self.master.atransaction(
            isolation, readonly=readonly, deferrable=deferrable, timeout=timeout
        ) as connection:
            yield connection

    # -------------------------------------------------------------------------
    # Read path (replica_pick)
    # -------------------------------------------------------------------------

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
        return await self.replica_pick().aget(query, *args, model=model, timeout=timeout)

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
        return await self.replica_pick().aselect(query, *args, model=model, timeout=timeout)

    async def afetch(self, query: str, *args: object, timeout: float | None = None) -> list[Any]:
        return await self.replica_pick().afetch(query, *args, timeout=timeout)

    async def afetchrow(self, query: str, *args: object, timeout: float | None = None) -> Any | None:
        return await self.replica_pick().afetchrow(query, *args, timeout=timeout)

    async def afetchval(self, query: str, *args: object, timeout: float | None = None) -> Any:
        return await self.replica_pick().afetchval(query, *args, timeout=timeout)

    async def anamed_fetch(self, query: str, arg: Any, *, timeout: float | None = None) -> list[Any]:
        return await self.replica_pick().anamed_fetch(query, arg, timeout=timeout)

    @asynccontextmanager
    async def acursor(
        self,
        query: str,
        *args: object,
        prefetch: int = 50,
        timeout: float | None = None,
    ) -> AsyncIterator[Any]:
        async with self.replica_pick().acursor(query, *args, prefetch=prefetch, timeout=timeout) as cursor:
            yield cursor
