"""Build, connect and close every configured database.

The routing client never retries on its own. When ``connect_retry`` is set,
opening a database is retried as a whole: a fresh `DatabaseRouter` is built
for every attempt.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from .infrastructure.sql.exceptions import DatabaseCloseError, DatabaseConnectionError
from .infrastructure.sql.router import DatabaseRouter
from .logger import get_logger
from .resilience.retry import Retry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from .infrastructure.sql.config import DatabaseConfig
    from .logger import BoundLogger
    from .resilience.config import RetryConfig
    from .settings import AppSettings

logger = get_logger(__name__)


async def aopen_database(
    config: DatabaseConfig,
    *,
    retry_config: RetryConfig | None = None,
    logger: BoundLogger | None = None,
) -> DatabaseRouter:
    """Open one database, retrying the whole client when a policy is given.

    Only `DatabaseConnectionError` is retried unless the policy names other
    exception types.

    Raises
    ------
    DatabaseConnectionError
        If the database could not be opened within the policy.
    """
    if retry_config is None:
        return await DatabaseRouter.aopen(config, logger=logger)

    if retry_config.retry_on_exceptions is None:
        retry_config = retry_config.model_copy(update={"retry_on_exceptions": (DatabaseConnectionError,)})
    return await Retry(retry_config).acall(DatabaseRouter.aopen, config, logger=logger)


async def aclose_databases(routers: Mapping[str, DatabaseRouter]) -> None:
    """Close every router, attempting all of them.

    Raises
    ------
    DatabaseCloseError
        If any router failed to close; ``errors`` holds every failure.
    """
    errors: list[BaseException] = []
    for name, router in routers.items():
        try:
            await router.aclose()
        except DatabaseCloseError as exc:
            logger.error("Database failed to close", database=name, error=str(exc))
            errors.extend(exc.errors)

    if errors:
        msg = f"{len(errors)} endpoint(s) failed to close, first error: {errors[0]}"
        raise DatabaseCloseError(msg, errors) from errors[0]


async def aopen_databases(settings: AppSettings) -> dict[str, DatabaseRouter]:
    """Open every configured database, in configuration order.

    If one cannot be opened, those already open are closed and the error is
    raised.
    """
    opened: dict[str, DatabaseRouter] = {}
    try:
        for name, config in settings.databases.items():
            opened[name] = await aopen_database(config, retry_config=settings.connect_retry)
    except BaseException:
        try:
            await aclose_databases(opened)
        except DatabaseCloseError as exc:
            logger.warning("Cleanup after failed open did not close every database", error=str(exc))
        raise

    logger.info("Databases opened", databases=list(opened), environment=settings.environment)
    return opened


@asynccontextmanager
async def databases(settings: AppSettings) -> AsyncIterator[dict[str, DatabaseRouter]]:
    """Open every configured database for the duration of the block.

    Examples
    --------
    >>> async with databases(AppSettings.load()) as dbs:
    ...     products = await dbs["main"].aselect("SELECT * FROM product")
    """
    routers = await aopen_databases(settings)
    try:
        yield routers
    finally:
        await aclose_databases(routers)
