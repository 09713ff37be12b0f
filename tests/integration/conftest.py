"""Shared fixtures for integration tests.

Provides:
- postgres_container: Session-scoped PostgreSQL container
- database_config: postgres `DatabaseConfig` whose replicas point at the same server
- router: Function-scoped, connected `DatabaseRouter` over a freshly reset schema
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from catalogdb.infrastructure.sql import DatabaseConfig, DatabaseRouter

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator

    from testcontainers.postgres import PostgresContainer  # type: ignore[import-untyped]

POSTGRES_IMAGE = "postgres:16-alpine"


def _docker_reachable() -> bool:
    """Ping the Docker daemon named by DOCKER_HOST, falling back to Docker Desktop's socket on macOS."""
    desktop_socket = Path.home() / ".docker" / "run" / "docker.sock"
    if not os.environ.get("DOCKER_HOST") and desktop_socket.exists():
        os.environ["DOCKER_HOST"] = f"unix://{desktop_socket}"

    try:
        import docker  # type: ignore[import-untyped]
        from docker.errors import DockerException  # type: ignore[import-untyped]
    except ImportError:
        return False

    try:
        docker.from_env().ping()
    except DockerException:
        return False
    return True


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Start one PostgreSQL server for the whole session.

    Skips:
        If the Docker daemon or testcontainers is not available.
    """
    if not _docker_reachable():
        pytest.skip("Docker daemon not available; integration tests need Docker Engine or Docker Desktop.")

    postgres = pytest.importorskip("testcontainers.postgres")
    container = postgres.PostgresContainer(
        POSTGRES_IMAGE,
        username="test_user",
        password="test_password",
        dbname="test_db",
    )
    container.start()

    try:
        yield container
    finally:
        container.stop()


@pytest.fixture
def database_config(postgres_container: PostgresContainer) -> DatabaseConfig:
    """Master plus two replicas, all on the test container.

    A single server keeps read-after-write assertions deterministic while the
    routing code still opens and picks between three pools.
    """
    host = postgres_container.get_container_host_ip()
    port = postgres_container.get_exposed_port(5432)
    uri = f"postgresql://test_user:test_password@{host}:{port}/test_db"

    return DatabaseConfig(
        name="main",
        driver="postgres",
        uri=uri,
        replica_uris=(uri, uri),
        max_open_conns=5,
        max_idle_conns=2,
        acquire_timeout="10s",
    )


@pytest.fixture
async def router(database_config: DatabaseConfig) -> AsyncIterator[DatabaseRouter]:
    """Provide a connected router over an empty ``public`` schema."""
    db = await DatabaseRouter.aopen(database_config)
    await db.aexecute("DROP SCHEMA public CASCADE; CREATE SCHEMA public;")

    try:
        yield db
    finally:
        await db.aclose()
