"""Versioned schema migrations.

Migration scripts are file pairs named ``<version>_<description>.up.sql`` and
``<version>_<description>.down.sql`` under ``<migrate_root>/<database name>``.
The applied version lives in a one-row table (``schema_migrations`` by
default)::

    version BIGINT NOT NULL PRIMARY KEY
    dirty   BOOLEAN NOT NULL

No row means nothing has been applied. Before a script runs, the row is set to
the version being migrated with ``dirty = true``; once the script commits it is
set to the resulting version with ``dirty = false``. A failed script leaves the
dirty marker behind and every later run refuses to start until the schema is
repaired and `Migrator.aforce` records the correct version.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal

from ..infrastructure.sql.exceptions import DirtyDatabaseError, MigrationError
from ..logger import get_logger
from .files import FileSource, LocalFileSource
from .seeder import DEFAULT_SEED_ROOT, Seeder

if TYPE_CHECKING:
    from ..infrastructure.sql.router import DatabaseRouter
    from ..logger import BoundLogger

DEFAULT_MIGRATE_ROOT = "db/migrate"

type Direction = Literal["up", "down"]

_UP_SUFFIX = ".up.sql"
_DOWN_SUFFIX = ".down.sql"
_NON_WORD = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    description: str
    up_path: str
    down_path: str | None = None


def _parse_version(filename: str) -> int | None:
    """Version prefix of a migration file name, or None if it is not one."""
    if "_" not in filename or not filename.endswith((_UP_SUFFIX, _DOWN_SUFFIX)):
        return None
    prefix = filename.split("_", 1)[0]
    try:
        return int(prefix)
    except ValueError:
        msg = f"invalid migration version {prefix!r} in {filename!r}"
        raise MigrationError(msg) from None


class Migrator:
    """Applies and reverts the migrations of one database on its master.

    Runs are expected to be single-instance; nothing here guards against two
    processes migrating the same database at once.

    Parameters
    ----------
    router
        Connected router of the database to migrate.
    files
        Where migration (and seed) scripts are read from.
    migrate_root, seed_root
        Directories holding one sub-directory per database name.

    Examples
    --------
    >>> async with DatabaseRouter(config) as db:
    ...     migrator = Migrator(db)
    ...     await migrator.aup()
    ...     for path, applied in await migrator.amigrate_status():
    ...         print(path, applied)
    """

    __slots__ = ("_files", "_logger", "_migrate_path", "_router", "_seed_root", "_table")

    def __init__(
        self,
        router: DatabaseRouter,
        *,
        files: FileSource | None = None,
        migrate_root: str = DEFAULT_MIGRATE_ROOT,
        seed_root: str = DEFAULT_SEED_ROOT,
        logger: BoundLogger | None = None,
    ) -> None:
        self._router = router
        self._files = files if files is not None else LocalFileSource()
        self._logger = logger if logger is not None else get_logger(__name__)
        self._migrate_path = f"{migrate_root.rstrip('/')}/{router.config.name}"
        self._seed_root = seed_root
        self._table = router.config.schema_migrations_table

    @property
    def migrate_path(self) -> str:
        return self._migrate_path

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def _list_migration_dir(self) -> list[str]:
        try:
            return self._files.list_dir(self._migrate_path)
        except OSError as exc:
            msg = f"unable to read migration directory '{self._migrate_path}': {exc}"
            raise MigrationError(msg) from exc

    def migrations(self) -> list[Migration]:
        """Discover migrations, ordered by version.

        Raises
        ------
        MigrationError
            If the directory is unreadable, a version is not numeric, or two
            up scripts share a version.
        """
        ups: dict[int, str] = {}
        downs: dict[int, str] = {}
        for name in self._list_migration_dir():
            version = _parse_version(name)
            if version is None:
                continue
            target = ups if name.endswith(_UP_SUFFIX) else downs
            if version in target:
                msg = f"duplicate migration version {version} in '{self._migrate_path}'"
                raise MigrationError(msg)
            target[version] = name

        return [
            Migration(
                version=version,
                description=name.split("_", 1)[1].removesuffix(_UP_SUFFIX),
                up_path=f"{self._migrate_path}/{name}",
                down_path=f"{self._migrate_path}/{downs[version]}" if version in downs else None,
            )
            for version, name in sorted(ups.items())
        ]

    # -------------------------------------------------------------------------
    # Version bookkeeping
    # -------------------------------------------------------------------------

    async def _aensure_table(self) -> None:
        await self._router.aexecute(
            f"CREATE TABLE IF NOT EXISTS {self._table} (version BIGINT NOT NULL PRIMARY KEY, dirty BOOLEAN NOT NULL)"
        )

    async def _aset_version(self, version: int | None, *, dirty: bool) -> None:
        async with self._router.atransaction() as connection:
            await connection.execute(f"DELETE FROM {self._table}")
            if version is not None:
                await connection.execute(
                    self._router.rebind(f"INSERT INTO {self._table} (version, dirty) VALUES (?, ?)"),
                    version,
                    dirty,
                )

    async def aversion(self) -> tuple[int | None, bool]:
        """Return ``(version, dirty)``; version is None when nothing was applied.

        Always read from the master so a fresh run never sees a stale version.
        """
        await self._aensure_table()
        row = await self._router.master.afetchrow(f"SELECT version, dirty FROM {self._table} LIMIT 1")
        if row is None:
            return None, False
        return int(row["version"]), bool(row["dirty"])

    async def aforce(self, version: int | None) -> None:
        """Record ``version`` as applied and clear the dirty flag without running scripts.

        ``None`` (or a negative version) marks the database as unmigrated.
        """
        await self._aensure_table()
        target = None if version is None or version < 0 else version
        await self._aset_version(target, dirty=False)
        self._logger.warning("Migration version forced", database=self._router.config.name, version=target)

    async def _aclean_version(self) -> int | None:
        version, dirty = await self.aversion()
        if dirty:
            assert version is not None  # a dirty marker always carries a version
            raise DirtyDatabaseError(version)
        return version

    # -------------------------------------------------------------------------
    # Running scripts
    # -------------------------------------------------------------------------

    async def _arun(self, migration: Migration, direction: Direction, result_version: int | None) -> None:
        path = migration.up_path if direction == "up" else migration.down_path
        if path is None:
            msg = f"no down migration for version {migration.version} in '{self._migrate_path}'"
            raise MigrationError(msg)

        try:
            body = self._files.read_text(path)
        except OSError as exc:
            msg = f"unable to read migration '{path}': {exc}"
            raise MigrationError(msg) from exc

        await self._aset_version(migration.version, dirty=True)
        started = time.perf_counter()
        try:
            if body.strip():
                async with self._router.atransaction() as connection:
                    await connection.execute(body)
        except Exception as exc:
            self._logger.error(
                "Migration failed, database left dirty",
                file=path,
                version=migration.version,
                direction=direction,
                error=str(exc),
            )
            msg = f"migration '{path}' failed: {exc}"
            raise MigrationError(msg) from exc

        await self._aset_version(result_version, dirty=False)
        self._logger.info(
            "Migration applied",
            file=path,
            version=migration.version,
            direction=direction,
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )

    async def _aapply_up(self, pending: list[Migration]) -> int:
        for migration in pending:
            await self._arun(migration, "up", migration.version)
        return len(pending)

    async def _aapply_down(self, migrations: list[Migration], current: int, count: int | None) -> int:
        applied = [m for m in migrations if m.version <= current]
        if not applied or applied[-1].version != current:
            msg = f"no migration found for recorded version {current} in '{self._migrate_path}'"
            raise MigrationError(msg)

        steps = len(applied) if count is None else count
        if steps > len(applied):
            msg = f"cannot revert {steps} migrations, only {len(applied)} applied"
            raise MigrationError(msg)

        for index in range(len(applied) - 1, len(applied) - 1 - steps, -1):
            previous = applied[index - 1].version if index > 0 else None
            await self._arun(applied[index], "down", previous)
        return steps

    async def aup(self) -> int:
        """Apply every pending migration in ascending version order.

        Returns
        -------
        int
            Number of migrations applied; 0 when already up to date.

        Raises
        ------
        DirtyDatabaseError
            If a previous run failed half-way.
        MigrationError
            If discovery fails or a script fails (the database is left dirty).
        """
        migrations = self.migrations()
        current = await self._aclean_version()
        pending = [m for m in migrations if current is None or m.version > current]
        if not pending:
            self._logger.info("No pending migrations", database=self._router.config.name, version=current)
            return 0
        return await self._aapply_up(pending)

    async def adown(self) -> int:
        """Revert every applied migration in descending version order."""
        migrations = self.migrations()
        current = await self._aclean_version()
        if current is None:
            self._logger.info("No migrations to revert", database=self._router.config.name)
            return 0
        return await self._aapply_down(migrations, current, None)

    async def asteps(self, n: int) -> int:
        """Apply ``n`` pending migrations (``n > 0``) or revert ``-n`` applied ones (``n < 0``).

        Raises
        ------
        MigrationError
            If fewer than ``|n|`` migrations are available in that direction;
            nothing is run in that case.
        """
        if n == 0:
            return 0
        migrations = self.migrations()
        current = await self._aclean_version()

        if n > 0:
            pending = [m for m in migrations if current is None or m.version > current]
            if n > len(pending):
                msg = f"cannot apply {n} migrations, only {len(pending)} pending"
                raise MigrationError(msg)
            return await self._aapply_up(pending[:n])

        if current is None:
            msg = "no applied migration to revert"
            raise MigrationError(msg)
        return await self._aapply_down(migrations, current, -n)

    async def arollback(self) -> int:
        """Revert exactly one migration."""
        return await self.asteps(-1)

    # -------------------------------------------------------------------------
    # Reporting, seeding and scaffolding
    # -------------------------------------------------------------------------

    async def amigrate_status(self) -> list[tuple[str, str]]:
        """List every up migration with ``"yes"`` if applied, else ``"no"``.

        Returns
        -------
        list[tuple[str, str]]
            ``(path, applied)`` pairs ordered by version. A migration counts as
            applied when its version is at or below the recorded version.
        """
        migrations = self.migrations()
        current, _ = await self.aversion()
        return [
            (migration.up_path, "yes" if current is not None and migration.version <= current else "no")
            for migration in migrations
        ]

    async def aseed_db(self) -> list[str]:
        """Run the seed scripts of this database; see `Seeder`."""
        seeder = Seeder(self._router, files=self._files, seed_root=self._seed_root, logger=self._logger)
        return await seeder.arun()

    def generate(self, description: str, *, now: datetime | None = None) -> tuple[str, str]:
        """Create an empty, timestamp-versioned up/down script pair.

        Returns
        -------
        tuple[str, str]
            Paths of the up and down scripts.

        Raises
        ------
        MigrationError
            If the description is empty or a script already exists.
        """
        slug = _NON_WORD.sub("_", description.lower()).strip("_")
        if not slug:
            msg = f"invalid migration description {description!r}"
            raise MigrationError(msg)

        version = (now or datetime.now(UTC)).strftime("%Y%m%d%H%M%S")
        base = f"{self._migrate_path}/{version}_{slug}"
        paths = (f"{base}{_UP_SUFFIX}", f"{base}{_DOWN_SUFFIX}")
        for path in paths:
            try:
                self._files.write_text(path, "")
            except OSError as exc:
                msg = f"unable to create migration '{path}': {exc}"
                raise MigrationError(msg) from exc

        self._logger.info("Migration created", up=paths[0], down=paths[1])
        return paths
