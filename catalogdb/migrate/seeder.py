from __future__ import annotations

from typing import TYPE_CHECKING

from ..infrastructure.sql.exceptions import SeedError
from ..logger import get_logger
from .files import FileSource, LocalFileSource

if TYPE_CHECKING:
    from ..infrastructure.sql.router import DatabaseRouter
    from ..logger import BoundLogger

DEFAULT_SEED_ROOT = "db/seed"
INIT_SEED_FILE = "init.sql"


class Seeder:
    """Runs the seed scripts of one database against its master.

    Scripts live in ``<seed_root>/<database name>/*.sql``. ``init.sql`` is
    reserved for schema bootstrap and never executed here. Scripts run in
    lexicographic filename order, each as a single batch, outside any
    transaction: a failure stops the run and earlier scripts stay applied.

    Parameters
    ----------
    router
        Connected router of the database to seed.
    files
        Where the scripts are read from.
    seed_root
        Directory holding one sub-directory per database name.

    Raises
    ------
    SeedError
        If the directory cannot be read or holds no eligible scripts.
    """

    __slots__ = ("_directory", "_files", "_logger", "_router", "_source")

    def __init__(
        self,
        router: DatabaseRouter,
        *,
        files: FileSource | None = None,
        seed_root: str = DEFAULT_SEED_ROOT,
        logger: BoundLogger | None = None,
    ) -> None:
        self._router = router
        self._source = files if files is not None else LocalFileSource()
        self._logger = logger if logger is not None else get_logger(__name__)
        self._directory = f"{seed_root.rstrip('/')}/{router.config.name}"

        try:
            names = self._source.list_dir(self._directory)
        except OSError as exc:
            msg = f"unable to read seed directory '{self._directory}': {exc}"
            raise SeedError(msg) from exc

        self._files = tuple(
            sorted(f"{self._directory}/{name}" for name in names if name.endswith(".sql") and name != INIT_SEED_FILE)
        )
        if not self._files:
            msg = "no seed files found"
            raise SeedError(msg)

    @property
    def directory(self) -> str:
        return self._directory

    @property
    def files(self) -> tuple[str, ...]:
        """Seed script paths in execution order."""
        return self._files

    async def arun(self) -> list[str]:
        """Execute every seed script on the master, in order.

        Returns
        -------
        list[str]
            Paths of the scripts that were executed; empty scripts are skipped.

        Raises
        ------
        SeedError
            Naming the first script that could not be read or executed.
        """
        executed: list[str] = []
        for path in self._files:
            try:
                body = self._source.read_text(path)
            except OSError as exc:
                msg = f"unable to seed: '{path}'. error: {exc}"
                raise SeedError(msg) from exc

            if not body.strip():
                self._logger.debug("Skipping empty seed file", file=path)
                continue

            try:
                await self._router.aexecute(body)
            except Exception as exc:
                self._logger.error("Seed file failed", file=path, error=str(exc), executed=len(executed))
                msg = f"unable to seed: '{path}'. error: {exc}"
                raise SeedError(msg) from exc

            executed.append(path)
            self._logger.info("Seed file executed", file=path)

        self._logger.info("Seeding finished", database=self._router.config.name, files=len(executed))
        return executed
