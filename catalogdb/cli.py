"""Operational commands for migrations and seeds.

Usage::

    python -m catalogdb [--config PATH] [--database NAME] db:migrate
    python -m catalogdb db:rollback
    python -m catalogdb db:migrate:down
    python -m catalogdb db:migrate:status
    python -m catalogdb db:migrate:force 20240101120000
    python -m catalogdb db:seed
    python -m catalogdb gen:migration "create product table"
"""

from __future__ import annotations

import argparse
import asyncio
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .infrastructure.sql.exceptions import DatabaseError
from .infrastructure.sql.router import DatabaseRouter
from .logger import LoggingConfig, bind_context, clear_context, configure_logging, get_logger
from .migrate.files import LocalFileSource
from .migrate.migrator import DEFAULT_MIGRATE_ROOT, Migrator
from .migrate.seeder import DEFAULT_SEED_ROOT
from .settings import AppSettings, SettingsError

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="catalogdb", description="Database migrations and seeds")
    parser.add_argument("--config", default=None, help="YAML config file (default: $CONFIG_FILE_PATH or .config.yaml)")
    parser.add_argument("--database", default="main", help="Configured database name (default: main)")
    parser.add_argument("--root", default=".", help="Directory the migrate/seed roots are relative to")
    parser.add_argument("--migrate-root", default=DEFAULT_MIGRATE_ROOT, help="Migration scripts root")
    parser.add_argument("--seed-root", default=DEFAULT_SEED_ROOT, help="Seed scripts root")

    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    commands.add_parser("db:migrate", help="Apply all pending migrations")
    commands.add_parser("db:rollback", help="Revert the last applied migration")
    commands.add_parser("db:migrate:down", help="Revert every applied migration")
    commands.add_parser("db:migrate:status", help="Show which migrations are applied")
    force = commands.add_parser("db:migrate:force", help="Record a version as applied and clear the dirty flag")
    force.add_argument("version", type=int, help="Version to record (-1 = unmigrated)")
    commands.add_parser("db:seed", help="Run the seed scripts")
    gen = commands.add_parser("gen:migration", help="Create an empty up/down migration pair")
    gen.add_argument("description", help="Short description, used in the file names")
    return parser


def _render_status(console: Console, database: str, status: list[tuple[str, str]]) -> None:
    table = Table(title=f"Migrations: {database}")
    table.add_column("Migration", style="cyan")
    table.add_column("Applied", justify="center")
    for path, applied in status:
        table.add_row(path, f"[green]{applied}[/green]" if applied == "yes" else f"[yellow]{applied}[/yellow]")
    console.print(table)


async def _arun(args: argparse.Namespace, settings: AppSettings, console: Console) -> None:
    config = settings.database(args.database)
    files = LocalFileSource(args.root)
    router = DatabaseRouter(config)

    def _migrator() -> Migrator:
        return Migrator(router, files=files, migrate_root=args.migrate_root, seed_root=args.seed_root)

    if args.command == "gen:migration":
        up, down = _migrator().generate(args.description)
        console.print(f"Created [bold]{up}[/bold]")
        console.print(f"Created [bold]{down}[/bold]")
        return

    async with router:
        migrator = _migrator()
        match args.command:
            case "db:migrate":
                applied = await migrator.aup()
                console.print(f"Applied {applied} migration(s)")
            case "db:rollback":
                await migrator.arollback()
                console.print("Rolled back 1 migration")
            case "db:migrate:down":
                reverted = await migrator.adown()
                console.print(f"Reverted {reverted} migration(s)")
            case "db:migrate:status":
                _render_status(console, config.name, await migrator.amigrate_status())
            case "db:migrate:force":
                await migrator.aforce(args.version)
                console.print(f"Forced version {args.version}")
            case "db:seed":
                executed = await migrator.aseed_db()
                console.print(f"Executed {len(executed)} seed file(s)")


def main(argv: Sequence[str] | None = None, *, console: Console | None = None) -> int:
    args = build_parser().parse_args(argv)
    console = console or Console()
    configure_logging(LoggingConfig())
    bind_context(command=args.command, database=args.database)

    try:
        settings = AppSettings.load(args.config)
        asyncio.run(_arun(args, settings, console))
    except (DatabaseError, SettingsError, KeyError) as exc:
        logger.error("Command failed", error=str(exc))
        console.print("[red]error:[/red]", escape(str(exc)), highlight=False)
        return 1
    finally:
        clear_context()
    return 0
