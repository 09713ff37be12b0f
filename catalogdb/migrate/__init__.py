"""Deploy-time lifecycle tools: schema migrations and data seeding.

- `Migrator`: versioned, reversible ``.up.sql`` / ``.down.sql`` scripts
- `Seeder`: ordered one-shot seed scripts, ``init.sql`` excluded
- `FileSource`: where scripts are read from (`LocalFileSource`, `MemoryFileSource`)
"""

from .files import FileSource, LocalFileSource, MemoryFileSource
from .migrator import DEFAULT_MIGRATE_ROOT, Migration, Migrator
from .seeder import DEFAULT_SEED_ROOT, INIT_SEED_FILE, Seeder

__all__ = [
    "DEFAULT_MIGRATE_ROOT",
    "DEFAULT_SEED_ROOT",
    "INIT_SEED_FILE",
    "FileSource",
    "LocalFileSource",
    "MemoryFileSource",
    "Migration",
    "Migrator",
    "Seeder",
]
