"""
Schema migration runner for the PostgreSQL object store.

Applies forward-only SQL files from migrations/ in version order, each in
its own transaction, and records a checksum of every applied file so that
edits to an already-applied migration are reported instead of silently
ignored.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")


@dataclass
class Migration:
    """A migration file discovered on disk."""

    version: str
    filename: str
    path: Path

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum VARCHAR(64) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(migrations_dir: Optional[Path] = None) -> List[Migration]:
    """
    Discover migration files.

    Args:
        migrations_dir: Directory to scan (defaults to MIGRATIONS_DIR)

    Returns:
        Migrations sorted by version.

    Raises:
        FileNotFoundError: If the directory doesn't exist.
        ValueError: If two files share a version number.
    """
    directory = migrations_dir or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    found: Dict[str, Migration] = {}
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        version = match.group(1)
        if version in found:
            raise ValueError(
                f"Duplicate migration version {version}: "
                f"{found[version].filename} and {entry.name}"
            )
        found[version] = Migration(version=version, filename=entry.name, path=entry)

    return [found[v] for v in sorted(found)]


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map of applied migration version -> recorded checksum."""
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(pool: asyncpg.Pool, migration: Migration) -> None:
    """Apply a single migration and record it, in one transaction."""
    sql = migration.path.read_text(encoding="utf-8")

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename, checksum) "
                "VALUES ($1, $2, $3)",
                migration.version,
                migration.filename,
                migration.checksum,
            )

    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool, migrations_dir: Optional[Path] = None) -> int:
    """
    Apply all pending migrations in order.

    Args:
        pool: A connected asyncpg pool.
        migrations_dir: Directory to read migrations from.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_checksums(conn)

    migrations = discover_migrations(migrations_dir)
    if not migrations:
        logger.info("No migration files found")
        return 0

    pending = []
    for migration in migrations:
        recorded = applied.get(migration.version)
        if recorded is None:
            pending.append(migration)
        elif recorded != migration.checksum:
            logger.warning(
                f"Migration {migration.filename} was modified after it was applied"
            )

    if not pending:
        logger.info("Database schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for migration in pending:
        await apply_migration(pool, migration)

    return len(pending)
