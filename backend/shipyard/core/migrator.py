"""Schema migrations for the shipyard database.

Numbered ``NNN_description.sql`` files in ``backend/migrations`` are
applied in order and recorded in ``schema_migrations``. A database without
the ``deployment_jobs`` table is treated as a fresh install: the tables
are created from the models, which already include every migration, so all
files are only recorded. Each migration runs in one transaction together
with its bookkeeping row, so a failed file leaves no partial record.

A file may start with ``-- dialect: sqlite`` or ``-- dialect: postgresql``
to restrict it to one backend.

Usage:
    from shipyard.core.migrator import run_migrations, MigrationError

    try:
        result = run_migrations(engine, Base)
    except MigrationError as e:
        logger.critical(f"Migration failed: {e}")
        raise SystemExit(1)
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

from sqlalchemy import Connection, Engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "schema_migrations"

# Present in every installed schema since the first release
_MARKER_TABLE = "deployment_jobs"

_FILENAME = re.compile(r"^(\d{3})_(\w+)\.sql$")
_DIALECT_MARKER = re.compile(r"^--\s*dialect:\s*(sqlite|postgresql)\s*$")


class MigrationError(Exception):
    """A migration file could not be applied."""


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    path: Path
    dialect: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.version}_{self.name}"

    def statements(self) -> List[str]:
        """SQL statements of the file, comments stripped. DBAPIs run one at a time."""
        lines = [
            line for line in self.path.read_text().splitlines()
            if not line.lstrip().startswith("--")
        ]
        return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]


@dataclass
class MigrationResult:
    applied: int = 0
    skipped: int = 0
    baselined: int = 0


def default_migrations_dir() -> Path:
    return Path(__file__).resolve().parents[2] / "migrations"


def discover_migrations(migrations_dir: Optional[Path] = None) -> List[Migration]:
    """Every migration file in version order."""
    directory = migrations_dir or default_migrations_dir()
    if not directory.is_dir():
        logger.warning(f"Migrations directory not found: {directory}")
        return []

    found = []
    for path in directory.glob("*.sql"):
        match = _FILENAME.match(path.name)
        if not match:
            logger.debug(f"Ignoring {path.name}: not a migration file name")
            continue
        first_line = path.read_text().split("\n", 1)[0]
        marker = _DIALECT_MARKER.match(first_line)
        found.append(Migration(
            version=match.group(1),
            name=match.group(2),
            path=path,
            dialect=marker.group(1) if marker else None,
        ))
    return sorted(found, key=lambda m: int(m.version))


def _tables(engine: Engine) -> Set[str]:
    return set(inspect(engine).get_table_names())


def _create_migrations_table(conn: Connection) -> None:
    conn.execute(text(f"""
        CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
            version VARCHAR(10) PRIMARY KEY,
            name VARCHAR(255) NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """))


def _record(conn: Connection, migration: Migration) -> None:
    conn.execute(
        text(f"INSERT INTO {MIGRATIONS_TABLE} (version, name) VALUES (:version, :name)"),
        {"version": migration.version, "name": migration.name},
    )


def _applied_versions(conn: Connection) -> Set[str]:
    rows = conn.execute(text(f"SELECT version FROM {MIGRATIONS_TABLE}"))
    return {row[0] for row in rows}


def _apply(engine: Engine, migration: Migration) -> None:
    logger.info(f"Applying migration {migration.label}")
    try:
        with engine.begin() as conn:
            for statement in migration.statements():
                conn.execute(text(statement))
            _record(conn, migration)
    except SQLAlchemyError as e:
        raise MigrationError(f"Failed to apply {migration.label}: {e}") from e


def run_migrations(engine: Engine, base: type, migrations_dir: Optional[Path] = None) -> MigrationResult:
    """Bring the schema up to date. Safe to run on every start.

    Args:
        engine: SQLAlchemy engine
        base: declarative base whose metadata describes the current schema
        migrations_dir: override of the bundled migrations directory

    Raises:
        MigrationError: a pending migration failed; it was rolled back.
    """
    dialect = engine.dialect.name
    migrations = [m for m in discover_migrations(migrations_dir) if m.dialect in (None, dialect)]
    fresh = _MARKER_TABLE not in _tables(engine)

    # Creates only what is missing; existing tables are left to the migrations
    base.metadata.create_all(bind=engine)

    with engine.begin() as conn:
        _create_migrations_table(conn)
        if fresh:
            for migration in migrations:
                _record(conn, migration)
            logger.info(f"Fresh install: created tables, baselined {len(migrations)} migration(s)")
            return MigrationResult(baselined=len(migrations))
        applied = _applied_versions(conn)

    pending = [m for m in migrations if m.version not in applied]
    if not pending:
        logger.info("Database schema is up to date")
        return MigrationResult(skipped=len(migrations))

    for migration in pending:
        _apply(engine, migration)
    logger.info(f"Applied {len(pending)} migration(s)")
    return MigrationResult(applied=len(pending))
