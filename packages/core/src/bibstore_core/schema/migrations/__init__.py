"""
Migration engine.

Moves the database from its stored schema version to `SCHEMA_VERSION` one
step at a time. Each step is a module in this package exposing `upgrade(op)`
(alembic `Operations`) and optionally `migrate_data(connection, env)`. Every
step runs in its own transaction; the stored version is written once, after
the whole range has succeeded. Steps check for existing tables, columns and
indexes, so a failed run can simply be restarted.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from types import ModuleType

import sqlalchemy as sa
import structlog
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import Connection, Engine
from sqlalchemy.exc import OperationalError, ProgrammingError, SQLAlchemyError

from bibstore_core.schema import SCHEMA_VERSION, get_database_version, initial, set_database_version
from bibstore_core.schema.migrations import (
    v0002_candidate_terms,
    v0003_delta_change_type,
    v0004_low_tags,
    v0005_delta_lookup_index,
    v0006_record_timestamp,
    v0007_record_timestamp_index,
)
from bibstore_core.schema.migrations.support import DataMigrationEnv

logger = structlog.get_logger(__name__)

_STEP_MODULES: tuple[ModuleType, ...] = (
    v0002_candidate_terms,
    v0003_delta_change_type,
    v0004_low_tags,
    v0005_delta_lookup_index,
    v0006_record_timestamp,
    v0007_record_timestamp_index,
)
_STEPS: dict[int, ModuleType] = {m.from_version: m for m in _STEP_MODULES}


class MigrationError(RuntimeError):
    def __init__(self, from_version: int, to_version: int, message: str) -> None:
        super().__init__(f"Migration {from_version} -> {to_version} failed: {message}")
        self.from_version = from_version
        self.to_version = to_version


@dataclass(frozen=True)
class Migration:
    from_version: int
    to_version: int
    upgrade: Callable[[Operations], None]
    migrate_data: Callable[[Connection, DataMigrationEnv], None] | None = None


def get_migrations(from_version: int, to_version: int) -> list[Migration]:
    if from_version >= to_version:
        raise ValueError("Migrations to previous versions are not supported.")

    migrations: list[Migration] = []
    for version in range(from_version, to_version):
        module = _STEPS.get(version)
        if module is None or module.to_version != version + 1:
            raise ValueError(f"No migration from version {version} to {version + 1}")
        migrations.append(
            Migration(
                from_version=module.from_version,
                to_version=module.to_version,
                upgrade=module.upgrade,
                migrate_data=getattr(module, "migrate_data", None),
            )
        )
    return migrations


def update_schema(engine: Engine, target: int = SCHEMA_VERSION, env: DataMigrationEnv | None = None) -> int:
    """
    Bring the database to `target`, bootstrapping an empty database first.

    Returns the version stored after the update. Idempotent when the
    database is already at `target`.
    """
    env = env or DataMigrationEnv()
    try:
        with engine.connect() as connection:
            db_version = get_database_version(connection)
    except (OperationalError, ProgrammingError):
        if sa.inspect(engine).has_table("meta"):
            raise
        logger.info("database_not_initialized")
        _initialize(engine)
        return update_schema(engine, target, env)

    logger.info("schema_versions", database_version=db_version, schema_version=target)
    if db_version == target:
        return db_version

    try:
        migrations = get_migrations(db_version, target)
    except ValueError as exc:
        raise MigrationError(db_version, target, str(exc)) from exc

    logger.info("updating_schema", from_version=db_version, to_version=target)
    for migration in migrations:
        _apply(engine, migration, env)

    with engine.begin() as connection:
        set_database_version(connection, target)
    with engine.connect() as connection:
        version_after = get_database_version(connection)

    logger.info("schema_updated", from_version=db_version, to_version=version_after)
    return version_after


def _initialize(engine: Engine) -> None:
    logger.info("initializing_database")
    with engine.begin() as connection:
        initial.upgrade(Operations(MigrationContext.configure(connection)))
    logger.info("database_initialized", version=initial.INITIAL_VERSION)


def _apply(engine: Engine, migration: Migration, env: DataMigrationEnv) -> None:
    logger.info("applying_migration", from_version=migration.from_version, to_version=migration.to_version)
    try:
        with engine.begin() as connection:
            migration.upgrade(Operations(MigrationContext.configure(connection)))
            if migration.migrate_data is not None:
                migration.migrate_data(connection, env)
    except (SQLAlchemyError, OSError) as exc:
        logger.error(
            "migration_failed",
            from_version=migration.from_version,
            to_version=migration.to_version,
            error=str(exc),
        )
        raise MigrationError(migration.from_version, migration.to_version, str(exc)) from exc
