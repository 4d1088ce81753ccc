"""
Tests for schema bootstrap and the versioned migration steps.
"""

import pytest
import sqlalchemy as sa

from bibstore_core.hashing import database_identity
from bibstore_core.record_utils import record_timestamp
from bibstore_core.schema import SCHEMA_VERSION, get_database_version
from bibstore_core.schema.migrations import (
    MigrationError,
    get_migrations,
    update_schema,
    v0007_record_timestamp_index,
)
from bibstore_core.schema.migrations.v0006_record_timestamp import scratch_file_path, scratch_header


def _version(engine) -> int:
    with engine.connect() as connection:
        return get_database_version(connection)


def _scratch_file(engine, env):
    with engine.connect() as connection:
        return scratch_file_path(connection, env)


def _insert_raw_record(engine, record_id: str, content: str, base: str = "fennica") -> None:
    with engine.begin() as connection:
        connection.execute(
            sa.text("INSERT INTO record (id, base, content) VALUES (:id, :base, :content)"),
            {"id": record_id, "base": base, "content": content},
        )


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


class TestBootstrap:
    def test_empty_database_reaches_current_version(self, engine, migration_env):
        assert update_schema(engine, env=migration_env) == SCHEMA_VERSION
        assert _version(engine) == SCHEMA_VERSION

        inspector = sa.inspect(engine)
        for table in ("meta", "record", "delta", "candidates_by_author", "candidates_by_title", "low_tags"):
            assert inspector.has_table(table)

        record_columns = {c["name"] for c in inspector.get_columns("record")}
        assert {"low_tags", "record_timestamp"} <= record_columns
        assert "type" in {c["name"] for c in inspector.get_columns("delta")}

        record_indexes = {ix["name"] for ix in inspector.get_indexes("record")}
        assert "ix_record_base_record_timestamp" in record_indexes

    def test_update_is_idempotent(self, engine, migration_env):
        update_schema(engine, env=migration_env)
        assert update_schema(engine, env=migration_env) == SCHEMA_VERSION
        with engine.connect() as connection:
            rows = connection.execute(sa.text("SELECT COUNT(*) FROM meta")).scalar_one()
        assert rows == 1

    def test_bootstrap_to_initial_version_only(self, engine, migration_env):
        assert update_schema(engine, target=1, env=migration_env) == 1
        assert not sa.inspect(engine).has_table("candidates_by_title")


# ---------------------------------------------------------------------------
# Step selection
# ---------------------------------------------------------------------------


class TestGetMigrations:
    def test_full_range_in_order(self):
        migrations = get_migrations(1, SCHEMA_VERSION)
        assert [(m.from_version, m.to_version) for m in migrations] == [(v, v + 1) for v in range(1, SCHEMA_VERSION)]

    def test_data_steps(self):
        with_data = [m.from_version for m in get_migrations(1, SCHEMA_VERSION) if m.migrate_data is not None]
        assert with_data == [3, 5]

    def test_downgrade_rejected(self):
        with pytest.raises(ValueError, match="previous versions"):
            get_migrations(SCHEMA_VERSION, 2)

    def test_same_version_rejected(self):
        with pytest.raises(ValueError):
            get_migrations(3, 3)

    def test_missing_step(self):
        with pytest.raises(ValueError, match="No migration"):
            get_migrations(SCHEMA_VERSION, SCHEMA_VERSION + 1)

    def test_newer_database_than_code(self, engine, migration_env):
        update_schema(engine, env=migration_env)
        with pytest.raises(MigrationError):
            update_schema(engine, target=3, env=migration_env)


# ---------------------------------------------------------------------------
# Data migrations
# ---------------------------------------------------------------------------


class TestDataMigrations:
    def test_legacy_rows_are_backfilled(self, engine, migration_env, build_record):
        update_schema(engine, target=1, env=migration_env)
        first = build_record("1", low_tags=("FIN01", "FIN11"))
        second = build_record("2", modified="20180101000000.0", low_tags=("FIN11",))
        undated = build_record("3", modified=None, low_tags=())
        for record_id, record in (("1", first), ("2", second), ("3", undated)):
            _insert_raw_record(engine, record_id, record.to_string())

        assert update_schema(engine, env=migration_env) == SCHEMA_VERSION

        with engine.connect() as connection:
            rows = {
                row.id: row
                for row in connection.execute(sa.text("SELECT id, low_tags, record_timestamp FROM record"))
            }
            known_tags = list(connection.execute(sa.text("SELECT id FROM low_tags ORDER BY id")).scalars())

        assert rows["1"].low_tags == "FIN01,FIN11"
        assert rows["2"].low_tags == "FIN11"
        assert rows["3"].low_tags == ""
        assert known_tags == ["FIN01", "FIN11"]

        assert rows["1"].record_timestamp == record_timestamp(first)
        assert rows["2"].record_timestamp == record_timestamp(second)
        assert rows["3"].record_timestamp is None
        assert list(migration_env.scratch_dir.iterdir()) == []

    def test_unparseable_content_is_skipped(self, engine, migration_env, build_record):
        update_schema(engine, target=1, env=migration_env)
        _insert_raw_record(engine, "1", build_record("1").to_string())
        _insert_raw_record(engine, "2", "not a record")

        assert update_schema(engine, env=migration_env) == SCHEMA_VERSION
        with engine.connect() as connection:
            broken = connection.execute(
                sa.text("SELECT low_tags, record_timestamp FROM record WHERE id = '2'")
            ).one()
        assert broken.low_tags is None
        assert broken.record_timestamp is None

    def test_complete_scratch_file_is_reused(self, engine, migration_env, build_record):
        update_schema(engine, target=5, env=migration_env)
        _insert_raw_record(engine, "1", build_record("1").to_string())
        scratch = _scratch_file(engine, migration_env)
        scratch.write_text(scratch_header(database_identity(engine.url), 1) + "12345\tfennica\t1\n", encoding="utf-8")

        assert update_schema(engine, target=6, env=migration_env) == 6
        with engine.connect() as connection:
            stamp = connection.execute(sa.text("SELECT record_timestamp FROM record WHERE id = '1'")).scalar_one()
        assert stamp == 12345
        assert not scratch.exists()

    def test_partial_scratch_file_is_rewritten(self, engine, migration_env, build_record):
        update_schema(engine, target=5, env=migration_env)
        record = build_record("1")
        _insert_raw_record(engine, "1", record.to_string())
        scratch = _scratch_file(engine, migration_env)
        partial = scratch.with_name(scratch.name + ".partial")
        partial.write_text("999\tfennica\t1\n", encoding="utf-8")

        update_schema(engine, target=6, env=migration_env)
        with engine.connect() as connection:
            stamp = connection.execute(sa.text("SELECT record_timestamp FROM record WHERE id = '1'")).scalar_one()
        assert stamp == record_timestamp(record)

    @pytest.mark.parametrize(
        "header",
        [
            scratch_header("0123456789abcdef", 1),
            None,
        ],
        ids=["other-database", "no-header"],
    )
    def test_foreign_scratch_file_is_not_applied(self, engine, migration_env, build_record, header):
        update_schema(engine, target=5, env=migration_env)
        record = build_record("1")
        _insert_raw_record(engine, "1", record.to_string())
        scratch = _scratch_file(engine, migration_env)
        scratch.write_text((header or "") + "999\tfennica\t1\n", encoding="utf-8")

        update_schema(engine, target=6, env=migration_env)
        with engine.connect() as connection:
            stamp = connection.execute(sa.text("SELECT record_timestamp FROM record WHERE id = '1'")).scalar_one()
        assert stamp == record_timestamp(record)
        assert not scratch.exists()

    def test_scratch_file_for_other_record_count_is_rewritten(self, engine, migration_env, build_record):
        update_schema(engine, target=5, env=migration_env)
        first, second = build_record("1"), build_record("2", modified="20180101000000.0")
        _insert_raw_record(engine, "1", first.to_string())
        _insert_raw_record(engine, "2", second.to_string())
        scratch = _scratch_file(engine, migration_env)
        scratch.write_text(scratch_header(database_identity(engine.url), 1) + "999\tfennica\t1\n", encoding="utf-8")

        update_schema(engine, target=6, env=migration_env)
        with engine.connect() as connection:
            stamps = dict(connection.execute(sa.text("SELECT id, record_timestamp FROM record")).all())
        assert stamps == {"1": record_timestamp(first), "2": record_timestamp(second)}

    def test_scratch_files_are_scoped_to_the_database(self, tmp_path, migration_env):
        engine_a = sa.create_engine(f"sqlite:///{tmp_path / 'a.db'}")
        engine_b = sa.create_engine(f"sqlite:///{tmp_path / 'b.db'}")
        try:
            assert _scratch_file(engine_a, migration_env) != _scratch_file(engine_b, migration_env)
            assert _scratch_file(engine_a, migration_env).parent == migration_env.scratch_dir
        finally:
            engine_a.dispose()
            engine_b.dispose()


# ---------------------------------------------------------------------------
# Failure and restart
# ---------------------------------------------------------------------------


class TestFailedMigration:
    def test_failed_step_keeps_version_and_restart_completes(self, engine, migration_env, monkeypatch):
        def broken_upgrade(op):
            raise sa.exc.OperationalError("CREATE INDEX", {}, Exception("disk I/O error"))

        monkeypatch.setattr(v0007_record_timestamp_index, "upgrade", broken_upgrade)
        with pytest.raises(MigrationError) as excinfo:
            update_schema(engine, env=migration_env)
        assert (excinfo.value.from_version, excinfo.value.to_version) == (6, 7)
        assert _version(engine) == 1

        monkeypatch.undo()
        assert update_schema(engine, env=migration_env) == SCHEMA_VERSION
