import pytest
from typer.testing import CliRunner

from bibstore_core.schema import SCHEMA_VERSION
from datastore_service.cli import app

runner = CliRunner()


@pytest.fixture
def populated(datastore, build_record):
    datastore.save_record("fennica", "1", build_record("1"), change_timestamp=100, quiet=True)
    datastore.save_record("fennica", "1", build_record("1", notes=("Fixed",)), change_type="UPDATE", change_timestamp=200)
    datastore.save_record("fennica", "2", build_record("2", author="Kivi, Aleksis."), change_timestamp=300, quiet=True)
    return datastore


def test_update_schema(database_url):
    result = runner.invoke(app, ["update-schema", "--database-url", database_url])
    assert result.exit_code == 0, result.output
    assert f"schema version: {SCHEMA_VERSION}" in result.output


def test_update_schema_with_rebuild(populated, database_url):
    result = runner.invoke(app, ["update-schema", "--rebuild-candidates", "--database-url", database_url])
    assert result.exit_code == 0, result.output
    assert "records: 2 indexed: 2 failed: 0" in result.output


def test_history(populated, database_url):
    result = runner.invoke(app, ["history", "fennica", "1", "--database-url", database_url])
    assert result.exit_code == 0, result.output
    lines = [line for line in result.output.splitlines() if line.startswith(("*", " "))]
    assert lines == ["* 200", "  100 UPDATE"]


def test_history_of_missing_record(populated, database_url):
    result = runner.invoke(app, ["history", "fennica", "404", "--database-url", database_url])
    assert result.exit_code == 1


def test_candidates(populated, database_url):
    result = runner.invoke(app, ["candidates", "fennica", "1", "--database-url", database_url])
    assert result.exit_code == 0, result.output
    assert "fennica/2\tseitseman veljesta" in result.output


def test_rebuild_candidates(populated, database_url):
    result = runner.invoke(app, ["rebuild-candidates", "--database-url", database_url])
    assert result.exit_code == 0, result.output
    assert "records: 2 indexed: 2 failed: 0" in result.output


def test_temp_table_maintenance(populated, database_url):
    result = runner.invoke(app, ["drop-temp-tables", "--lifetime-ms", "0", "--database-url", database_url])
    assert result.exit_code == 0, result.output
    assert "dropped: 0" in result.output

    result = runner.invoke(app, ["reset-temp-tables", "--database-url", database_url])
    assert result.exit_code == 0, result.output
    assert "temp tables reset" in result.output
