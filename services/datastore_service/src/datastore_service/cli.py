from __future__ import annotations

import typer

from bibstore_core.log import configure_logging
from bibstore_core.settings import settings
from datastore_service.datastore import DataStoreService, create_datastore_service
from datastore_service.errors import NotFoundError

app = typer.Typer(help="Record store maintenance (schema, candidate index, temp tables).")


def _service(database_url: str | None) -> DataStoreService:
    configure_logging()
    return create_datastore_service(database_url)


@app.command("update-schema")
def update_schema(
    rebuild_candidates: bool = typer.Option(
        settings.rebuild_candidate_terms,
        "--rebuild-candidates/--no-rebuild-candidates",
        help="Recompute candidate terms after the schema is current.",
    ),
    database_url: str | None = typer.Option(None, help="Overrides BIBSTORE_DATABASE_URL."),
) -> None:
    """Bootstrap or migrate the database to the current schema version."""
    service = _service(database_url)
    version = service.update_schema()
    typer.echo(f"schema version: {version}")
    if rebuild_candidates:
        stats = service.rebuild_candidate_terms()
        typer.echo(f"records: {stats.total} indexed: {stats.indexed} failed: {stats.failed}")


@app.command("rebuild-candidates")
def rebuild_candidates(database_url: str | None = typer.Option(None, help="Overrides BIBSTORE_DATABASE_URL.")) -> None:
    """Recompute the author/title candidate terms of every record."""
    stats = _service(database_url).rebuild_candidate_terms()
    typer.echo(f"records: {stats.total} indexed: {stats.indexed} failed: {stats.failed}")


@app.command("drop-temp-tables")
def drop_temp_tables(
    lifetime_ms: int = typer.Option(settings.temp_tables_lifetime_ms, help="Idle time after which a table is dropped."),
    database_url: str | None = typer.Option(None, help="Overrides BIBSTORE_DATABASE_URL."),
) -> None:
    """Drop paged-read temp tables idle for longer than the lifetime."""
    dropped = _service(database_url).drop_temp_tables(lifetime_ms)
    typer.echo(f"dropped: {len(dropped)}")


@app.command("reset-temp-tables")
def reset_temp_tables(database_url: str | None = typer.Option(None, help="Overrides BIBSTORE_DATABASE_URL.")) -> None:
    """Drop every temp table and recreate the access-time table (run at startup)."""
    _service(database_url).create_temp_tables_meta()
    typer.echo("temp tables reset")


@app.command()
def history(
    base: str,
    record_id: str,
    database_url: str | None = typer.Option(None, help="Overrides BIBSTORE_DATABASE_URL."),
) -> None:
    """List the change times of a record, current state first."""
    try:
        entries = _service(database_url).load_record_history(base, record_id)
    except NotFoundError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    for entry in entries:
        marker = "*" if entry.is_current else " "
        typer.echo(f"{marker} {entry.timestamp} {entry.change_type or ''}".rstrip())


@app.command()
def candidates(
    base: str,
    record_id: str,
    database_url: str | None = typer.Option(None, help="Overrides BIBSTORE_DATABASE_URL."),
) -> None:
    """Show duplicate candidates of a record with their grouping terms."""
    for candidate in _service(database_url).load_candidates(base, record_id):
        typer.echo(f"{candidate.second.base}/{candidate.second.id}\t{candidate.second.term}")


if __name__ == "__main__":
    app()
