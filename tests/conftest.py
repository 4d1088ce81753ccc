from __future__ import annotations

import pytest

from bibstore_core.db.session import make_engine
from bibstore_core.marc import MarcRecord
from bibstore_core.schema.migrations.support import DataMigrationEnv
from datastore_service.datastore import DataStoreService

DEFAULT_LEADER = "00000cam a2200000 a 4500"


def _build_record(
    record_id: str = "1",
    *,
    title: str | None = "Seitsemän veljestä",
    subtitle: str | None = None,
    author: str | None = "Kivi, Aleksis",
    modified: str | None = "20170101120000.0",
    low_tags: tuple[str, ...] = ("FIN01",),
    leader: str = DEFAULT_LEADER,
    host_id: str | None = None,
    deleted: bool = False,
    notes: tuple[str, ...] = (),
) -> MarcRecord:
    record = MarcRecord(leader=leader)
    record.append_control_field("001", record_id)
    if modified:
        record.append_control_field("005", modified)
    if author:
        record.append_field("100", "1", " ", [("a", author)])
    if title:
        subfields = [("a", title)]
        if subtitle:
            subfields.append(("b", subtitle))
        record.append_field("245", "1", "0", subfields)
    for note in notes:
        record.append_field("500", " ", " ", [("a", note)])
    if host_id:
        record.append_field("773", "0", " ", [("w", f"(FI-MELINDA){host_id}")])
    for tag in low_tags:
        record.append_field("LOW", " ", " ", [("a", tag)])
    if deleted:
        record.append_field("STA", " ", " ", [("a", "DELETED")])
    return record


@pytest.fixture
def build_record():
    return _build_record


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'bibstore.db'}"


@pytest.fixture
def engine(database_url):
    engine = make_engine(database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def migration_env(tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    return DataMigrationEnv(scratch_dir=scratch, batch_size=2)


@pytest.fixture
def datastore(engine, migration_env):
    service = DataStoreService(engine, migration_env=migration_env)
    service.update_schema()
    service.create_temp_tables_meta()
    return service
