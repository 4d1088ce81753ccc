from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from bibstore_core.settings import settings


@dataclass(frozen=True)
class DataMigrationEnv:
    """Parameters handed to data routines of migration steps."""

    scratch_dir: Path = field(default_factory=lambda: settings.migration_scratch_dir)
    batch_size: int = field(default_factory=lambda: settings.stream_batch_size)
