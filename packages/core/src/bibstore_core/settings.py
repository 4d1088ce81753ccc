from __future__ import annotations

import tempfile
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BIBSTORE_", extra="ignore")

    database_url: str = "sqlite:///data/bibstore.db"

    # Idle lifetime after which a paged-read temp table is swept.
    temp_tables_lifetime_ms: int = 300_000
    rebuild_candidate_terms: bool = False
    candidate_context_size: int = 4
    grouping_term_max_length: int = 50

    stream_batch_size: int = 1000
    migration_scratch_dir: Path = Path(tempfile.gettempdir())

    log_level: str = "INFO"
    log_format: str = "console"


settings = Settings()
