"""Environment configuration for the telemetry service."""
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

EMBEDDED = "embedded"
NETWORKED_SQL = "networked-sql"

# Legacy names for the same two backends
_DB_TYPE_ALIASES = {
    "sqlite": EMBEDDED,
    "postgres": NETWORKED_SQL,
    "postgresql": NETWORKED_SQL,
}


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3100
    node_env: str = "development"
    log_level: str = "INFO"
    app_version: str = "0.1.0"

    db_type: str = EMBEDDED
    db_path: Path = Path("data/telemetry.db")
    database_url: Optional[str] = None
    database_ssl: bool = False
    database_ssl_verify: bool = True
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_max_size: int = 1024 * 1024 * 1024

    max_payload_bytes: int = 256 * 1024
    ingest_queue_size: int = 1000
    ingest_workers: int = 1
    activity_limit: int = 10000

    operator_token: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("db_type")
    @classmethod
    def known_db_type(cls, v: str) -> str:
        v = _DB_TYPE_ALIASES.get(v.strip().lower(), v.strip().lower())
        if v not in (EMBEDDED, NETWORKED_SQL):
            raise ValueError(f"DB_TYPE must be '{EMBEDDED}' or '{NETWORKED_SQL}', got '{v}'")
        return v

    @field_validator("ingest_workers")
    @classmethod
    def at_least_one_worker(cls, v: int) -> int:
        return max(1, v)

    @property
    def environment(self) -> str:
        return self.node_env
