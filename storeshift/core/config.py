from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_CHECKSUM_ALGORITHMS = {"blake3", "sha256"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STORESHIFT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "StoreShift"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None
    config_encryption_key: str | None = None

    migration_default_concurrency: PositiveInt = 5
    migration_max_concurrency: PositiveInt = 64
    migration_max_attempts: PositiveInt = 3
    migration_retry_base_seconds: float = Field(default=1.0, ge=0.0)
    migration_retry_max_seconds: float = Field(default=60.0, ge=0.0)
    migration_failure_abort_threshold: int = Field(default=0, ge=0)
    migration_stream_chunk_bytes: PositiveInt = 1024 * 1024
    migration_list_page_size: PositiveInt = 1000
    migration_manifest_write_batch_size: PositiveInt = 2000
    migration_assumed_throughput_bytes_per_sec: PositiveInt = 1024 * 1024
    migration_max_recorded_errors: PositiveInt = 100
    migration_lease_ttl_seconds: PositiveInt = 120
    migration_heartbeat_seconds: float = Field(default=5.0, gt=0.0)
    migration_verify_computes_checksums: bool = True
    migration_resume_orphans_on_startup: bool = True
    checksum_algorithm: str = "blake3"

    default_page_size: PositiveInt = 100
    max_page_size: PositiveInt = 1000

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        if self.migration_max_concurrency < self.migration_default_concurrency:
            raise ValueError("migration_max_concurrency must be >= migration_default_concurrency")

        if self.migration_retry_max_seconds < self.migration_retry_base_seconds:
            raise ValueError("migration_retry_max_seconds must be >= migration_retry_base_seconds")

        if self.migration_heartbeat_seconds >= self.migration_lease_ttl_seconds:
            raise ValueError("migration_heartbeat_seconds must be shorter than migration_lease_ttl_seconds")

        normalized_algorithm = self.checksum_algorithm.lower().strip()
        if normalized_algorithm not in SUPPORTED_CHECKSUM_ALGORITHMS:
            raise ValueError(f"checksum_algorithm must be one of {sorted(SUPPORTED_CHECKSUM_ALGORITHMS)}")
        self.checksum_algorithm = normalized_algorithm

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "storeshift.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def config_key_path(self) -> Path:
        return self.state_root / "config.key"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
