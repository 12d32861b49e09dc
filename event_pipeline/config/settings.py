"""
Event Analytics Pipeline
Centralized Configuration Management

Pydantic settings with environment variable support for every pipeline
component. Components receive their own section by injection.
"""

from functools import lru_cache
from typing import Optional, Literal
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Durable Store Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="event_analytics", description="Database name")
    user: str = Field(default="analytics", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    url: Optional[str] = Field(default=None, description="Full async URL (overrides host/port)")
    echo: bool = Field(default=False, description="Echo SQL queries")
    statement_timeout_seconds: float = Field(default=10.0, description="Per-operation timeout")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Fast Store Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=100, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    operation_timeout_seconds: float = Field(default=2.0, description="Per-command timeout")
    url: Optional[str] = Field(default=None, description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class FastStoreSettings(BaseSettings):
    """Fast store backend selection"""

    model_config = SettingsConfigDict(env_prefix="FAST_STORE_")

    backend: Literal["redis", "memory"] = Field(default="redis", description="Fast store backend")


class IngestionSettings(BaseSettings):
    """Ingestion buffer (micro-batching) configuration"""

    model_config = SettingsConfigDict(env_prefix="INGESTION_")

    batch_size: int = Field(default=100, ge=1, description="Flush when this many events are pending")
    batch_timeout_seconds: float = Field(default=10.0, gt=0, description="Max wait before a flush")
    max_flush_retries: int = Field(default=5, ge=0, description="Retries before dead-lettering")
    retry_backoff_base_seconds: float = Field(default=0.5, ge=0)
    retry_backoff_max_seconds: float = Field(default=30.0, ge=0)
    max_future_skew_seconds: int = Field(default=300, description="Allowed clock skew into the future")
    retention_floor_days: int = Field(default=30, description="Oldest accepted event age")
    enable_enrichment: bool = Field(default=True)


class DeduplicationSettings(BaseSettings):
    """Fingerprint deduplication configuration"""

    model_config = SettingsConfigDict(env_prefix="DEDUP_")

    enabled: bool = Field(default=True)
    fingerprint_ttl_seconds: int = Field(default=60, ge=1)
    idempotency_ttl_seconds: int = Field(default=3600, ge=1)
    sweep_interval_seconds: int = Field(default=300)
    sweep_lookback_seconds: int = Field(default=3600, description="How far back the sweep scans")
    sweep_settle_seconds: int = Field(default=5, description="Skip the newest events still being flushed")
    health_window_seconds: int = Field(default=300)
    warning_rate: float = Field(default=0.05, description="Duplicate rate that signals a client retry bug")
    critical_rate: float = Field(default=0.25, description="Duplicate rate that signals abuse")
    circuit_failure_threshold: int = Field(default=5)
    circuit_reset_seconds: float = Field(default=30.0)


class EnrichmentSettings(BaseSettings):
    """Enrichment worker pool configuration"""

    model_config = SettingsConfigDict(env_prefix="ENRICHMENT_")

    pool_size: int = Field(default=5, ge=1)
    queue_size: int = Field(default=10000, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, ge=0)
    session_context_ttl_seconds: int = Field(default=3600)
    internal_domain: Optional[str] = Field(default=None, description="Referrers on this domain count as internal")


class AggregationSettings(BaseSettings):
    """Aggregation job configuration"""

    model_config = SettingsConfigDict(env_prefix="AGGREGATION_")

    lock_ttl_seconds: int = Field(default=900, description="Per-period lock lifetime")
    stuck_job_seconds: int = Field(default=3600, description="RUNNING logs older than this are reaped")


class RealtimeSettings(BaseSettings):
    """Realtime metrics engine configuration"""

    model_config = SettingsConfigDict(env_prefix="REALTIME_")

    checkpoint_interval_seconds: float = Field(default=15.0)
    reconciliation_interval_seconds: float = Field(default=300.0)
    default_ttl_seconds: int = Field(default=3600)
    histogram_max_samples: int = Field(default=1000)
    default_rate_window_seconds: int = Field(default=60)


class CacheSettings(BaseSettings):
    """Metrics cache layer TTL tiers"""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    short_ttl_seconds: int = Field(default=60, description="Current/today data")
    medium_ttl_seconds: int = Field(default=300, description="Recent data")
    long_ttl_seconds: int = Field(default=3600, description="Immutable historical data")
    recent_window_days: int = Field(default=7, description="Ranges ending within this window use the medium tier")


class DataLakeSettings(BaseSettings):
    """Overflow storage configuration"""

    model_config = SettingsConfigDict(env_prefix="DATA_")

    lake_path: str = Field(default="./data", description="Data lake root path")
    dead_letter_path: str = Field(default="./data/dead_letter", description="Dead-letter batch directory")


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="event-analytics", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    fast_store: FastStoreSettings = Field(default_factory=FastStoreSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    dedup: DeduplicationSettings = Field(default_factory=DeduplicationSettings)
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    data_lake: DataLakeSettings = Field(default_factory=DataLakeSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
