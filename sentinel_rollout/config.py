"""Configuration management for the rollout controller."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Settings
    service_name: str = "sentinel-rollout"
    version: str = "0.1.0"
    log_level: str = "INFO"

    # Reconciliation Settings
    workers: int = Field(default=4, ge=1)
    resync_interval_seconds: float = 30.0
    rollout_tick_seconds: float = 5.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    instance_failure_threshold: int = 3

    # Execution Collaborator Settings
    collaborator_timeout_seconds: float = 10.0
    collaborator_max_attempts: int = 3
    execution_backend: str = Field(
        default="memory",
        description="Execution backend: memory, kubernetes",
    )
    kubeconfig_path: str | None = None
    kubernetes_namespace: str = "default"

    # State Store Settings
    database_url: str = Field(
        default="",
        description="SQLAlchemy async URL; empty selects the in-memory store",
    )

    # Canary Settings
    prometheus_url: str = "http://localhost:9090"
    metrics_query_timeout_seconds: float = 10.0

    # Kafka Settings
    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9094"
    kafka_topic_rollouts: str = "sentinel.rollouts"

    # API Settings
    host: str = "0.0.0.0"
    port: int = 8010
    api_prefix: str = "/api/v1"

    # CLI Settings
    control_url: str = "http://localhost:8010"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
