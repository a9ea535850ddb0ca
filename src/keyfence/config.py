from __future__ import annotations

from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KEYFENCE_", env_file=".env", extra="ignore")

    app_name: str = "keyfence"
    env: str = "dev"

    # Instance ID for distributed deployments
    instance_id: str = Field(default_factory=lambda: str(uuid4())[:8])

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    key_prefix: str = Field(default="keyfence", validation_alias="KEYFENCE_KEY_PREFIX")

    # Lease lock
    default_lease_duration: float = Field(
        default=7200.0, validation_alias="KEYFENCE_LEASE_DURATION"
    )  # 2 hours
    default_acquisition_timeout: float = Field(
        default=30.0, validation_alias="KEYFENCE_ACQUISITION_TIMEOUT"
    )
    # Upper bound on wall-clock drift between hosts, in seconds
    max_clock_skew: float = Field(default=0.5, validation_alias="KEYFENCE_MAX_CLOCK_SKEW")

    # Single-flight coordinator
    coordinator_acquisition_timeout: float = Field(
        default=2.0, validation_alias="KEYFENCE_COORDINATOR_ACQUISITION_TIMEOUT"
    )
    coordinator_key_prefix: str = Field(
        default="Mutex-", validation_alias="KEYFENCE_COORDINATOR_KEY_PREFIX"
    )

    # Tag index
    tag_cleanup_probability: float = Field(
        default=0.05, ge=0.0, le=1.0, validation_alias="KEYFENCE_TAG_CLEANUP_PROBABILITY"
    )

    # Observability
    log_level: str = "INFO"
    log_json: bool = Field(default=True, validation_alias="KEYFENCE_LOG_JSON")
    enable_tracing: bool = Field(default=True, validation_alias="ENABLE_TRACING")
    otlp_endpoint: str | None = Field(default=None, validation_alias="OTLP_ENDPOINT")
    enable_metrics: bool = Field(default=True, validation_alias="ENABLE_METRICS")


settings = Settings()
