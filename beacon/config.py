"""Validated pipeline configuration: Pydantic models over the settings dict."""

from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from beacon.errors import ConfigError


class PipelineConfig(BaseModel):
    """Queue, flush and retry tunables."""

    flush_threshold: int = Field(10, ge=1)
    max_batch_size: int = Field(25, ge=1)
    linger_ms: int = Field(2000, ge=0)
    max_entries: int = Field(500, ge=1)
    max_concurrent: int = Field(2, ge=1)
    max_attempts: int = Field(5, ge=1)
    backoff_base_ms: int = Field(1000, ge=0)
    backoff_max_ms: int = Field(60000, ge=0)
    backoff_jitter: float = Field(0.3, ge=0.0, le=1.0)
    poll_interval: float = Field(1.0, gt=0.0)
    send_initial_events: bool = True

    @model_validator(mode="after")
    def _check_backoff(self) -> "PipelineConfig":
        if self.backoff_max_ms < self.backoff_base_ms:
            raise ValueError("backoff_max_ms must be >= backoff_base_ms")
        return self


class TransportConfig(BaseModel):
    base_url: str = "https://telemetry.example.invalid"
    events_path: str = "/v1/events"
    ping_path: str = "/v1/ping"
    request_timeout: float = Field(10.0, gt=0.0)
    api_key_secret: str | None = "BEACON_API_KEY"
    api_key: str | None = None
    correlation_header: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    def url(self, path: str) -> str:
        return self.base_url.rstrip("/") + "/" + path.lstrip("/")


class StorageConfig(BaseModel):
    backend: Literal["sqlite", "memory"] = "sqlite"
    db_path: str = "data/beacon_state.db"
    namespace: str = "beacon"
    busy_timeout: int = Field(5000, ge=0)


class GateConfig(BaseModel):
    respect_do_not_track: bool = True


class TrackingConfig(BaseModel):
    enabled: bool = False
    interval_ms: int = Field(1500, ge=50)


class BeaconConfig(BaseModel):
    """Everything the pipeline needs, validated once at construction."""

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "BeaconConfig":
        """Validate the relevant sections of a settings dict. Raises ConfigError."""
        data = {
            key: settings.get(key) or {}
            for key in ("pipeline", "transport", "storage", "gate", "tracking")
        }
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"invalid telemetry configuration: {e}") from e
