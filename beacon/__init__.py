"""beacon: durable client-side telemetry pipeline (queue, pooled dispatch, opt-out gate)."""

from beacon.context import ContextProvider, LocationProvider, StaticContextProvider
from beacon.models import Collection, Event
from beacon.pipeline import (
    CLIENT_VERSION,
    LifecycleState,
    PipelineContext,
    TelemetryPipeline,
    build_pipeline,
)

__version__ = CLIENT_VERSION

__all__ = [
    "Collection",
    "ContextProvider",
    "Event",
    "LifecycleState",
    "LocationProvider",
    "PipelineContext",
    "StaticContextProvider",
    "TelemetryPipeline",
    "build_pipeline",
]
