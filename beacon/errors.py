"""Pipeline error taxonomy. None of these ever reach a producer calling record()."""


class PipelineError(Exception):
    """Base class for telemetry pipeline errors."""


class ConfigError(PipelineError):
    """Invalid configuration. Raised at construction time only."""


class OptedOutError(PipelineError):
    """The opt-out gate is active. Callers treat this as a silent no-op."""


class EncodingError(PipelineError):
    """Payload or context cannot be represented on the wire. The entry is dropped."""


class CapacityExceededError(PipelineError):
    """Queue is full and holds no PENDING entry that could be evicted."""


class TransportError(PipelineError):
    """Base for failures reported by a transport."""


class TransientTransportError(TransportError):
    """Network error, timeout or 5xx. Retried with backoff."""

    def __init__(self, status_code: int | None = None, reason: str = "") -> None:
        self.status_code = status_code
        self.reason = reason
        super().__init__(reason or f"transient failure (status={status_code})")


class PermanentTransportError(TransportError):
    """Server rejected the request (4xx). Never retried."""

    def __init__(self, error_code: str, status_code: int | None = None) -> None:
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(f"permanent failure {error_code} (status={status_code})")
