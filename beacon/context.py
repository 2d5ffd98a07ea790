"""Context provider contracts. The pipeline never inspects the host runtime itself."""

from typing import Any, Mapping, Protocol, runtime_checkable


@runtime_checkable
class ContextProvider(Protocol):
    """Supplies an already-resolved context snapshot for each recorded event."""

    def snapshot(self) -> Mapping[str, Any]:
        """Return the current context. Treated as opaque, validated data."""


@runtime_checkable
class LocationProvider(Protocol):
    """Optional capability: report the current page/location for page tracking."""

    def current_location(self) -> str | None:
        """Current location, or None if unknown."""


class StaticContextProvider:
    """Fixed context values, e.g. library version and client id."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values = dict(values or {})

    def snapshot(self) -> Mapping[str, Any]:
        return dict(self._values)

    def update(self, **values: Any) -> None:
        self._values.update(values)
