"""Shared fakes for pipeline tests: transport, clock, settings."""

import asyncio
from typing import Any

import pytest

from beacon.models import Event
from beacon.serializer import decode_batch
from beacon.settings import get_default_settings
from beacon.storage import MemoryStore
from beacon.transport import Endpoint, Ok, SendResult


class FakeTransport:
    """Records decoded batches. Results are consumed in order, then Ok."""

    def __init__(
        self,
        results: list[SendResult | Exception] | None = None,
        ping_result: SendResult | Exception | None = None,
    ) -> None:
        self.results = list(results or [])
        self.ping_result = ping_result if ping_result is not None else Ok(5.0)
        self.bodies: list[str] = []
        self.sent: list[list[Event]] = []
        self.correlation_ids: list[str | None] = []
        self.pings = 0
        self.closed = False
        self.hold: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    @property
    def calls(self) -> int:
        return len(self.bodies)

    def sent_ids(self) -> list[int]:
        return [e.id for batch in self.sent for e in batch]

    async def send(
        self, body: str, endpoint: Endpoint, *, correlation_id: str | None = None
    ) -> SendResult:
        self.bodies.append(body)
        self.sent.append([event for event, _ in decode_batch(body)])
        self.correlation_ids.append(correlation_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.hold is not None:
                await self.hold.wait()
            if self.results:
                result = self.results.pop(0)
                if isinstance(result, Exception):
                    raise result
                return result
            return Ok(1.0)
        finally:
            self.active -= 1

    async def ping(self, endpoint: Endpoint) -> SendResult:
        self.pings += 1
        if isinstance(self.ping_result, Exception):
            raise self.ping_result
        return self.ping_result

    async def close(self) -> None:
        self.closed = True


class FlakyStore(MemoryStore):
    """MemoryStore whose writes fail while `failing` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    async def set_many(self, values: dict[str, str]) -> None:
        if self.failing:
            raise OSError("disk full")
        await super().set_many(values)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**sections: dict[str, Any]) -> dict[str, Any]:
    """Defaults tuned for tests (memory store, quiet boot), overlaid per section."""
    settings = get_default_settings()
    settings["storage"]["backend"] = "memory"
    settings["gate"]["respect_do_not_track"] = False
    settings["pipeline"]["send_initial_events"] = False
    settings["pipeline"]["poll_interval"] = 0.05
    settings["pipeline"]["backoff_jitter"] = 0.0
    for name, values in sections.items():
        settings.setdefault(name, {}).update(values)
    return settings


@pytest.fixture(autouse=True)
def _no_do_not_track(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DO_NOT_TRACK", raising=False)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
