"""End-to-end tests for TelemetryPipeline: boot, record, delivery, opt-out, reload, teardown."""

import asyncio
import random
from pathlib import Path
from typing import Any, Callable

import pytest

from beacon.context import StaticContextProvider
from beacon.errors import ConfigError
from beacon.models import Collection
from beacon.pipeline import (
    CLIENT_DISTRIBUTION,
    LifecycleState,
    TelemetryPipeline,
    build_pipeline,
)
from beacon.state import StateStore
from beacon.storage import KeyValueStore, MemoryStore, SQLiteStore
from beacon.transport import PermanentFailure, TransientFailure

from conftest import FakeClock, FakeTransport, make_settings


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate on the event loop until it holds or timeout elapses."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def _pipeline(
    transport: FakeTransport,
    clock: FakeClock,
    *,
    store: KeyValueStore | None = None,
    context_provider: Any = None,
    **sections: dict[str, Any],
) -> TelemetryPipeline:
    return build_pipeline(
        make_settings(**sections),
        store=store if store is not None else MemoryStore(),
        transport=transport,
        context_provider=context_provider,
        clock=clock,
        rng=random.Random(0),
    )


class BrokenStore(MemoryStore):
    """Reads work, every write fails."""

    async def set_many(self, values: dict[str, str]) -> None:
        raise OSError("disk full")


class TestDelivery:
    @pytest.mark.asyncio
    async def test_size_threshold_sends_one_batch(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(
            transport, clock, pipeline={"flush_threshold": 2, "linger_ms": 5000}
        )
        await pipeline.boot()
        for i in range(3):
            await pipeline.record("EVENT", {"n": i})
        await pipeline.pool.wait_idle()
        await asyncio.sleep(0.15)

        assert transport.sent_ids() == [1, 2]
        assert pipeline.context.queue.pending_count() == 1
        await pipeline.teardown()
        assert transport.sent_ids() == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_linger_sends_partial_batch(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(
            transport, clock, pipeline={"flush_threshold": 10, "linger_ms": 2000}
        )
        await pipeline.boot()
        await pipeline.record("EVENT")
        await asyncio.sleep(0.1)
        assert transport.calls == 0

        clock.advance(2.0)
        await wait_until(lambda: transport.calls == 1)
        await pipeline.teardown()
        assert transport.sent_ids() == [1]

    @pytest.mark.asyncio
    async def test_transient_failure_retried_until_delivered(self, clock: FakeClock) -> None:
        transport = FakeTransport([TransientFailure(503, "HTTP 503")])
        pipeline = _pipeline(transport, clock, pipeline={"flush_threshold": 1})
        await pipeline.boot()
        await pipeline.record("EVENT")
        queue = pipeline.context.queue
        await wait_until(lambda: queue.diagnostics.retried == 1)
        assert queue.get(1).attempts == 1

        clock.advance(1.0)
        await wait_until(lambda: len(queue) == 0)
        assert transport.sent_ids() == [1, 1]
        assert queue.diagnostics.acknowledged == 1
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_permanent_failure_drops_after_one_attempt(self, clock: FakeClock) -> None:
        transport = FakeTransport([PermanentFailure("INVALID_PAYLOAD", 400)])
        pipeline = _pipeline(transport, clock, pipeline={"flush_threshold": 1})
        await pipeline.boot()
        await pipeline.record("EVENT")
        queue = pipeline.context.queue
        await wait_until(lambda: len(queue) == 0)
        clock.advance(120.0)
        await asyncio.sleep(0.1)

        assert transport.calls == 1
        assert pipeline.diagnostics()["dropped"] == {"permanent": 1}
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_retry_ceiling_bounds_attempts(self, clock: FakeClock) -> None:
        transport = FakeTransport([TransientFailure(500, "HTTP 500")] * 10)
        pipeline = _pipeline(
            transport, clock, pipeline={"flush_threshold": 1, "max_attempts": 3}
        )
        await pipeline.boot()
        await pipeline.record("EVENT")
        queue = pipeline.context.queue
        for _ in range(5):
            clock.advance(60.0)
            await asyncio.sleep(0.1)
        await wait_until(lambda: len(queue) == 0)
        assert transport.calls == 3
        assert queue.diagnostics.dropped == {"retry_ceiling": 1}
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_events_carry_context_and_session(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(
            transport,
            clock,
            context_provider=StaticContextProvider({"locale": "en-US"}),
            transport={"correlation_header": "X-Beacon-Context"},
        )
        await pipeline.boot()
        await pipeline.record(Collection.PAGEVIEW, {"location": "/menu"})
        await pipeline.record("EVENT", {}, context={"override": True})
        await pipeline.teardown()

        first, second = transport.sent[0]
        assert first.collection == "PAGEVIEW"
        assert first.context == {"locale": "en-US"}
        assert second.context == {"override": True}
        assert transport.correlation_ids == [pipeline.context.session_id]


class TestOptOut:
    @pytest.mark.asyncio
    async def test_opt_out_halts_and_resumes_delivery(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(
            transport, clock, pipeline={"flush_threshold": 10, "linger_ms": 2000}
        )
        await pipeline.boot()
        for i in range(5):
            await pipeline.record("EVENT", {"n": i})
        await pipeline.set_opted_out(True)

        clock.advance(10.0)
        assert await pipeline.flush() == 0
        assert pipeline.pump() == 0
        await asyncio.sleep(0.1)
        await pipeline.record("EVENT")
        assert transport.calls == 0
        assert pipeline.context.queue.pending_count() == 5
        assert pipeline.diagnostics()["ignored"] == 1

        await pipeline.set_opted_out(False)
        await wait_until(lambda: len(pipeline.context.queue) == 0)
        assert transport.sent_ids() == [1, 2, 3, 4, 5]
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_opt_out_is_idempotent(self, transport: FakeTransport, clock: FakeClock) -> None:
        pipeline = _pipeline(transport, clock)
        await pipeline.boot()
        states = pipeline.context.state_store
        await pipeline.set_opted_out(True)
        writes = states.writes
        await pipeline.set_opted_out(True)
        assert states.writes == writes
        assert pipeline.is_opted_out() is True
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_opt_out_persists_across_sessions(self, clock: FakeClock) -> None:
        store = MemoryStore()
        first = FakeTransport()
        pipeline = _pipeline(first, clock, store=store)
        await pipeline.boot()
        await pipeline.set_opted_out(True)
        await pipeline.teardown()

        second = FakeTransport()
        pipeline = _pipeline(second, clock, store=store)
        await pipeline.boot()
        assert pipeline.is_opted_out() is True
        assert second.pings == 0
        assert await pipeline.ping() is None
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_do_not_track_at_boot(
        self, transport: FakeTransport, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("DO_NOT_TRACK", "1")
        pipeline = _pipeline(
            transport,
            clock,
            gate={"respect_do_not_track": True},
            pipeline={"send_initial_events": True, "flush_threshold": 1},
        )
        await pipeline.boot()
        await pipeline.record("EVENT")
        await pipeline.teardown()
        assert pipeline.is_opted_out() is True
        assert transport.pings == 0
        assert transport.calls == 0

    @pytest.mark.asyncio
    async def test_explicit_choice_before_boot_wins_over_signal(
        self, transport: FakeTransport, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("DO_NOT_TRACK", "1")
        pipeline = _pipeline(transport, clock, gate={"respect_do_not_track": True})
        await pipeline.set_opted_out(False)
        await pipeline.boot()
        assert pipeline.is_opted_out() is False
        assert transport.pings == 1
        await pipeline.teardown()


class TestBoot:
    @pytest.mark.asyncio
    async def test_boot_pings_and_records_library_event(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(
            transport, clock, pipeline={"send_initial_events": True, "flush_threshold": 1}
        )
        await pipeline.boot()
        assert pipeline.state is LifecycleState.ACTIVE
        assert pipeline.degraded is False
        assert transport.pings == 1
        await wait_until(lambda: transport.calls == 1)

        event = transport.sent[0][0]
        assert event.collection == Collection.LIBRARY
        assert event.payload["distribution"] == CLIENT_DISTRIBUTION
        assert pipeline.diagnostics()["boot_completed_at"] == clock.now
        await pipeline.teardown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "ping_result",
        [TransientFailure(503, "HTTP 503"), PermanentFailure("HTTP_403", 403), RuntimeError("dns")],
    )
    async def test_failed_ping_boots_degraded(self, clock: FakeClock, ping_result) -> None:
        transport = FakeTransport(ping_result=ping_result)
        pipeline = _pipeline(transport, clock, pipeline={"flush_threshold": 1})
        await pipeline.boot()
        assert pipeline.state is LifecycleState.ACTIVE
        assert pipeline.degraded is True

        await pipeline.record("EVENT")
        await wait_until(lambda: transport.calls == 1)
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_records_before_boot_are_queued_at_boot(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(transport, clock, pipeline={"flush_threshold": 1})
        created = clock.now
        await pipeline.record("EVENT", {"early": True})
        assert len(pipeline.context.queue) == 0

        clock.advance(3.0)
        await pipeline.boot()
        await wait_until(lambda: transport.calls == 1)
        event = transport.sent[0][0]
        assert event.payload == {"early": True}
        assert event.created_at == created
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_buffered_record_is_isolated_from_later_mutation(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(transport, clock, pipeline={"flush_threshold": 1})
        payload = {"tags": ["a"], "meta": {"k": 1}}
        await pipeline.record("EVENT", payload)
        payload["tags"].append("b")
        payload["meta"]["k"] = 2

        await pipeline.boot()
        await wait_until(lambda: transport.calls == 1)
        assert transport.sent[0][0].payload == {"tags": ["a"], "meta": {"k": 1}}
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_opt_out_before_boot_suppresses_buffered_events(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        store = MemoryStore()
        pipeline = _pipeline(transport, clock, store=store)
        await pipeline.set_opted_out(True)
        await pipeline.record("EVENT")
        await pipeline.boot()
        await pipeline.teardown()

        assert transport.calls == 0
        assert transport.pings == 0
        assert await store.get("beacon:opted_out") == "1"

    @pytest.mark.asyncio
    async def test_second_boot_is_ignored(self, transport: FakeTransport, clock: FakeClock) -> None:
        pipeline = _pipeline(transport, clock)
        await pipeline.boot()
        await pipeline.boot()
        assert transport.pings == 1
        await pipeline.teardown()

    def test_invalid_settings_raise_config_error(self, transport: FakeTransport, clock: FakeClock) -> None:
        with pytest.raises(ConfigError):
            _pipeline(transport, clock, pipeline={"max_concurrent": 0})
        with pytest.raises(ConfigError):
            _pipeline(transport, clock, pipeline={"backoff_base_ms": 5000, "backoff_max_ms": 10})


class TestDurability:
    @pytest.mark.asyncio
    async def test_reload_delivers_each_event_once(self, tmp_path: Path, clock: FakeClock) -> None:
        db_path = tmp_path / "beacon_state.db"
        failing = FakeTransport([TransientFailure(503, "HTTP 503")])
        pipeline = _pipeline(
            failing, clock, store=SQLiteStore(db_path), pipeline={"flush_threshold": 3}
        )
        await pipeline.boot()
        for i in range(3):
            await pipeline.record("EVENT", {"n": i})
        queue = pipeline.context.queue
        await wait_until(lambda: queue.diagnostics.retried == 3)
        await pipeline.teardown()
        assert failing.calls == 1

        persisted = StateStore(SQLiteStore(db_path))
        assert [e.attempts for e in (await persisted.load()).entries] == [1, 1, 1]
        await persisted.close()

        clock.advance(5.0)
        healthy = FakeTransport()
        reloaded = _pipeline(
            healthy, clock, store=SQLiteStore(db_path), pipeline={"flush_threshold": 3}
        )
        await reloaded.boot()
        await wait_until(lambda: healthy.calls == 1)
        await reloaded.record("EVENT")
        await reloaded.teardown()

        assert healthy.sent_ids() == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_teardown_flushes_and_is_idempotent(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(
            transport, clock, pipeline={"flush_threshold": 10, "linger_ms": 60000}
        )
        await pipeline.boot()
        for _ in range(3):
            await pipeline.record("EVENT")
        assert transport.calls == 0

        await pipeline.teardown()
        await pipeline.teardown()
        assert pipeline.state is LifecycleState.CLOSED
        assert transport.sent_ids() == [1, 2, 3]
        assert transport.closed is True

    @pytest.mark.asyncio
    async def test_concurrency_bound_holds_under_load(self, clock: FakeClock) -> None:
        transport = FakeTransport()
        transport.hold = asyncio.Event()
        pipeline = _pipeline(
            transport,
            clock,
            pipeline={"flush_threshold": 1, "max_batch_size": 1, "max_concurrent": 2},
        )
        await pipeline.boot()
        for _ in range(6):
            await pipeline.record("EVENT")
        await asyncio.sleep(0.1)
        assert transport.active == 2
        transport.hold.set()
        await wait_until(lambda: len(pipeline.context.queue) == 0)
        assert transport.max_active == 2
        assert sorted(transport.sent_ids()) == [1, 2, 3, 4, 5, 6]
        await pipeline.teardown()


class TestRecordNeverRaises:
    @pytest.mark.asyncio
    async def test_unencodable_payload_is_dropped_at_record(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(transport, clock, pipeline={"flush_threshold": 1})
        await pipeline.boot()
        await pipeline.record("EVENT", {"bad": float("nan")})
        await pipeline.record("EVENT", {"ok": True})
        await pipeline.teardown()
        assert transport.sent_ids() == [1]
        assert transport.sent[0][0].payload == {"ok": True}
        assert pipeline.diagnostics()["dropped"] == {"encoding": 1}

    @pytest.mark.asyncio
    async def test_unencodable_payload_does_not_block_later_writes(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        store = MemoryStore()
        pipeline = _pipeline(
            transport, clock, store=store, pipeline={"flush_threshold": 100, "linger_ms": 60_000}
        )
        await pipeline.boot()
        await pipeline.record("EVENT", {"bad": {1, 2}})
        await pipeline.record("EVENT", {"good": 1})

        loaded = await StateStore(store).load()
        assert [e.event.payload for e in loaded.entries] == [{"good": 1}]
        assert pipeline.diagnostics()["dropped"] == {"encoding": 1}
        await pipeline.teardown()
        assert transport.sent_ids() == [1]

    @pytest.mark.asyncio
    async def test_unencodable_payload_before_boot_is_dropped(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(transport, clock, pipeline={"flush_threshold": 1})
        await pipeline.record("EVENT", {"bad": {1, 2}})
        await pipeline.record("EVENT", {"good": 1})
        await pipeline.boot()
        await wait_until(lambda: transport.calls == 1)
        await pipeline.teardown()
        assert [e.payload for e in transport.sent[0]] == [{"good": 1}]
        assert pipeline.diagnostics()["dropped"] == {"encoding": 1}

    @pytest.mark.asyncio
    async def test_storage_failure_is_swallowed(self, transport: FakeTransport, clock: FakeClock) -> None:
        pipeline = _pipeline(transport, clock, store=BrokenStore())
        await pipeline.boot()
        await pipeline.record("EVENT")
        await pipeline.set_opted_out(True)
        await pipeline.teardown()

    @pytest.mark.asyncio
    async def test_record_after_teardown_is_ignored(
        self, transport: FakeTransport, clock: FakeClock
    ) -> None:
        pipeline = _pipeline(transport, clock)
        await pipeline.boot()
        await pipeline.teardown()
        await pipeline.record("EVENT")
        await pipeline.record("")
        assert transport.calls == 0

    @pytest.mark.asyncio
    async def test_full_queue_counts_drop(self, clock: FakeClock) -> None:
        transport = FakeTransport()
        transport.hold = asyncio.Event()
        pipeline = _pipeline(
            transport,
            clock,
            pipeline={
                "flush_threshold": 1,
                "max_entries": 2,
                "max_batch_size": 1,
                "max_concurrent": 2,
            },
        )
        await pipeline.boot()
        await pipeline.record("EVENT")
        await pipeline.record("EVENT")
        await pipeline.record("EVENT")
        assert pipeline.diagnostics()["dropped"] == {"capacity": 1}
        transport.hold.set()
        await pipeline.teardown()
