"""Pipeline facade: the public entry point producers call.

PipelineContext is the single per-session object that owns the store, gate,
queue, transport and endpoints. TelemetryPipeline wires them together, runs the
pump loop and exposes the session lifecycle (boot, teardown).
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from beacon.config import BeaconConfig, StorageConfig
from beacon.context import ContextProvider, LocationProvider, StaticContextProvider
from beacon.errors import CapacityExceededError, EncodingError, OptedOutError
from beacon.gate import OptOutGate, do_not_track_requested
from beacon.models import Collection
from beacon.pool import DispatchPool
from beacon.queue import EventQueue
from beacon.serializer import to_plain, validate
from beacon.state import PersistedState, StateStore
from beacon.storage import KeyValueStore, MemoryStore, SQLiteStore
from beacon.tracking import PageTracker
from beacon.transport import (
    Endpoint,
    HttpTransport,
    Ok,
    SendResult,
    TransientFailure,
    Transport,
    result_from_error,
)

logger = logging.getLogger(__name__)

CLIENT_VERSION = "1.0.0"
CLIENT_DISTRIBUTION = "py-client"

_MIN_SLEEP = 0.01


class LifecycleState(Enum):
    """Opt-out is an orthogonal flag, not a lifecycle state."""

    UNINITIALIZED = "uninitialized"
    BOOTING = "booting"
    ACTIVE = "active"
    CLOSED = "closed"


def build_store(cfg: StorageConfig, project_root: Path | None = None) -> KeyValueStore:
    """Create the durable store named in the storage config."""
    if cfg.backend == "memory":
        return MemoryStore()
    db_path = Path(cfg.db_path)
    if project_root is not None and not db_path.is_absolute():
        db_path = project_root / db_path
    return SQLiteStore(db_path, busy_timeout=cfg.busy_timeout)


@dataclass
class PipelineContext:
    """Per-session wiring. Constructed once, before boot, and passed to the facade."""

    config: BeaconConfig
    state_store: StateStore
    gate: OptOutGate
    queue: EventQueue
    transport: Transport
    events_endpoint: Endpoint
    ping_endpoint: Endpoint
    context_provider: ContextProvider
    session_id: str
    clock: Callable[[], float] = time.time

    @classmethod
    def build(
        cls,
        config: BeaconConfig,
        *,
        store: KeyValueStore | None = None,
        transport: Transport | None = None,
        context_provider: ContextProvider | None = None,
        api_key: str | None = None,
        project_root: Path | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> "PipelineContext":
        p = config.pipeline
        t = config.transport
        state_store = StateStore(
            store if store is not None else build_store(config.storage, project_root),
            namespace=config.storage.namespace,
        )
        gate = OptOutGate(state_store)
        queue = EventQueue(
            gate,
            state_store,
            max_entries=p.max_entries,
            max_attempts=p.max_attempts,
            flush_threshold=p.flush_threshold,
            linger=p.linger_ms / 1000.0,
            backoff_base=p.backoff_base_ms / 1000.0,
            backoff_max=p.backoff_max_ms / 1000.0,
            backoff_jitter=p.backoff_jitter,
            clock=clock,
            rng=rng,
        )
        key = api_key or t.api_key
        return cls(
            config=config,
            state_store=state_store,
            gate=gate,
            queue=queue,
            transport=transport or HttpTransport(timeout=t.request_timeout),
            events_endpoint=Endpoint(
                url=t.url(t.events_path),
                api_key=key,
                headers=dict(t.headers),
                correlation_header=t.correlation_header,
            ),
            ping_endpoint=Endpoint(url=t.url(t.ping_path), api_key=key, headers=dict(t.headers)),
            context_provider=context_provider or StaticContextProvider(),
            session_id=uuid.uuid4().hex,
            clock=clock,
        )


class TelemetryPipeline:
    """record/ping/boot/flush/teardown. Never raises into the producer."""

    def __init__(self, context: PipelineContext) -> None:
        self._ctx = context
        cfg = context.config
        self._state = LifecycleState.UNINITIALIZED
        self._degraded = False
        self._restored = False
        self._boot_completed_at: float | None = None
        self._early: list[tuple[str, dict[str, Any], dict[str, Any], float]] = []
        self._pending_opt_out: bool | None = None
        self._wake = asyncio.Event()
        self._pump_task: asyncio.Task[None] | None = None
        self._tracker: PageTracker | None = None
        self._pool = DispatchPool(
            context.queue,
            context.gate,
            context.transport,
            context.events_endpoint,
            max_concurrent=cfg.pipeline.max_concurrent,
            max_batch_size=cfg.pipeline.max_batch_size,
            request_timeout=cfg.transport.request_timeout,
            correlation_id=context.session_id,
            on_settled=self._wake.set,
        )
        context.gate.add_listener(self._on_gate_change)

    @property
    def context(self) -> PipelineContext:
        return self._ctx

    @property
    def pool(self) -> DispatchPool:
        return self._pool

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def degraded(self) -> bool:
        """True when the boot ping failed; delivery still proceeds."""
        return self._degraded

    @property
    def tracker(self) -> PageTracker | None:
        return self._tracker

    # -- Lifecycle -- #

    async def boot(self) -> None:
        """Restore persisted state, probe the service, become ACTIVE and start delivery."""
        if self._state is not LifecycleState.UNINITIALIZED:
            logger.warning("boot() called while %s; ignoring", self._state.value)
            return
        self._state = LifecycleState.BOOTING
        ctx = self._ctx

        try:
            persisted = await ctx.state_store.load()
        except Exception:
            logger.exception("could not read persisted telemetry state; starting empty")
            persisted = PersistedState()
        ctx.gate.restore(persisted.opted_out)
        ctx.queue.restore(persisted)
        self._restored = True

        if ctx.config.gate.respect_do_not_track and do_not_track_requested():
            logger.info("DO_NOT_TRACK is set; opting out of telemetry")
            await self.set_opted_out(True)
        if self._pending_opt_out is not None:
            flag, self._pending_opt_out = self._pending_opt_out, None
            await self.set_opted_out(flag)
        await self._drain_early()

        self._pump_task = asyncio.create_task(self._pump_loop())

        if ctx.gate.is_opted_out():
            logger.warning("User opted out of telemetry, skipping initial ping.")
        else:
            logger.info("Sending initial telemetry ping...")
            result = await self.ping()
            if isinstance(result, Ok):
                logger.info(
                    "Telemetry service is online. Ping latency: %.0fms.", result.latency_ms
                )
            else:
                self._degraded = True
                logger.warning(
                    "Telemetry ping failed (%s); continuing in degraded mode", result
                )

        self._state = LifecycleState.ACTIVE
        self._boot_completed_at = ctx.clock()
        try:
            await ctx.state_store.save_boot_completed(self._boot_completed_at)
        except Exception:
            logger.exception("could not persist boot timestamp")

        if ctx.config.pipeline.send_initial_events and not ctx.gate.is_opted_out():
            await self.record(
                Collection.LIBRARY,
                {"distribution": CLIENT_DISTRIBUTION, "version": CLIENT_VERSION},
            )
        self._start_tracking()
        self._wake.set()
        logger.info(
            "Telemetry pipeline active (session=%s, pending=%d)",
            ctx.session_id,
            len(ctx.queue),
        )

    async def teardown(self, timeout: float = 5.0) -> None:
        """Stop the pump, flush what can be flushed, close transport and store. Idempotent."""
        if self._state is LifecycleState.CLOSED:
            return
        was_active = self._state is LifecycleState.ACTIVE
        if self._tracker:
            await self._tracker.stop()
        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        if was_active:
            try:
                await asyncio.wait_for(self.flush(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "flush on teardown timed out; %d entries stay persisted",
                    len(self._ctx.queue),
                )
        await self._pool.wait_idle()
        self._state = LifecycleState.CLOSED

        if self._early:
            logger.warning(
                "teardown before boot: %d buffered events not persisted", len(self._early)
            )
            self._early.clear()
        if self._restored:
            try:
                await self._ctx.queue.persist()
            except Exception:
                logger.exception("final state write failed")
        try:
            await self._ctx.transport.close()
        finally:
            await self._ctx.state_store.close()
        logger.info("Telemetry pipeline closed: %s", self._ctx.queue.diagnostics.to_dict())

    # -- Producer API -- #

    async def record(
        self,
        collection: str,
        payload: Mapping[str, Any] | None = None,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        """Queue one event. Returns once it is persisted; never raises."""
        if self.is_opted_out():
            self._ctx.queue.diagnostics.ignored += 1
            return
        if self._state is LifecycleState.CLOSED:
            logger.warning("record(%s) after teardown ignored", collection)
            return
        if not collection:
            logger.warning("record() without a collection ignored")
            return
        queue = self._ctx.queue
        try:
            snapshot = dict(context if context is not None else self._ctx.context_provider.snapshot())
            data = dict(payload or {})
            if not self._restored:
                # Held until boot; copied now so later producer mutations do not leak in.
                validate(data, "payload")
                validate(snapshot, "context")
                self._early.append(
                    (str(collection), to_plain(data), to_plain(snapshot), self._ctx.clock())
                )
                return
            await queue.enqueue(collection, data, snapshot)
        except OptedOutError:
            queue.diagnostics.ignored += 1
            return
        except EncodingError as e:
            if not self._restored:
                queue.diagnostics.count_drop("encoding")
            logger.warning("event %s dropped: %s", collection, e)
            return
        except CapacityExceededError as e:
            logger.warning("event %s not queued: %s", collection, e)
            queue.diagnostics.count_drop("capacity")
            return
        except Exception:
            logger.exception("record(%s) failed", collection)
            return

        if self._state is LifecycleState.ACTIVE and queue.flush_due():
            self.pump()
        else:
            self._wake.set()

    async def ping(self) -> SendResult | None:
        """Liveness probe. None while opted out."""
        if self.is_opted_out():
            return None
        ctx = self._ctx
        try:
            return await asyncio.wait_for(
                ctx.transport.ping(ctx.ping_endpoint),
                timeout=ctx.config.transport.request_timeout,
            )
        except asyncio.TimeoutError:
            return TransientFailure(None, "timeout")
        except Exception as e:
            logger.warning("ping raised: %s", e)
            return result_from_error(e)

    def is_opted_out(self) -> bool:
        if not self._restored and self._pending_opt_out is not None:
            return self._pending_opt_out
        return self._ctx.gate.is_opted_out()

    async def set_opted_out(self, opted_out: bool) -> None:
        """Before boot the choice is held and applied once persisted state is restored."""
        if not self._restored:
            self._pending_opt_out = bool(opted_out)
            return
        try:
            await self._ctx.gate.set_opted_out(opted_out)
        except Exception:
            logger.exception("could not persist opt-out flag")

    # -- Delivery -- #

    def pump(self) -> int:
        """One drive cycle. Returns batches launched."""
        if self._state is not LifecycleState.ACTIVE or self._ctx.gate.is_opted_out():
            return 0
        return self._pool.drive()

    async def flush(self) -> int:
        """Send every eligible entry now, ignoring linger. Returns batches launched."""
        if self._state is not LifecycleState.ACTIVE:
            return 0
        total = 0
        while not self._ctx.gate.is_opted_out():
            launched = self._pool.drive(force=True)
            total += launched
            if not launched and not self._pool.in_flight:
                break
            await self._pool.wait_idle()
        return total

    def diagnostics(self) -> dict[str, Any]:
        queue = self._ctx.queue
        return {
            "lifecycle": self._state.value,
            "degraded": self._degraded,
            "opted_out": self.is_opted_out(),
            "session_id": self._ctx.session_id,
            "boot_completed_at": self._boot_completed_at,
            "pending": queue.pending_count(),
            "in_flight": queue.in_flight_count(),
            "permits_available": self._pool.available,
            **queue.diagnostics.to_dict(),
        }

    async def _drain_early(self) -> None:
        early, self._early = self._early, []
        for collection, payload, snapshot, created_at in early:
            try:
                await self._ctx.queue.enqueue(collection, payload, snapshot, created_at=created_at)
            except OptedOutError:
                self._ctx.queue.diagnostics.ignored += 1
            except EncodingError as e:
                logger.warning("buffered event %s dropped: %s", collection, e)
            except CapacityExceededError as e:
                logger.warning("buffered event %s not queued: %s", collection, e)
                self._ctx.queue.diagnostics.count_drop("capacity")
            except Exception:
                logger.exception("buffered event %s could not be queued", collection)
        if early:
            logger.info("queued %d events recorded before boot", len(early))

    def _next_timeout(self) -> float:
        poll = self._ctx.config.pipeline.poll_interval
        if self._ctx.gate.is_opted_out() or not self._pool.available:
            return poll
        wake_at = self._ctx.queue.next_wakeup()
        if wake_at is None:
            return poll
        return min(poll, max(_MIN_SLEEP, wake_at - self._ctx.clock()))

    async def _pump_loop(self) -> None:
        """Wait for work or the next linger/backoff deadline, then drive the pool."""
        while self._state is not LifecycleState.CLOSED:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._next_timeout())
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._state is LifecycleState.CLOSED:
                break
            try:
                self.pump()
            except Exception:
                logger.exception("pump cycle failed")

    def _on_gate_change(self, opted_out: bool) -> None:
        if not opted_out:
            self._wake.set()

    def _start_tracking(self) -> None:
        tracking = self._ctx.config.tracking
        if not tracking.enabled:
            return
        provider = self._ctx.context_provider
        if not isinstance(provider, LocationProvider):
            logger.info("page tracking enabled but context provider reports no location")
            return
        self._tracker = PageTracker(self, provider, interval=tracking.interval_ms / 1000.0)
        self._tracker.start()


def build_pipeline(
    settings: dict[str, Any],
    *,
    project_root: Path | None = None,
    api_key: str | None = None,
    store: KeyValueStore | None = None,
    transport: Transport | None = None,
    context_provider: ContextProvider | None = None,
    clock: Callable[[], float] = time.time,
    rng: random.Random | None = None,
) -> TelemetryPipeline:
    """Validate settings and assemble a pipeline. Raises ConfigError on bad settings."""
    config = BeaconConfig.from_settings(settings)
    context = PipelineContext.build(
        config,
        store=store,
        transport=transport,
        context_provider=context_provider,
        api_key=api_key,
        project_root=project_root,
        clock=clock,
        rng=rng,
    )
    return TelemetryPipeline(context)
