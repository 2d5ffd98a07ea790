"""DispatchPool: bounded concurrent delivery attempts driven by a cooperative pump."""

import asyncio
import logging
from contextlib import contextmanager
from typing import Callable, Iterator

from beacon.errors import EncodingError, TransportError
from beacon.gate import OptOutGate
from beacon.models import Batch, Completion
from beacon.queue import EventQueue
from beacon.serializer import Payload, encode_batch, serialize
from beacon.transport import (
    Endpoint,
    Ok,
    PermanentFailure,
    SendResult,
    TransientFailure,
    Transport,
    result_from_error,
)

logger = logging.getLogger(__name__)


class DispatchPool:
    """Drains the queue with at most `max_concurrent` transport attempts outstanding.

    Attempt counts and backoff deadlines live on the queue entries, so a new
    pool built after a reload resumes from persisted state.
    """

    def __init__(
        self,
        queue: EventQueue,
        gate: OptOutGate,
        transport: Transport,
        endpoint: Endpoint,
        *,
        max_concurrent: int = 2,
        max_batch_size: int = 25,
        request_timeout: float = 10.0,
        correlation_id: str | None = None,
        on_settled: Callable[[], None] | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._queue = queue
        self._gate = gate
        self._transport = transport
        self._endpoint = endpoint
        self._max_concurrent = max_concurrent
        self._max_batch_size = max_batch_size
        self._request_timeout = request_timeout
        self._correlation_id = correlation_id
        self._on_settled = on_settled
        self._permits = max_concurrent
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def available(self) -> int:
        """Free permits."""
        return self._permits

    @property
    def in_flight(self) -> int:
        return self._max_concurrent - self._permits

    def drive(self, *, force: bool = False) -> int:
        """Launch attempts while permits last and a flush is due. Returns batches launched.

        Contains no await, so one drive cycle always finishes before another starts.
        """
        launched = 0
        while self._permits > 0 and not self._gate.is_opted_out():
            if not force and not self._queue.flush_due():
                break
            batch = self._queue.next_batch(self._max_batch_size)
            if not batch:
                break
            self._permits -= 1
            task = asyncio.create_task(self._run(batch))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            launched += 1
        if launched:
            logger.debug("launched %d batch(es), %d permit(s) left", launched, self._permits)
        return launched

    @contextmanager
    def _permit(self) -> Iterator[None]:
        """Hold the permit taken in drive(); give it back on every exit path."""
        try:
            yield
        finally:
            self._permits += 1

    async def _run(self, batch: Batch) -> None:
        with self._permit():
            try:
                await self._attempt(batch)
            except Exception:
                logger.exception("delivery attempt for %s crashed", batch.ids)
                self._queue.release(batch, backoff=True)
        if self._on_settled is not None:
            self._on_settled()

    async def _attempt(self, batch: Batch) -> None:
        if self._gate.is_opted_out():
            self._queue.release(batch)
            return

        payloads: list[Payload] = []
        rejected: list[int] = []
        for entry in batch:
            try:
                payloads.append(serialize(entry.event, entry.event.context))
            except EncodingError as e:
                logger.warning("dropping entry %d: %s", entry.id, e)
                rejected.append(entry.id)
        if rejected:
            await self._queue.complete_many(rejected, Completion.DROP, reason="encoding")
            batch = Batch([e for e in batch if e.id not in rejected])
        if not batch:
            return

        await self._queue.begin_attempt(batch)
        result = await self._send(encode_batch(payloads))
        await self._route(batch, result)

    async def _send(self, body: str) -> SendResult:
        try:
            return await asyncio.wait_for(
                self._transport.send(
                    body, self._endpoint, correlation_id=self._correlation_id
                ),
                timeout=self._request_timeout,
            )
        except asyncio.TimeoutError:
            return TransientFailure(None, "timeout")
        except TransportError as e:
            return result_from_error(e)
        except Exception as e:
            logger.exception("transport raised unexpectedly")
            return TransientFailure(None, str(e) or type(e).__name__)

    async def _route(self, batch: Batch, result: SendResult) -> None:
        if isinstance(result, Ok):
            logger.debug("batch %s delivered in %.1fms", batch.ids, result.latency_ms)
            await self._queue.complete_many(batch.ids, Completion.ACK)
        elif isinstance(result, PermanentFailure):
            logger.warning(
                "batch %s rejected (%s, status=%s); dropping",
                batch.ids,
                result.error_code,
                result.status_code,
            )
            await self._queue.complete_many(batch.ids, Completion.DROP, reason="permanent")
        else:
            logger.info(
                "batch %s failed transiently (status=%s %s); will retry",
                batch.ids,
                result.status_code,
                result.reason,
            )
            await self._queue.complete_many(batch.ids, Completion.RETRY)

    async def wait_idle(self) -> None:
        """Wait until no attempts are outstanding. Cancelling the waiter leaves attempts running."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))
