"""EventQueue: ordered, persisted buffer of pending events.

Entries are kept in id order. Every mutation is applied in memory first and
then persisted, so a reload never loses an entry whose enqueue() returned.
"""

import logging
import random
import time
from typing import Any, Callable, Iterable, Mapping

from beacon.errors import CapacityExceededError, EncodingError, OptedOutError
from beacon.gate import OptOutGate
from beacon.models import (
    Batch,
    Completion,
    Diagnostics,
    EntryHandle,
    EntryState,
    Event,
    QueueEntry,
)
from beacon.serializer import to_plain, validate
from beacon.state import PersistedState, StateStore

logger = logging.getLogger(__name__)


def compute_backoff(
    attempts: int,
    base: float = 1.0,
    max_delay: float = 60.0,
    jitter: float = 0.3,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff with jitter. attempts is the number already made (>= 1)."""
    exponent = max(0, attempts - 1)
    delay = min(base * (2**exponent), max_delay)
    spread = (rng or random).uniform(0, delay * jitter) if jitter > 0 else 0.0
    return delay + spread


class EventQueue:
    """FIFO queue of QueueEntry with size/linger flush policy and bounded capacity."""

    def __init__(
        self,
        gate: OptOutGate,
        state_store: StateStore,
        *,
        max_entries: int = 500,
        max_attempts: int = 5,
        flush_threshold: int = 10,
        linger: float = 2.0,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        backoff_jitter: float = 0.3,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self._gate = gate
        self._state_store = state_store
        self._max_entries = max_entries
        self._max_attempts = max_attempts
        self._flush_threshold = flush_threshold
        self._linger = linger
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._backoff_jitter = backoff_jitter
        self._clock = clock
        self._rng = rng or random.Random()
        self._entries: dict[int, QueueEntry] = {}
        self._sequence = 0
        self.diagnostics = Diagnostics()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def sequence_counter(self) -> int:
        return self._sequence

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, entry_id: int) -> QueueEntry | None:
        return self._entries.get(entry_id)

    def entries(self) -> list[QueueEntry]:
        """Snapshot of all live entries in id order."""
        return list(self._entries.values())

    def pending_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.state is EntryState.PENDING)

    def in_flight_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.state is EntryState.IN_FLIGHT)

    def restore(self, state: PersistedState) -> None:
        """Rebuild from a persisted snapshot. In-flight entries come back as pending."""
        self._entries = {}
        recovered = 0
        for entry in sorted(state.entries, key=lambda e: e.id):
            if entry.state in (EntryState.DONE, EntryState.DROPPED):
                continue
            if entry.state is EntryState.IN_FLIGHT:
                entry.state = EntryState.PENDING
                recovered += 1
            self._entries[entry.id] = entry
        self._sequence = max(state.sequence_counter, max(self._entries, default=0))
        if recovered:
            logger.info("recovered %d in-flight entries as pending", recovered)
        logger.info(
            "queue restored: %d entries, sequence=%d", len(self._entries), self._sequence
        )

    async def enqueue(
        self,
        collection: str,
        payload: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
        *,
        created_at: float | None = None,
    ) -> EntryHandle:
        """Create a PENDING entry and persist it.

        Raises OptedOutError while gated and EncodingError (counted as an
        `encoding` drop) when payload or context has no wire form. If the write
        fails the queue is left exactly as it was and the error propagates.
        """
        if self._gate.is_opted_out():
            raise OptedOutError("opt-out gate is active")
        payload = payload or {}
        context = context or {}
        try:
            validate(payload, "payload")
            validate(context, "context")
        except EncodingError:
            self.diagnostics.count_drop("encoding")
            raise

        snapshot, sequence = dict(self._entries), self._sequence
        victims = self._evict_for_capacity() if len(self._entries) >= self._max_entries else []
        self._sequence += 1
        now = self._clock()
        event = Event(
            id=self._sequence,
            collection=str(collection),
            payload=to_plain(payload),
            context=to_plain(context),
            created_at=now if created_at is None else created_at,
        )
        self._entries[event.id] = QueueEntry(event=event, next_eligible_at=now)
        try:
            await self._persist()
        except Exception:
            for entry in victims:
                entry.state = EntryState.PENDING
            self._entries, self._sequence = snapshot, sequence
            raise

        self.diagnostics.enqueued += 1
        if victims:
            self.diagnostics.evicted += len(victims)
            self.diagnostics.count_drop("capacity", len(victims))
            logger.warning(
                "queue full, evicted %d oldest pending entries (first id=%d)",
                len(victims),
                victims[0].id,
            )
        return EntryHandle(id=event.id, collection=event.collection, created_at=event.created_at)

    def _evict_for_capacity(self) -> list[QueueEntry]:
        """Remove oldest PENDING entries until there is room for one more."""
        excess = len(self._entries) - self._max_entries + 1
        victims = [e for e in self._entries.values() if e.state is EntryState.PENDING][:excess]
        if len(victims) < excess:
            raise CapacityExceededError(
                f"queue at capacity ({self._max_entries}) with no evictable entries"
            )
        for entry in victims:
            entry.state = EntryState.DROPPED
            del self._entries[entry.id]
        return victims

    def _eligible(self, now: float) -> list[QueueEntry]:
        return [
            e
            for e in self._entries.values()
            if e.state is EntryState.PENDING and e.next_eligible_at <= now
        ]

    def next_batch(self, max_size: int) -> Batch:
        """Take up to max_size eligible PENDING entries in id order and mark them IN_FLIGHT."""
        if self._gate.is_opted_out() or max_size < 1:
            return Batch()
        selected = self._eligible(self._clock())[:max_size]
        for entry in selected:
            entry.state = EntryState.IN_FLIGHT
        return Batch(entries=selected)

    async def begin_attempt(self, batch: Batch) -> None:
        """Attempt start: count one attempt per entry and persist.

        The count only stands once it is stored; a failed write undoes it.
        """
        for entry in batch:
            if entry.state is not EntryState.IN_FLIGHT:
                raise ValueError(f"entry {entry.id} is not in flight")
        for entry in batch:
            entry.attempts += 1
        try:
            await self._persist()
        except Exception:
            for entry in batch:
                entry.attempts -= 1
            raise

    def release(self, batch: Batch, *, backoff: bool = False) -> None:
        """Return borrowed entries to PENDING without counting an attempt.

        With backoff=True the entries also wait out the delay their next
        attempt would get, so a failing attempt cannot spin.
        """
        now = self._clock()
        for entry in batch:
            if entry.state is EntryState.IN_FLIGHT and entry.id in self._entries:
                entry.state = EntryState.PENDING
                if backoff:
                    entry.next_eligible_at = now + self._backoff_delay(entry.attempts + 1)
                self.diagnostics.released += 1

    def _backoff_delay(self, attempts: int) -> float:
        return compute_backoff(
            attempts,
            base=self._backoff_base,
            max_delay=self._backoff_max,
            jitter=self._backoff_jitter,
            rng=self._rng,
        )

    async def complete(self, entry_id: int, completion: Completion, *, reason: str = "") -> None:
        """Route the result of one attempt for one entry."""
        await self.complete_many([entry_id], completion, reason=reason)

    async def complete_many(
        self, entry_ids: Iterable[int], completion: Completion, *, reason: str = ""
    ) -> None:
        """Apply one completion to several entries, then persist once."""
        changed = False
        now = self._clock()
        for entry_id in entry_ids:
            entry = self._entries.get(entry_id)
            if entry is None or entry.state is not EntryState.IN_FLIGHT:
                logger.warning("complete(%s) for entry %s that is not in flight", completion, entry_id)
                continue
            changed = True
            if completion is Completion.ACK:
                entry.state = EntryState.DONE
                del self._entries[entry_id]
                self.diagnostics.acknowledged += 1
            elif completion is Completion.RETRY and entry.attempts < self._max_attempts:
                delay = self._backoff_delay(entry.attempts)
                entry.next_eligible_at = now + delay
                entry.state = EntryState.PENDING
                self.diagnostics.retried += 1
                logger.debug(
                    "entry %d retry in %.2fs (attempt %d/%d)",
                    entry_id,
                    delay,
                    entry.attempts,
                    self._max_attempts,
                )
            else:
                if completion is Completion.RETRY:
                    drop_reason = "retry_ceiling"
                    logger.warning(
                        "entry %d dropped after %d attempts", entry_id, entry.attempts
                    )
                else:
                    drop_reason = reason or "explicit"
                entry.state = EntryState.DROPPED
                del self._entries[entry_id]
                self.diagnostics.count_drop(drop_reason)
        if changed:
            await self._persist()

    def flush_due(self, now: float | None = None) -> bool:
        """True when the size threshold is reached or the oldest eligible entry lingered too long."""
        if self._gate.is_opted_out():
            return False
        now = self._clock() if now is None else now
        eligible = self._eligible(now)
        if not eligible:
            return False
        if len(eligible) >= self._flush_threshold:
            return True
        oldest = min(e.event.created_at for e in eligible)
        return now - oldest >= self._linger

    def next_wakeup(self, now: float | None = None) -> float | None:
        """Earliest time at which flush_due() can turn true without new input."""
        now = self._clock() if now is None else now
        candidates: list[float] = []
        for entry in self._entries.values():
            if entry.state is not EntryState.PENDING:
                continue
            candidates.append(max(entry.next_eligible_at, entry.event.created_at + self._linger))
        if not candidates:
            return None
        return min(candidates)

    async def persist(self) -> None:
        await self._persist()

    async def _persist(self) -> None:
        await self._state_store.save_queue(self._entries.values(), self._sequence)
