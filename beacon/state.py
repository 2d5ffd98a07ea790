"""PersistedState: durable snapshot of queue, sequence counter and gate flag."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from beacon.models import QueueEntry
from beacon.storage import KeyValueStore

logger = logging.getLogger(__name__)

KEY_QUEUE = "queue"
KEY_SEQUENCE = "sequence"
KEY_OPTED_OUT = "opted_out"
KEY_BOOT_COMPLETED = "boot_completed_at"


def json_dumps_compact(obj: object) -> str:
    """Serialize to JSON for storage; Unicode is stored as-is."""
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


@dataclass
class PersistedState:
    """What survives a reload. Read once at boot."""

    entries: list[QueueEntry] = field(default_factory=list)
    sequence_counter: int = 0
    opted_out: bool = False
    boot_completed_at: float | None = None


class StateStore:
    """Maps PersistedState onto a KeyValueStore under a fixed key namespace.

    Snapshots are rendered to strings synchronously, before the awaited write,
    so writes issued in order land in order.
    """

    def __init__(self, store: KeyValueStore, namespace: str = "beacon") -> None:
        self._store = store
        self._namespace = (namespace or "").strip()
        self.writes = 0

    def _ns(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    async def load(self) -> PersistedState:
        """Read the snapshot. Damaged values are logged and replaced by defaults."""
        state = PersistedState()
        raw_queue = await self._store.get(self._ns(KEY_QUEUE))
        if raw_queue:
            state.entries = _parse_entries(raw_queue)
        raw_seq = await self._store.get(self._ns(KEY_SEQUENCE))
        if raw_seq:
            try:
                state.sequence_counter = int(raw_seq)
            except ValueError:
                logger.warning("persisted sequence counter unreadable: %r", raw_seq)
        # Never reuse an id, even if the counter key was lost.
        if state.entries:
            state.sequence_counter = max(
                state.sequence_counter, max(e.id for e in state.entries)
            )
        state.opted_out = (await self._store.get(self._ns(KEY_OPTED_OUT))) == "1"
        raw_boot = await self._store.get(self._ns(KEY_BOOT_COMPLETED))
        if raw_boot:
            try:
                state.boot_completed_at = float(raw_boot)
            except ValueError:
                logger.warning("persisted boot timestamp unreadable: %r", raw_boot)
        logger.debug(
            "loaded state: %d entries, sequence=%d, opted_out=%s",
            len(state.entries),
            state.sequence_counter,
            state.opted_out,
        )
        return state

    async def save_queue(self, entries: Iterable[QueueEntry], sequence_counter: int) -> None:
        """Persist the full queue and the counter together."""
        blob = json_dumps_compact([e.to_dict() for e in entries])
        await self._write(
            {self._ns(KEY_QUEUE): blob, self._ns(KEY_SEQUENCE): str(sequence_counter)}
        )

    async def save_opted_out(self, opted_out: bool) -> None:
        await self._write({self._ns(KEY_OPTED_OUT): "1" if opted_out else "0"})

    async def save_boot_completed(self, ts: float) -> None:
        await self._write({self._ns(KEY_BOOT_COMPLETED): repr(float(ts))})

    async def clear(self) -> None:
        """Forget everything under the namespace."""
        for key in (KEY_QUEUE, KEY_SEQUENCE, KEY_OPTED_OUT, KEY_BOOT_COMPLETED):
            await self._store.delete(self._ns(key))

    async def close(self) -> None:
        await self._store.close()

    async def _write(self, values: dict[str, str]) -> None:
        self.writes += 1
        await self._store.set_many(values)


def _parse_entries(raw: str) -> list[QueueEntry]:
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError:
        logger.error("persisted queue is not valid JSON; starting empty")
        return []
    if not isinstance(data, list):
        logger.error("persisted queue has unexpected shape; starting empty")
        return []
    entries: list[QueueEntry] = []
    for item in data:
        try:
            entries.append(QueueEntry.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("skipping unreadable persisted entry: %s", e)
    entries.sort(key=lambda e: e.id)
    return entries
