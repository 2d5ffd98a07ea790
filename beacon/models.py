"""Data model: events, queue entries, batches and diagnostic counters."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Iterator, Mapping

__all__ = [
    "Batch",
    "Collection",
    "Completion",
    "Diagnostics",
    "EntryHandle",
    "EntryState",
    "Event",
    "QueueEntry",
]


class Collection(StrEnum):
    """Internal event collections. Producers may also pass any non-empty string."""

    PAGEVIEW = "PAGEVIEW"
    PING = "PING"
    LIBRARY = "LIBRARY"
    EVENT = "EVENT"
    EXCEPTION = "EXCEPTION"
    ENROLLMENT = "ENROLLMENT"
    SECTION_IMPRESSION = "SECTION_IMPRESSION"
    SECTION_VIEW = "SECTION_VIEW"
    SECTION_ACTION = "SECTION_ACTION"
    PRODUCT_IMPRESSION = "PRODUCT_IMPRESSION"
    PRODUCT_VIEW = "PRODUCT_VIEW"
    PRODUCT_ACTION = "PRODUCT_ACTION"
    USER_ACTION = "USER_ACTION"
    ORDER_ACTION = "ORDER_ACTION"


class EntryState(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    DROPPED = "dropped"


class Completion(StrEnum):
    """Result of one attempt as seen by the queue."""

    ACK = "ack"
    RETRY = "retry"
    DROP = "drop"


@dataclass(frozen=True)
class Event:
    """Immutable event. `id` is the session sequence number."""

    id: int
    collection: str
    payload: Mapping[str, Any]
    context: Mapping[str, Any]
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "collection": self.collection,
            "payload": self.payload,
            "context": self.context,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Event":
        return cls(
            id=int(d["id"]),
            collection=str(d["collection"]),
            payload=dict(d.get("payload") or {}),
            context=dict(d.get("context") or {}),
            created_at=float(d.get("created_at", 0.0)),
        )


@dataclass(frozen=True)
class EntryHandle:
    """Returned to the caller once an event is durably enqueued."""

    id: int
    collection: str
    created_at: float


@dataclass
class QueueEntry:
    """Delivery metadata around an Event. Owned by EventQueue."""

    event: Event
    attempts: int = 0
    next_eligible_at: float = 0.0
    state: EntryState = EntryState.PENDING

    @property
    def id(self) -> int:
        return self.event.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "attempts": self.attempts,
            "next_eligible_at": self.next_eligible_at,
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "QueueEntry":
        return cls(
            event=Event.from_dict(d["event"]),
            attempts=int(d.get("attempts", 0)),
            next_eligible_at=float(d.get("next_eligible_at", 0.0)),
            state=EntryState(d.get("state", EntryState.PENDING.value)),
        )


@dataclass
class Batch:
    """Transient group of entries selected for one transport attempt."""

    entries: list[QueueEntry] = field(default_factory=list)

    @property
    def ids(self) -> list[int]:
        return [e.id for e in self.entries]

    def __len__(self) -> int:
        return len(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(self.entries)


@dataclass
class Diagnostics:
    """Counters. Drops are only observable here, never as exceptions."""

    enqueued: int = 0
    acknowledged: int = 0
    retried: int = 0
    released: int = 0
    evicted: int = 0
    ignored: int = 0
    dropped: dict[str, int] = field(default_factory=dict)

    def count_drop(self, reason: str, n: int = 1) -> None:
        self.dropped[reason] = self.dropped.get(reason, 0) + n

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "enqueued": self.enqueued,
            "acknowledged": self.acknowledged,
            "retried": self.retried,
            "released": self.released,
            "evicted": self.evicted,
            "ignored": self.ignored,
            "dropped": dict(self.dropped),
            "dropped_total": self.dropped_total,
        }
