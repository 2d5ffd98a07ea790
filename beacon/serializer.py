"""Event serializer: canonical JSON wrapped in a base64 text envelope.

serialize() is pure and deterministic. The same event/context pair always
yields the same bytes, so payloads can be built lazily at transmission time.
"""

import base64
import binascii
import json
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterable

from beacon.errors import EncodingError
from beacon.models import Event

SCHEMA_VERSION = "beacon.v1"
BATCH_SCHEMA_VERSION = "beacon.batch.v1"

_SCALARS = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class Payload:
    """Transport-ready form of one event."""

    event_id: int
    collection: str
    data: str  # base64 of canonical JSON


def validate(value: Any, path: str = "value", active: set[int] | None = None) -> None:
    """Raise EncodingError if value, or anything nested in it, has no wire representation."""
    if active is None:
        active = set()
    if isinstance(value, float):
        if not math.isfinite(value):
            raise EncodingError(f"non-finite float at {path}")
        return
    if isinstance(value, _SCALARS):
        return
    if isinstance(value, Mapping | list | tuple):
        marker = id(value)
        if marker in active:
            raise EncodingError(f"cyclic structure at {path}")
        active.add(marker)
        try:
            if isinstance(value, Mapping):
                for k, v in value.items():
                    if not isinstance(k, str):
                        raise EncodingError(f"non-string key {k!r} at {path}")
                    validate(v, f"{path}.{k}", active)
            else:
                for i, v in enumerate(value):
                    validate(v, f"{path}[{i}]", active)
        finally:
            active.discard(marker)
        return
    raise EncodingError(f"unsupported type {type(value).__name__} at {path}")


def to_plain(value: Any) -> Any:
    """Deep copy of a validated value as plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [to_plain(v) for v in value]
    return value


def _canonical(obj: Any) -> bytes:
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    ).encode("utf-8")


def serialize(event: Event, context: Mapping[str, Any]) -> Payload:
    """Encode one event and its context. Raises EncodingError on invalid data."""
    validate(event.payload, "payload")
    validate(context, "context")
    doc = {
        "schema": SCHEMA_VERSION,
        "id": event.id,
        "collection": event.collection,
        "created_at": event.created_at,
        "payload": to_plain(event.payload),
        "context": to_plain(context),
    }
    try:
        raw = _canonical(doc)
    except (TypeError, ValueError) as e:
        raise EncodingError(str(e)) from e
    return Payload(
        event_id=event.id,
        collection=event.collection,
        data=base64.b64encode(raw).decode("ascii"),
    )


def encode_batch(payloads: Iterable[Payload]) -> str:
    """Frame payloads into the request body sent for one batch."""
    events = [
        {"id": p.event_id, "collection": p.collection, "data": p.data}
        for p in payloads
    ]
    return json.dumps(
        {"schema": BATCH_SCHEMA_VERSION, "count": len(events), "events": events},
        separators=(",", ":"),
    )


def decode_payload(data: str) -> tuple[Event, dict[str, Any]]:
    """Server-side mirror of serialize(): base64 text -> (Event, context)."""
    try:
        raw = base64.b64decode(data.encode("ascii"), validate=True)
        doc = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, json.JSONDecodeError) as e:
        raise EncodingError(f"undecodable payload: {e}") from e
    if not isinstance(doc, dict) or doc.get("schema") != SCHEMA_VERSION:
        raise EncodingError("unknown payload schema")
    event = Event(
        id=int(doc["id"]),
        collection=str(doc["collection"]),
        payload=doc.get("payload") or {},
        context=doc.get("context") or {},
        created_at=float(doc["created_at"]),
    )
    return event, dict(event.context)


def decode_batch(body: str) -> list[tuple[Event, dict[str, Any]]]:
    """Decode a whole request body produced by encode_batch()."""
    try:
        doc = json.loads(body)
    except json.JSONDecodeError as e:
        raise EncodingError(f"undecodable batch: {e}") from e
    if not isinstance(doc, dict) or doc.get("schema") != BATCH_SCHEMA_VERSION:
        raise EncodingError("unknown batch schema")
    return [decode_payload(item["data"]) for item in doc.get("events", [])]
