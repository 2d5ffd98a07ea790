"""Opt-out gate: one persisted flag consulted before anything else acts."""

import logging
import os
from typing import Callable, Mapping

from beacon.state import StateStore

logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes", "on")


def do_not_track_requested(environ: Mapping[str, str] | None = None) -> bool:
    """True when the DO_NOT_TRACK environment signal is set."""
    env = os.environ if environ is None else environ
    return (env.get("DO_NOT_TRACK") or "").strip().lower() in _TRUTHY


class OptOutGate:
    """Blocks serialization and transmission while active. Never deletes pending state."""

    def __init__(self, state_store: StateStore) -> None:
        self._state_store = state_store
        self._opted_out = False
        self._listeners: list[Callable[[bool], None]] = []

    def is_opted_out(self) -> bool:
        return self._opted_out

    def restore(self, opted_out: bool) -> None:
        """Seed from persisted state. Does not write or notify."""
        self._opted_out = bool(opted_out)

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        self._listeners.append(callback)

    async def set_opted_out(self, opted_out: bool) -> None:
        """Persist immediately on change. Setting the current value again is a no-op."""
        opted_out = bool(opted_out)
        if opted_out == self._opted_out:
            return
        self._opted_out = opted_out
        await self._state_store.save_opted_out(opted_out)
        logger.info("telemetry opt-out %s", "enabled" if opted_out else "cleared")
        for callback in list(self._listeners):
            try:
                callback(opted_out)
            except Exception:
                logger.exception("opt-out listener failed")
