"""PageTracker: records a PAGEVIEW whenever the reported location changes."""

import asyncio
import logging
from typing import TYPE_CHECKING

from beacon.context import LocationProvider
from beacon.models import Collection

if TYPE_CHECKING:
    from beacon.pipeline import TelemetryPipeline

logger = logging.getLogger(__name__)


class PageTracker:
    """Polls a LocationProvider; push-style changes go through notify()."""

    def __init__(
        self,
        pipeline: "TelemetryPipeline",
        provider: LocationProvider,
        interval: float = 1.5,
    ) -> None:
        self._pipeline = pipeline
        self._provider = provider
        self._interval = interval
        self._last: str | None = provider.current_location()
        self._task: asyncio.Task[None] | None = None

    @property
    def last_location(self) -> str | None:
        return self._last

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def notify(self, location: str | None) -> bool:
        """Record a pageview if location differs from the last one seen."""
        if not location or location == self._last:
            return False
        self._last = location
        logger.debug("location changed, sending pageview: %s", location)
        await self._pipeline.record(Collection.PAGEVIEW, {"location": location})
        return True

    async def check(self) -> bool:
        try:
            location = self._provider.current_location()
        except Exception:
            logger.exception("location provider failed")
            return False
        return await self.notify(location)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.check()
