"""
Stale Request Reaper

Periodically evicts pending requests that never received a recognizable
daemon notification. The sweep interval equals the staleness threshold, so
a request is evicted at most two intervals after submission.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from pitch_bridge.events import BridgeEvent, EventSink, discard_event
from pitch_bridge.format_normalizer import remove_temporary_file
from pitch_bridge.request_tracker import PendingRequest, RequestTracker
from pitch_bridge.structured_log import log_info_event

logger = logging.getLogger(__name__)


class StaleRequestReaper:
    """
    Sweeps the request tracker for stale entries.

    Args:
        tracker: Table to sweep; its ``stale_after`` is the age threshold
        on_event: Sink for ``request-evicted`` diagnostics
        interval_seconds: Seconds between sweeps
        clock: Monotonic time source
    """

    DEFAULT_INTERVAL_SEC = 20.0

    def __init__(
        self,
        tracker: RequestTracker,
        on_event: EventSink = discard_event,
        interval_seconds: float = DEFAULT_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic
    ):
        self.tracker = tracker
        self.on_event = on_event
        self.interval_seconds = interval_seconds
        self.clock = clock

        self.running = False
        self.sweep_count = 0
        self.evicted_total = 0
        self._task: Optional[asyncio.Task] = None

    def sweep(self) -> List[PendingRequest]:
        """
        Evict every entry older than the tracker's threshold.

        Returns:
            The evicted entries
        """
        now = self.clock()
        evicted = []

        for request in self.tracker.stale_entries(now):
            if self.tracker.remove(request.key) is None:
                continue
            age_ms = request.elapsed_ms(now)
            remove_temporary_file(request.cleanup_target)

            log_info_event(
                "stale_reaper", "request_evicted",
                name=request.display_name,
                key=request.key,
                age_ms=age_ms,
            )
            self.on_event(BridgeEvent.REQUEST_EVICTED, {
                "name": request.display_name,
                "ageMs": age_ms,
                "requestId": request.caller_request_id,
            })
            evicted.append(request)

        self.sweep_count += 1
        self.evicted_total += len(evicted)
        return evicted

    async def run(self) -> None:
        """Sweep every ``interval_seconds`` until :meth:`stop` is called."""
        self.running = True
        logger.info(f"Starting stale request sweep (interval={self.interval_seconds}s)")

        while self.running:
            await asyncio.sleep(self.interval_seconds)
            if not self.running:
                break
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error in stale request sweep: {e}", exc_info=True)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self.running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info(
            f"Stopped stale request sweep "
            f"(sweeps: {self.sweep_count}, evicted: {self.evicted_total})"
        )
