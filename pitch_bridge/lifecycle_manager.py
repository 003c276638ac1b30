"""
Lifecycle Manager for the bridge process
Graceful shutdown on SIGINT/SIGTERM with ordered async cleanup.
"""

import asyncio
import logging
import signal
from typing import Awaitable, Callable, List, Tuple

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Manager for graceful startup and shutdown of the bridge"""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self):
        self._shutdown_event = asyncio.Event()
        self._cleanups: List[Tuple[str, Callable[[], Awaitable[None]]]] = []
        self._installed: List[signal.Signals] = []
        self._cleaned_up = False

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def setup_signal_handlers(self) -> None:
        """Request shutdown on SIGINT/SIGTERM (no-op where unsupported)"""
        loop = asyncio.get_running_loop()
        for sig in self.SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                logger.debug(f"Signal handler for {sig.name} not supported")
                continue
            self._installed.append(sig)
        logger.debug(f"Installed signal handlers: {[s.name for s in self._installed]}")

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed.clear()

    def request_shutdown(self, reason: str = "requested") -> None:
        if not self._shutdown_event.is_set():
            logger.info(f"Shutdown requested ({reason})")
            self._shutdown_event.set()

    def register_cleanup(self, name: str, callback: Callable[[], Awaitable[None]]) -> None:
        """Register an async cleanup step; steps run in registration order"""
        self._cleanups.append((name, callback))

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal"""
        await self._shutdown_event.wait()

    async def cleanup(self) -> None:
        """Run registered cleanup steps once, continuing past failures"""
        if self._cleaned_up:
            return
        self._cleaned_up = True

        for name, callback in self._cleanups:
            try:
                await callback()
                logger.debug(f"Cleanup step finished: {name}")
            except Exception as e:
                logger.error(f"Cleanup step {name} failed: {e}", exc_info=True)
