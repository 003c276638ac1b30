"""
Output Correlation Engine
Matches asynchronous daemon notifications to pending requests.

The daemon reports completions without a request id. A success line only
names the MIDI file it wrote, so the matching request is found by comparing
the MIDI base name with each request's original input base name.

Duplicate success lines for the same MIDI path are common (the daemon may
flush the same notification twice). An output path is marked as handled
BEFORE the pending table is searched, and stays marked for a short grace
window afterwards, so back-to-back duplicates produce one completion.

All methods here are synchronous: each line is handled to completion before
the next one is read.
"""

import asyncio
import logging
import os
from typing import Dict, Optional, Set

from pitch_bridge.events import BridgeEvent, EventSink, discard_event
from pitch_bridge.format_normalizer import remove_temporary_file
from pitch_bridge.protocol import (
    FailureNotification,
    Notification,
    ProgressNotification,
    SuccessNotification,
    parse_daemon_line,
)
from pitch_bridge.request_tracker import PendingRequest, RequestTracker
from pitch_bridge.structured_log import log_info_event, log_warning_event

logger = logging.getLogger(__name__)


class ProcessedOutputSet:
    """
    Output paths whose success notification was already handled.

    Entries are forgotten ``grace_period`` seconds after being released
    with :meth:`forget_later`.
    """

    def __init__(self, grace_period: float):
        self.grace_period = grace_period
        self._paths: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def __contains__(self, path: object) -> bool:
        return path in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def add(self, path: str) -> None:
        self._paths.add(path)

    def discard(self, path: str) -> None:
        self._paths.discard(path)
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()

    def forget_later(self, path: str) -> None:
        """Schedule removal of ``path`` after the grace period."""
        loop = asyncio.get_running_loop()
        previous = self._timers.pop(path, None)
        if previous is not None:
            previous.cancel()
        self._timers[path] = loop.call_later(self.grace_period, self._expire, path)

    def _expire(self, path: str) -> None:
        self._timers.pop(path, None)
        self._paths.discard(path)
        logger.debug(f"Forgot handled output: {path}")

    def clear(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._paths.clear()


class OutputCorrelator:
    """
    Consumes daemon stdout lines and resolves pending requests.

    Args:
        tracker: Table of pending requests
        on_event: Sink for host-facing events
        duplicate_grace: Seconds a handled output path suppresses duplicates
    """

    DEFAULT_DUPLICATE_GRACE_SEC = 5.0

    def __init__(
        self,
        tracker: RequestTracker,
        on_event: EventSink = discard_event,
        duplicate_grace: float = DEFAULT_DUPLICATE_GRACE_SEC
    ):
        self.tracker = tracker
        self.on_event = on_event
        self.processed_outputs = ProcessedOutputSet(duplicate_grace)

        self.stats = {
            "completed": 0,
            "failed": 0,
            "duplicates": 0,
            "unmatched": 0,
        }

    def handle_line(self, line: str) -> Notification:
        """
        Decode one stdout line and act on it.

        Returns:
            The decoded notification (UnrecognizedLine for anything else)
        """
        notification = parse_daemon_line(line)

        if isinstance(notification, SuccessNotification):
            self._handle_success(notification)
        elif isinstance(notification, FailureNotification):
            self._handle_failure(notification)
        elif isinstance(notification, ProgressNotification):
            self._handle_progress(notification)
        elif notification.raw:
            logger.debug(f"Daemon: {notification.raw}")

        return notification

    def _handle_success(self, notification: SuccessNotification) -> Optional[PendingRequest]:
        output_path = notification.output_path

        if output_path in self.processed_outputs:
            self.stats["duplicates"] += 1
            logger.debug(f"Duplicate success notification ignored: {output_path}")
            return None

        # Mark before searching so a back-to-back duplicate is suppressed
        self.processed_outputs.add(output_path)

        output_base_name = os.path.splitext(os.path.basename(output_path))[0]
        request = self.tracker.find_by_base_name(output_base_name)

        if request is None:
            self.processed_outputs.discard(output_path)
            self.stats["unmatched"] += 1
            log_warning_event(
                "output_correlator", "unmatched_success",
                output_path=output_path,
                pending=[entry.key for entry in self.tracker.entries()],
            )
            self.on_event(BridgeEvent.UNMATCHED_OUTPUT, {"outputPath": output_path})
            return None

        self.tracker.remove(request.key)
        elapsed_ms = request.elapsed_ms()
        remove_temporary_file(request.cleanup_target)

        self.stats["completed"] += 1
        log_info_event(
            "output_correlator", "processing_complete",
            name=request.display_name,
            output_path=output_path,
            bytes=notification.byte_count,
            elapsed_ms=elapsed_ms,
        )
        self.on_event(BridgeEvent.PROCESSING_OUTPUT, {"outputPath": output_path})
        self.on_event(BridgeEvent.PROCESSING_COMPLETE, {
            "name": request.display_name,
            "outputPath": output_path,
            "byteCount": notification.byte_count,
            "elapsedMs": elapsed_ms,
            "requestId": request.caller_request_id,
        })

        self.processed_outputs.forget_later(output_path)
        return request

    def _handle_failure(self, notification: FailureNotification) -> Optional[PendingRequest]:
        request = self.tracker.remove(notification.failed_key)
        if request is None:
            logger.debug(f"Failure for unknown request ignored: {notification.failed_key}")
            return None

        remove_temporary_file(request.cleanup_target)

        self.stats["failed"] += 1
        logger.error(f"Error processing: {request.display_name} - {notification.raw}")
        self.on_event(BridgeEvent.PROCESSING_ERROR, {
            "name": request.display_name,
            "diagnostic": notification.raw,
            "requestId": request.caller_request_id,
        })
        return request

    def _handle_progress(self, notification: ProgressNotification) -> None:
        request = self.tracker.lookup(notification.path)
        if request is None:
            return
        logger.info(f"Processing: {request.display_name}")
        self.on_event(BridgeEvent.PROCESSING_PROGRESS, {"name": request.display_name})

    def reset(self) -> None:
        """Drop duplicate-suppression state and cancel pending timers."""
        self.processed_outputs.clear()

    def get_stats(self):
        return self.stats.copy()
