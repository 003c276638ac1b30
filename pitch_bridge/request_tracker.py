"""
In-memory table of conversion requests awaiting a daemon notification.

The table is keyed by the exact path written to the daemon. It is a plain
data structure: it never deletes files and never notifies anyone. Callers
that remove an entry own the follow-up (temporary file release, events).
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class DuplicateRequestError(Exception):
    """Raised when a key already has a live, non-stale pending request"""

    def __init__(self, key: str, age_sec: float):
        super().__init__(f"Already processing: {key} ({age_sec:.1f}s ago)")
        self.key = key
        self.age_sec = age_sec


@dataclass
class PendingRequest:
    """
    One audio file submitted to the daemon and awaiting its response.

    Attributes:
        key: Path sent to the daemon (the normalized file when normalization ran)
        caller_request_id: Caller-supplied or internally generated id
        submitted_at: Monotonic submission time in seconds
        display_name: Base name of the original file, for messages
        expected_output_path: Predicted MIDI location (diagnostics only)
        original_input_path: The caller's original path
        original_base_name: Original base name without extension; used for correlation
        cleanup_target: Temporary file to delete once the request resolves
    """
    key: str
    caller_request_id: object
    submitted_at: float
    display_name: str
    expected_output_path: str
    original_input_path: str
    original_base_name: str
    cleanup_target: Optional[str] = None

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since submission."""
        if now is None:
            now = time.monotonic()
        return max(0.0, now - self.submitted_at)

    def elapsed_ms(self, now: Optional[float] = None) -> int:
        return int(self.age(now) * 1000)

    def is_stale(self, threshold: float, now: Optional[float] = None) -> bool:
        return self.age(now) > threshold


class RequestTracker:
    """
    Table of live PendingRequest entries keyed by daemon path.

    At most one entry exists per key. A second registration for a key whose
    entry is still fresh is rejected; a stale entry is displaced and handed
    back to the caller so its cleanup obligation can be released.
    """

    DEFAULT_STALE_AFTER_SEC = 20.0

    def __init__(self, stale_after: float = DEFAULT_STALE_AFTER_SEC):
        self.stale_after = stale_after
        self._entries: Dict[str, PendingRequest] = {}

    def register(
        self,
        request: PendingRequest,
        now: Optional[float] = None
    ) -> Optional[PendingRequest]:
        """
        Insert a pending request.

        Args:
            request: Entry to insert, keyed by ``request.key``
            now: Monotonic time used for the staleness check

        Returns:
            The displaced stale entry for the same key, or None

        Raises:
            DuplicateRequestError: If the key has a live, non-stale entry
        """
        existing = self._entries.get(request.key)
        displaced = None
        if existing is not None:
            age = existing.age(now)
            if age <= self.stale_after:
                raise DuplicateRequestError(request.key, age)
            logger.info(f"Displacing stale request for {existing.display_name} ({age:.0f}s old)")
            displaced = existing

        self._entries[request.key] = request
        logger.debug(f"Registered request {request.caller_request_id} for {request.key}")
        return displaced

    def lookup(self, key: str) -> Optional[PendingRequest]:
        return self._entries.get(key)

    def remove(self, key: str) -> Optional[PendingRequest]:
        """Delete an entry if present. Idempotent; returns the removed entry."""
        return self._entries.pop(key, None)

    def clear_all(self) -> List[PendingRequest]:
        """Remove every entry and return what was removed."""
        cleared = list(self._entries.values())
        self._entries.clear()
        if cleared:
            logger.info(f"Cleared {len(cleared)} pending request(s)")
        return cleared

    def is_live(self, key: str, now: Optional[float] = None) -> bool:
        """True if ``key`` has an entry that is not yet stale."""
        entry = self._entries.get(key)
        return entry is not None and not entry.is_stale(self.stale_after, now)

    def find_by_base_name(self, base_name: str) -> Optional[PendingRequest]:
        """
        First entry (in insertion order) whose original base name matches.

        Which entry wins when several share a base name is not defined by the
        daemon protocol; insertion order is what this table happens to give.
        """
        for entry in self._entries.values():
            if entry.original_base_name == base_name:
                return entry
        return None

    def stale_entries(self, now: Optional[float] = None) -> List[PendingRequest]:
        return [
            entry for entry in self._entries.values()
            if entry.is_stale(self.stale_after, now)
        ]

    def entries(self) -> List[PendingRequest]:
        """Snapshot of live entries."""
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[PendingRequest]:
        return iter(self.entries())
