"""
Outbound events delivered to the host.

Components report through an ``EventSink``: a plain synchronous callable
taking the event and its payload. The orchestrator forwards them over IPC.
"""

from enum import Enum
from typing import Any, Callable, Dict


class BridgeEvent(str, Enum):
    """Event names sent to the host (``eventType`` field)"""
    DAEMON_READY = "daemon-ready"
    DAEMON_ERROR = "daemon-error"
    DAEMON_EXITED = "daemon-exited"
    DAEMON_RESTARTING = "daemon-restarting"
    PROCESSING_STARTED = "processing-started"
    PROCESSING_PROGRESS = "processing-progress"
    PROCESSING_COMPLETE = "processing-complete"
    PROCESSING_OUTPUT = "processing-output"
    PROCESSING_ERROR = "processing-error"
    PARAMETERS_ERROR = "parameters-error"
    PARAMETERS_APPLIED = "parameters-applied"
    SHUTDOWN_COMPLETE = "shutdown-complete"
    REQUEST_EVICTED = "request-evicted"
    UNMATCHED_OUTPUT = "unmatched-output"


EventSink = Callable[[BridgeEvent, Dict[str, Any]], None]


def discard_event(event: BridgeEvent, data: Dict[str, Any]) -> None:
    """Sink used when a component is built without one."""
    return None
