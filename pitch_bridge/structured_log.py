"""
Structured log helpers shared by the bridge components.

Lifecycle events (daemon start/exit, request completion/eviction) are logged
as a single JSON payload so they can be grepped out of the stderr stream.
"""

import json
import logging

logger = logging.getLogger(__name__)


def _log_structured(level: int, component: str, event: str, **details) -> None:
    payload = {
        "component": component,
        "event": event,
    }
    if details:
        payload["details"] = details
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


def log_info_event(component: str, event: str, **details) -> None:
    _log_structured(logging.INFO, component, event, **details)


def log_warning_event(component: str, event: str, **details) -> None:
    _log_structured(logging.WARNING, component, event, **details)


def log_error_event(component: str, event: str, **details) -> None:
    _log_structured(logging.ERROR, component, event, **details)
