"""
Shared fixtures for the bridge tests.
"""

import sys
import time
from pathlib import Path

import pytest

from pitch_bridge.config import BridgeConfig
from pitch_bridge.request_tracker import PendingRequest

FAKE_DAEMON = Path(__file__).parent / "fixtures" / "fake_basicpitch_daemon.py"


class EventRecorder:
    """EventSink that remembers every event it receives"""

    def __init__(self):
        self.events = []

    def __call__(self, event, data):
        self.events.append((event, data))

    def of(self, event):
        return [data for recorded, data in self.events if recorded is event]

    def names(self):
        return [recorded.value for recorded, _ in self.events]


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def fake_daemon_command():
    return (sys.executable, str(FAKE_DAEMON))


@pytest.fixture
def bridge_config(tmp_path, fake_daemon_command):
    return BridgeConfig(
        daemon_command=fake_daemon_command,
        output_dir=tmp_path / "temp-midi",
        stop_timeout=1.0,
        ready_timeout=10.0,
        stale_after=20.0,
        sweep_interval=20.0,
        duplicate_grace=5.0,
    )


@pytest.fixture
def make_request():
    def _make(key, original_base_name=None, submitted_at=None, cleanup_target=None, request_id=1):
        name = Path(key).name
        base = original_base_name if original_base_name is not None else Path(key).stem
        return PendingRequest(
            key=key,
            caller_request_id=request_id,
            submitted_at=time.monotonic() if submitted_at is None else submitted_at,
            display_name=name,
            expected_output_path=str(Path(key).with_name(base + ".mid")),
            original_input_path=key,
            original_base_name=base,
            cleanup_target=cleanup_target,
        )
    return _make
