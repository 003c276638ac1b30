#!/usr/bin/env python3
"""
Basic Pitch bridge process

Sits between a host application (stdin/stdout JSON IPC) and the
``basicpitch_daemon`` audio-to-MIDI converter (stdin/stdout text protocol).

Flow: host submit → optional ffmpeg normalization → request registered →
``process`` command written to the daemon → daemon stdout lines correlated
back to the request → host notified. Requests that never hear back are
evicted by the stale request reaper.
"""

import sys
import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional, Set

from pitch_bridge.config import BridgeConfig, ConfigError
from pitch_bridge.daemon_supervisor import DaemonNotReadyError, DaemonState, DaemonSupervisor
from pitch_bridge.events import BridgeEvent
from pitch_bridge.format_normalizer import (
    FormatNormalizer,
    NormalizationError,
    needs_normalization,
    remove_temporary_file,
)
from pitch_bridge.ipc_handler import IpcHandler
from pitch_bridge.lifecycle_manager import LifecycleManager
from pitch_bridge.output_correlator import OutputCorrelator
from pitch_bridge.parameters import ParameterValidationError, describe_parameters, parse_parameter_list
from pitch_bridge.protocol import format_process_command
from pitch_bridge.request_tracker import DuplicateRequestError, PendingRequest, RequestTracker
from pitch_bridge.stale_reaper import StaleRequestReaper
from pitch_bridge.structured_log import log_info_event

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr  # stdout carries IPC
)
logger = logging.getLogger(__name__)


class PitchBridgeServer:
    """
    Orchestrates daemon supervision, request tracking and host IPC.

    Components:
    - DaemonSupervisor: daemon process lifecycle and stdout line splitting
    - RequestTracker: pending requests keyed by daemon path
    - OutputCorrelator: daemon notifications → request resolution
    - StaleRequestReaper: eviction of requests the daemon never answered
    - FormatNormalizer: ffmpeg transcoding of compressed inputs
    - IpcHandler: host commands and events
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        normalizer: Optional[FormatNormalizer] = None
    ):
        self.config = config or BridgeConfig()
        self.ipc: Optional[IpcHandler] = None

        self.tracker = RequestTracker(stale_after=self.config.stale_after)
        self.correlator = OutputCorrelator(
            self.tracker,
            on_event=self.emit_event,
            duplicate_grace=self.config.duplicate_grace,
        )
        self.supervisor = DaemonSupervisor(
            command=self.config.daemon_command,
            output_dir=self.config.output_dir,
            on_line=self.correlator.handle_line,
            on_event=self.emit_event,
            on_exit=self._handle_daemon_exit,
            stop_timeout=self.config.stop_timeout,
            stderr_suppressions=self.config.stderr_suppressions,
        )
        self.reaper = StaleRequestReaper(
            self.tracker,
            on_event=self.emit_event,
            interval_seconds=self.config.sweep_interval,
        )
        self.normalizer = normalizer or FormatNormalizer(tool_path=self.config.ffmpeg_path)
        self.lifecycle = LifecycleManager()
        self.lifecycle.register_cleanup("stale_reaper", self.reaper.stop)
        self.lifecycle.register_cleanup("daemon", self.supervisor.stop)
        self.lifecycle.register_cleanup("correlator", self._reset_correlator)

        self.applied_flags: List[str] = []
        self._request_counter = 0
        self._normalizing: Set[str] = set()
        self._shutting_down = False

        logger.info("PitchBridgeServer initialized")

    def emit_event(self, event: BridgeEvent, data: Dict[str, Any]) -> None:
        logger.debug(f"Event {event.value}: {data}")
        if self.ipc is not None:
            self.ipc.emit_event(event, data)

    async def start(self) -> None:
        """Start the stale request sweep and the daemon with the applied flags."""
        self.reaper.start()
        await self.supervisor.start(self.applied_flags)

    async def handle_message(self, msg: Dict[str, Any]) -> None:
        """
        Handle one host message.

        Message types:
        - request: ``method`` is one of submit, submit_with_normalization,
          get_status, get_pending_count, set_parameters, request_shutdown,
          describe_parameters, check_normalizer
        - ping: health check (respond with pong)
        """
        msg_type = msg.get('type')
        msg_id = msg.get('id', 'unknown')

        if msg_type == 'ping':
            await self.ipc.send_message({'type': 'pong', 'id': msg_id})
            return

        if msg_type != 'request':
            logger.warning(f"Unknown message type: {msg_type}")
            await self.ipc.send_error(msg_id, 'UNKNOWN_TYPE', f"Unknown message type: {msg_type}")
            return

        method = msg.get('method')
        params = msg.get('params') or {}
        if not isinstance(params, dict):
            await self.ipc.send_error(msg_id, 'INVALID_PARAMS', "'params' must be an object")
            return

        if method == 'submit':
            result = await self.submit(params.get('path'), params.get('request_id'))
        elif method == 'submit_with_normalization':
            result = await self.submit(params.get('path'), params.get('request_id'), normalize=True)
        elif method == 'get_status':
            result = self.get_status()
        elif method == 'get_pending_count':
            result = {'pending': self.get_pending_count()}
        elif method == 'set_parameters':
            items = params.get('params', [])
            if not isinstance(items, list):
                await self.ipc.send_error(msg_id, 'INVALID_PARAMS', "'params' must be a list")
                return
            result = await self.set_parameters(items)
        elif method == 'describe_parameters':
            result = {'parameters': describe_parameters()}
        elif method == 'check_normalizer':
            tool = self.normalizer.find_tool()
            result = {'found': tool is not None, 'path': tool}
        elif method == 'request_shutdown':
            await self.ipc.send_response(msg_id, {'status': 'shutting_down'})
            await self.shutdown()
            return
        else:
            logger.warning(f"Unknown request method: {method}")
            await self.ipc.send_error(msg_id, 'UNKNOWN_METHOD', f"Unknown request method: {method}")
            return

        await self.ipc.send_response(msg_id, result)

    def _reject(self, name: str, reason: str) -> Dict[str, Any]:
        logger.error(f"Submission rejected: {name} - {reason}")
        self.emit_event(BridgeEvent.PROCESSING_ERROR, {'name': name, 'diagnostic': reason})
        return {'accepted': False, 'reason': reason}

    def _evict(self, request: PendingRequest, reason: str) -> None:
        if self.tracker.remove(request.key) is None:
            return
        age_ms = request.elapsed_ms()
        remove_temporary_file(request.cleanup_target)
        logger.info(f"Clearing {reason} request for: {request.display_name} ({age_ms // 1000}s old)")
        self.emit_event(BridgeEvent.REQUEST_EVICTED, {
            'name': request.display_name,
            'ageMs': age_ms,
            'requestId': request.caller_request_id,
        })

    def _base_name_conflict(self, base_name: str) -> Optional[str]:
        # One outstanding request per base name, or success lines become ambiguous
        conflicting = self.tracker.find_by_base_name(base_name)
        while conflicting is not None and not self.tracker.is_live(conflicting.key):
            self._evict(conflicting, 'stale')
            conflicting = self.tracker.find_by_base_name(base_name)
        if conflicting is None:
            return None
        return (
            f"A request for '{base_name}' is already pending: "
            f"{conflicting.original_input_path}"
        )

    async def _ensure_daemon_ready(self) -> bool:
        if self.supervisor.state is DaemonState.RESTARTING:
            return False
        if not self.supervisor.is_running:
            if not self.config.auto_start:
                return False
            logger.info("Starting daemon for file processing...")
            await self.supervisor.start(self.applied_flags)
        return await self.supervisor.wait_until_ready(self.config.ready_timeout)

    async def submit(
        self,
        path: Optional[str],
        request_id: Any = None,
        normalize: bool = False
    ) -> Dict[str, Any]:
        """
        Submit an audio file for conversion.

        Args:
            path: Audio file path
            request_id: Caller-visible id echoed in events (generated if None)
            normalize: Force ffmpeg normalization regardless of extension

        Returns:
            ``{'accepted': True, ...}`` or ``{'accepted': False, 'reason': ...}``.
            Rejections are also reported as ``processing-error`` events.
        """
        if not path:
            return self._reject('', 'No audio path provided')

        path = str(path)
        display_name = os.path.basename(path)
        logger.info(f"Processing audio file: {path}")

        if self._shutting_down:
            return self._reject(display_name, 'Bridge is shutting down')
        if not os.path.exists(path):
            return self._reject(display_name, f"File not found: {path}")
        if '"' in path or '\n' in path:
            return self._reject(display_name, f"Path cannot be sent to the daemon: {path}")

        if not await self._ensure_daemon_ready():
            return self._reject(display_name, 'Daemon not ready after initialization. Please try again.')

        original_base_name = os.path.splitext(display_name)[0]
        use_normalizer = normalize or needs_normalization(path)
        predicted_key = self.normalizer.output_path_for(path) if use_normalizer else path

        existing = self.tracker.lookup(predicted_key)
        if predicted_key in self._normalizing or self.tracker.is_live(predicted_key):
            return self._reject(display_name, f"Already processing: {display_name}")
        if existing is not None:
            self._evict(existing, 'stale')

        conflict = self._base_name_conflict(original_base_name)
        if conflict:
            return self._reject(display_name, conflict)

        key = predicted_key
        cleanup_target = None
        if use_normalizer:
            self._normalizing.add(predicted_key)
            try:
                key = await self.normalizer.normalize(path)
            except NormalizationError as e:
                return self._reject(display_name, f"Preprocessing failed: {e}")
            finally:
                self._normalizing.discard(predicted_key)
            cleanup_target = key

            # Checked again: another submission may have registered meanwhile
            conflict = self._base_name_conflict(original_base_name)
            if conflict:
                remove_temporary_file(cleanup_target)
                return self._reject(display_name, conflict)

        input_dir = os.path.dirname(path) or '.'
        expected_output_path = os.path.join(input_dir, f"{original_base_name}.mid")

        self._request_counter += 1
        caller_request_id = request_id if request_id is not None else self._request_counter
        request = PendingRequest(
            key=key,
            caller_request_id=caller_request_id,
            submitted_at=time.monotonic(),
            display_name=display_name,
            expected_output_path=expected_output_path,
            original_input_path=path,
            original_base_name=original_base_name,
            cleanup_target=cleanup_target,
        )

        try:
            displaced = self.tracker.register(request)
        except DuplicateRequestError as e:
            return self._reject(display_name, str(e))
        if displaced is not None:
            remove_temporary_file(displaced.cleanup_target)

        try:
            await self.supervisor.send_command(format_process_command(key, input_dir))
        except DaemonNotReadyError as e:
            self.tracker.remove(key)
            remove_temporary_file(cleanup_target)
            return self._reject(display_name, f"Daemon unavailable: {e}")

        log_info_event(
            "bridge", "processing_started",
            name=display_name, key=key, expected_output=expected_output_path,
        )
        self.emit_event(BridgeEvent.PROCESSING_STARTED, {
            'name': display_name,
            'path': path,
            'requestId': caller_request_id,
        })
        return {
            'accepted': True,
            'requestId': caller_request_id,
            'key': key,
            'expectedOutputPath': expected_output_path,
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            'status': 'ready' if self.supervisor.is_ready else 'not ready',
            'state': self.supervisor.state.value,
            'pending': len(self.tracker),
            'flags': list(self.applied_flags),
            'process': self.supervisor.process_stats(),
            'stats': {
                'daemon': self.supervisor.get_stats(),
                'correlation': self.correlator.get_stats(),
                'ipc': self.ipc.get_stats() if self.ipc is not None else None,
            },
        }

    def get_pending_count(self) -> int:
        return len(self.tracker)

    async def set_parameters(self, items: List[Any]) -> Dict[str, Any]:
        """
        Validate a flat key/value list and restart the daemon with its flags.

        The flags replace the previously applied set. An empty list changes
        nothing and does not restart.
        """
        logger.info(f"Received parameters: {items}")
        try:
            flags = parse_parameter_list(items)
        except ParameterValidationError as e:
            logger.error(f"Parameters error: {e}")
            self.emit_event(BridgeEvent.PARAMETERS_ERROR, {'message': str(e)})
            return {'applied': False, 'error': str(e)}

        if not items:
            logger.info("No parameters provided, using current settings")
            return {'applied': False, 'flags': list(self.applied_flags)}

        if self._shutting_down:
            return {'applied': False, 'error': 'Bridge is shutting down'}

        logger.info(f"Restarting daemon with new parameters: {' '.join(flags)}")
        self.emit_event(BridgeEvent.DAEMON_RESTARTING, {'flags': flags})

        if not await self.supervisor.restart(flags):
            return {'applied': False, 'error': 'Daemon failed to start'}

        self.applied_flags = flags
        self.emit_event(BridgeEvent.PARAMETERS_APPLIED, {'flags': flags})
        return {'applied': True, 'flags': flags}

    def _handle_daemon_exit(self, code: Optional[int], planned: bool) -> None:
        # The daemon that would have answered these requests is gone
        discarded = self.tracker.clear_all()
        for request in discarded:
            remove_temporary_file(request.cleanup_target)
        self.correlator.reset()
        if discarded:
            logger.warning(
                f"Daemon exited (code={code}, planned={planned}); "
                f"discarded {len(discarded)} pending request(s)"
            )
        if not planned:
            logger.info("Daemon stopped. Set parameters or submit a file to restart.")

    async def _reset_correlator(self) -> None:
        self.correlator.reset()

    async def shutdown(self) -> None:
        """Stop sweeping, stop the daemon, notify the host, stop IPC."""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down bridge...")

        await self.lifecycle.cleanup()

        self.emit_event(BridgeEvent.SHUTDOWN_COMPLETE, {})
        logger.info("Bridge shutdown complete")

        if self.ipc is not None:
            await self.ipc.stop()
        self.lifecycle.request_shutdown("bridge shutdown")


async def main(config: Optional[BridgeConfig] = None) -> int:
    """
    Main entry point for the bridge process.

    Returns:
        Process exit code
    """
    try:
        config = config or BridgeConfig.from_env()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    logging.getLogger().setLevel(config.log_level)

    server = PitchBridgeServer(config)
    server.ipc = IpcHandler(message_handler=server.handle_message)
    server.lifecycle.setup_signal_handlers()

    try:
        await server.start()

        ipc_task = asyncio.create_task(server.ipc.start())
        shutdown_task = asyncio.create_task(server.lifecycle.wait_for_shutdown())
        await asyncio.wait({ipc_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

        await server.shutdown()
        await ipc_task
        shutdown_task.cancel()

    except Exception as e:
        logger.error(f"Fatal error in main: {e}", exc_info=True)
        await server.shutdown()
        return 1

    finally:
        server.lifecycle.remove_signal_handlers()

    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
