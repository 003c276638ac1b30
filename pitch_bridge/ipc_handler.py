"""
IPC Handler for communication with the host application

The host sends newline-delimited JSON commands on our stdin and receives
responses and events as newline-delimited JSON on our stdout. Logging must
therefore go to stderr.

Message shapes:
    {"type": "request", "id": ..., "method": ..., "params": {...}}   host -> bridge
    {"type": "response", "id": ..., "result": {...}}                 bridge -> host
    {"type": "event", "eventType": ..., "data": {...}}               bridge -> host
    {"type": "error", "id": ..., "errorCode": ..., "errorMessage": ...}
"""

import asyncio
import json
import sys
import logging
from typing import Dict, Any, Optional, Callable, Awaitable, Set
from asyncio import StreamReader
import time

from pitch_bridge.events import BridgeEvent

logger = logging.getLogger(__name__)


class IpcProtocolError(Exception):
    """IPC protocol specific errors"""
    pass


class IpcTimeoutError(Exception):
    """IPC timeout errors"""
    pass


class IpcHandler:
    """
    Handler for IPC communication via stdin/stdout.

    Design principles:
    - Non-blocking async reads from stdin
    - JSON message format with newline delimiter
    - Each inbound message is handled in its own task, so a slow command
      (waiting for the daemon, normalizing audio) does not block others
    - Outbound writes are synchronous and atomic per message
    """

    PROTOCOL_VERSION = "1.0"

    # Buffer limits to prevent overflow
    MAX_MESSAGE_SIZE = 1024 * 1024  # 1MB max per message

    DEFAULT_TIMEOUT_SEC = 10.0

    def __init__(
        self,
        message_handler: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        reader: Optional[StreamReader] = None,
        output=None
    ):
        """
        Initialize IPC handler.

        Args:
            message_handler: Async callback for each received message
            timeout: Idle timeout for a single read in seconds
            reader: Stream to read from instead of stdin (tests)
            output: Binary stream to write to instead of stdout (tests)
        """
        self.message_handler = message_handler
        self.timeout = timeout
        self._reader = reader
        self._output = output
        self._running = False
        self._receive_task: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Task] = set()

        # Statistics for monitoring
        self.stats = {
            "messages_sent": 0,
            "messages_received": 0,
            "errors": 0,
            "timeouts": 0
        }

        logger.info(f"IpcHandler initialized with timeout={timeout}s")

    @property
    def is_running(self) -> bool:
        return self._running

    def write_message(self, message: Dict[str, Any]) -> None:
        """
        Serialize and write one message to stdout.

        Raises:
            IpcProtocolError: If the message cannot be serialized or is too large
        """
        if "version" not in message:
            message["version"] = self.PROTOCOL_VERSION
        if "timestamp" not in message:
            message["timestamp"] = int(time.time() * 1000)

        try:
            json_str = json.dumps(message, separators=(',', ':'), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            self.stats["errors"] += 1
            raise IpcProtocolError(f"Message not serializable: {e}") from e

        if len(json_str) > self.MAX_MESSAGE_SIZE:
            self.stats["errors"] += 1
            raise IpcProtocolError(
                f"Message too large: {len(json_str)} bytes > {self.MAX_MESSAGE_SIZE} bytes"
            )

        data = (json_str + '\n').encode('utf-8')
        output = self._output if self._output is not None else sys.stdout.buffer
        try:
            output.write(data)
            output.flush()
        except (OSError, ValueError) as e:
            self.stats["errors"] += 1
            raise IpcProtocolError(f"Send failed: {e}") from e

        self.stats["messages_sent"] += 1
        logger.debug(f"Sent message: type={message.get('type')}, size={len(data)} bytes")

    async def send_message(self, message: Dict[str, Any]) -> None:
        """Async wrapper around :meth:`write_message`."""
        self.write_message(message)

    def emit_event(self, event: BridgeEvent, data: Dict[str, Any]) -> None:
        """
        Send an event to the host. Delivery failures are logged, not raised,
        so a broken host pipe never interrupts daemon output handling.
        """
        event_type = event.value if isinstance(event, BridgeEvent) else str(event)
        try:
            self.write_message({
                "type": "event",
                "eventType": event_type,
                "data": data,
            })
        except IpcProtocolError as e:
            logger.error(f"Failed to deliver {event_type} event: {e}")

    async def send_response(self, msg_id: Any, result: Dict[str, Any]) -> None:
        await self.send_message({
            "type": "response",
            "id": msg_id,
            "result": result,
        })

    async def send_error(
        self,
        msg_id: Any,
        error_code: str,
        error_message: str,
        recoverable: bool = True
    ) -> None:
        await self.send_message({
            "type": "error",
            "id": msg_id,
            "errorCode": error_code,
            "errorMessage": error_message,
            "recoverable": recoverable,
        })

    async def receive_message(self) -> Optional[Dict[str, Any]]:
        """
        Receive a message from the host via stdin.

        Returns:
            Parsed message dictionary or None at EOF

        Raises:
            IpcProtocolError: If message is malformed
            IpcTimeoutError: If nothing arrives within ``timeout``
        """
        try:
            line = await asyncio.wait_for(
                self._read_line_async(),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            self.stats["timeouts"] += 1
            raise IpcTimeoutError(f"Receive timeout after {self.timeout}s")

        if line is None:
            return None
        if not line.strip():
            raise IpcProtocolError("Empty message")
        if len(line) > self.MAX_MESSAGE_SIZE:
            self.stats["errors"] += 1
            raise IpcProtocolError(f"Message too large: {len(line)} bytes")

        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            self.stats["errors"] += 1
            logger.error(f"Invalid JSON received: {e}")
            raise IpcProtocolError(f"Invalid JSON: {e}") from e

        if not isinstance(message, dict):
            self.stats["errors"] += 1
            raise IpcProtocolError(f"Invalid message format: expected dict, got {type(message)}")

        # Version mismatch is a warning only (forward compatibility)
        if "version" in message and message["version"] != self.PROTOCOL_VERSION:
            logger.warning(
                f"Protocol version mismatch: received {message['version']}, "
                f"expected {self.PROTOCOL_VERSION}"
            )

        self.stats["messages_received"] += 1
        logger.debug(f"Received message: type={message.get('type')}, method={message.get('method')}")
        return message

    async def _ensure_reader(self) -> StreamReader:
        if self._reader is None:
            loop = asyncio.get_running_loop()
            reader = StreamReader(limit=self.MAX_MESSAGE_SIZE + 1)
            await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
            )
            self._reader = reader
        return self._reader

    async def _read_line_async(self) -> Optional[str]:
        """
        Read one line from stdin.

        Returns:
            Line string without trailing newline, or None if EOF
        """
        reader = await self._ensure_reader()
        try:
            line_bytes = await reader.readline()
        except ValueError as e:
            self.stats["errors"] += 1
            raise IpcProtocolError(f"Message too large: {e}") from e

        if not line_bytes:
            return None
        return line_bytes.decode('utf-8', errors='replace').rstrip('\n\r')

    async def start(self) -> None:
        """
        Run the receive loop until stop() is called or stdin reaches EOF.
        """
        if self._running:
            logger.warning("IpcHandler already running")
            return

        self._running = True
        logger.info("IpcHandler started")

        try:
            while self._running:
                self._receive_task = asyncio.ensure_future(self.receive_message())
                try:
                    message = await self._receive_task
                except IpcTimeoutError:
                    # Idle, keep waiting
                    continue
                except IpcProtocolError as e:
                    logger.error(f"Protocol error: {e}")
                    continue
                except asyncio.CancelledError:
                    if self._running:
                        raise
                    break
                finally:
                    self._receive_task = None

                if message is None:
                    logger.info("IPC input closed, shutting down")
                    break

                if self.message_handler:
                    self._dispatch(message)

            if self._handler_tasks:
                await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

        finally:
            self._running = False
            logger.info(f"IpcHandler stopped. Stats: {self.stats}")

    def _dispatch(self, message: Dict[str, Any]) -> None:
        task = asyncio.ensure_future(self._run_handler(message))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _run_handler(self, message: Dict[str, Any]) -> None:
        try:
            await self.message_handler(message)
        except Exception as e:
            logger.error(f"Message handler error: {e}", exc_info=True)
            try:
                await self.send_error(
                    message.get("id", "unknown"),
                    "INTERNAL_ERROR",
                    str(e),
                    recoverable=False,
                )
            except IpcProtocolError as send_error:
                logger.error(f"Failed to report handler error: {send_error}")

    async def stop(self) -> None:
        """Stop the receive loop."""
        logger.info("Stopping IpcHandler")
        self._running = False
        if self._receive_task is not None and not self._receive_task.done():
            self._receive_task.cancel()

    def get_stats(self) -> Dict[str, Any]:
        """Get IPC statistics for monitoring."""
        return self.stats.copy()
