"""
Daemon Supervisor
Owns the lifecycle of the long-running conversion daemon subprocess.

State machine:
    stopped --start()--> starting --"Ready for commands"--> ready
    ready/starting --restart()--> restarting --> starting --> ready
    any --process exit--> stopped

Only lines received after the readiness marker are forwarded to ``on_line``.
An exit that was not requested through stop()/restart() is reported as a
``daemon-exited`` event; every exit is reported to ``on_exit`` so owners can
discard state tied to the dead process.
"""

import asyncio
import logging
import os
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import psutil

from pitch_bridge.events import BridgeEvent, EventSink, discard_event
from pitch_bridge.protocol import QUIT_COMMAND, is_ready_line
from pitch_bridge.structured_log import log_error_event, log_info_event, log_warning_event

logger = logging.getLogger(__name__)


class DaemonState(Enum):
    """Lifecycle states of the daemon"""
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    RESTARTING = "restarting"


class DaemonNotReadyError(Exception):
    """Raised when a command is sent while the daemon cannot accept it"""
    pass


class DaemonSupervisor:
    """
    Starts, stops and restarts the daemon and splits its output into lines.

    Design principles:
    - One daemon process at a time; start() refuses while one is running
    - Lifecycle operations are serialized; restart() is a single operation
    - stdout is processed strictly in arrival order, one line at a time
    - stderr is diagnostic only; known-benign warnings are dropped

    Args:
        command: Daemon executable plus optional prefix arguments
        output_dir: Directory passed with ``--daemon``; created if missing
        on_line: Synchronous callback for each post-readiness stdout line
        on_event: Sink for daemon-ready / daemon-error / daemon-exited
        on_exit: Callback ``(exit_code, planned)`` run after every exit
        stop_timeout: Seconds to wait after ``quit`` before force-killing
        stderr_suppressions: Substrings of stderr lines that are not logged
    """

    BASE_ARGS = ("--daemon",)
    DEFAULT_STOP_TIMEOUT_SEC = 3.0

    # Max bytes per stdout/stderr line
    STREAM_LIMIT = 1024 * 1024

    def __init__(
        self,
        command: Sequence[str],
        output_dir: Path,
        on_line: Optional[Callable[[str], Any]] = None,
        on_event: EventSink = discard_event,
        on_exit: Optional[Callable[[Optional[int], bool], Any]] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT_SEC,
        stderr_suppressions: Sequence[str] = ()
    ):
        if not command:
            raise ValueError("Daemon command must not be empty")

        self.command = tuple(command)
        self.output_dir = Path(output_dir)
        self.on_line = on_line
        self.on_event = on_event
        self.on_exit = on_exit
        self.stop_timeout = stop_timeout
        self.stderr_suppressions = tuple(stderr_suppressions)

        self.current_args: Tuple[str, ...] = ()
        self.last_exit_code: Optional[int] = None

        self._state = DaemonState.STOPPED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._started_at: Optional[float] = None
        self._planned_stop = False
        self._lifecycle_lock = asyncio.Lock()
        self._ready_event = asyncio.Event()
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None

        self.stats = {
            "starts": 0,
            "launch_failures": 0,
            "unexpected_exits": 0,
            "forced_kills": 0,
            "lines_forwarded": 0,
            "stderr_suppressed": 0,
        }

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is DaemonState.READY

    @property
    def is_running(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def build_args(self, extra_args: Sequence[str] = ()) -> Tuple[str, ...]:
        return self.command + self.BASE_ARGS + (str(self.output_dir),) + tuple(extra_args)

    async def start(self, extra_args: Sequence[str] = ()) -> bool:
        """
        Launch the daemon with ``--daemon <output_dir>`` plus ``extra_args``.

        Returns:
            True if the process was spawned. False if a daemon is already
            running or the executable could not be spawned (a
            ``daemon-error`` event is emitted and the state stays stopped).
        """
        async with self._lifecycle_lock:
            return await self._start(extra_args)

    async def stop(self) -> None:
        """
        Ask the daemon to quit, force-kill it after ``stop_timeout``.

        Resolves once the process has exited. No-op when nothing is running.
        """
        async with self._lifecycle_lock:
            if self._process is not None:
                self._state = DaemonState.STOPPED
            await self._stop()
            self._state = DaemonState.STOPPED

    async def restart(self, extra_args: Sequence[str] = ()) -> bool:
        """
        stop() followed by start(extra_args) as one serialized operation.

        The state reads ``restarting`` until the new process is spawned.
        """
        async with self._lifecycle_lock:
            logger.info(f"Restarting daemon with args: {list(extra_args)}")
            self._state = DaemonState.RESTARTING
            await self._stop()
            return await self._start(extra_args)

    async def _start(self, extra_args: Sequence[str]) -> bool:
        if self._process is not None:
            logger.warning("Daemon already running. Stop it first if a restart is needed.")
            return False

        os.makedirs(self.output_dir, exist_ok=True)
        args = self.build_args(extra_args)

        self._state = DaemonState.STARTING
        self._planned_stop = False
        self._ready_event.clear()
        logger.info(f"Starting daemon: {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.STREAM_LIMIT,
            )
        except OSError as e:
            self._state = DaemonState.STOPPED
            self.stats["launch_failures"] += 1
            log_error_event("daemon_supervisor", "launch_failed", command=args[0], error=str(e))
            self.on_event(BridgeEvent.DAEMON_ERROR, {"message": f"Failed to start daemon: {e}"})
            return False

        self._process = process
        self._started_at = time.monotonic()
        self.current_args = tuple(extra_args)
        self.stats["starts"] += 1
        log_info_event("daemon_supervisor", "spawned", pid=process.pid, args=list(extra_args))

        self._stdout_task = asyncio.create_task(self._read_stdout(process))
        self._stderr_task = asyncio.create_task(self._read_stderr(process))
        self._exit_task = asyncio.create_task(self._watch_exit(process))
        return True

    async def _stop(self) -> None:
        process = self._process
        if process is None:
            return

        self._planned_stop = True
        logger.info("Stopping daemon...")

        if process.returncode is None:
            await self._write(process, QUIT_COMMAND, quiet=True)

        exit_task = self._exit_task
        try:
            await asyncio.wait_for(asyncio.shield(exit_task), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Daemon did not exit within {self.stop_timeout}s after quit, force-killing"
            )
            self._force_kill(process)
            await exit_task

        logger.info("Daemon stopped")

    def _force_kill(self, process: asyncio.subprocess.Process) -> None:
        self.stats["forced_kills"] += 1
        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            children = []

        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            process.kill()
        except ProcessLookupError:
            pass

    async def send_command(self, command: str) -> None:
        """
        Write one protocol command to the daemon's stdin.

        Raises:
            DaemonNotReadyError: If the daemon is not ready or its stdin is closed
        """
        process = self._process
        if process is None or self._state is not DaemonState.READY:
            raise DaemonNotReadyError(f"Daemon is {self._state.value}")
        await self._write(process, command)

    async def _write(
        self,
        process: asyncio.subprocess.Process,
        text: str,
        quiet: bool = False
    ) -> None:
        stdin = process.stdin
        try:
            if stdin is None or stdin.is_closing():
                raise ConnectionResetError("stdin closed")
            stdin.write(text.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            if quiet:
                logger.debug(f"Could not write to daemon stdin: {e}")
                return
            raise DaemonNotReadyError(f"Daemon stdin closed: {e}") from e

    async def wait_until_ready(self, timeout: float) -> bool:
        """
        Wait until the readiness marker has been seen or the daemon exits.

        Returns:
            True if the daemon is ready
        """
        if self._state is DaemonState.READY:
            return True
        if self._exit_task is None or self._exit_task.done():
            return False

        ready_waiter = asyncio.ensure_future(self._ready_event.wait())
        try:
            await asyncio.wait(
                [ready_waiter, self._exit_task],
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not ready_waiter.done():
                ready_waiter.cancel()

        return self._state is DaemonState.READY

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        ready = False
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError:
                logger.warning(f"Daemon stdout line exceeded {self.STREAM_LIMIT} bytes, discarded")
                continue
            if not raw:
                break

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")

            if not ready:
                if is_ready_line(line):
                    ready = True
                    self._mark_ready(process)
                else:
                    logger.debug(f"Daemon (starting): {line}")
                continue

            if self.on_line is None:
                continue
            self.stats["lines_forwarded"] += 1
            try:
                self.on_line(line)
            except Exception as e:
                logger.error(f"Daemon output handler error: {e}", exc_info=True)

    def _mark_ready(self, process: asyncio.subprocess.Process) -> None:
        if process is not self._process or self._planned_stop:
            return
        self._state = DaemonState.READY
        self._ready_event.set()
        log_info_event("daemon_supervisor", "ready", pid=process.pid)
        self.on_event(BridgeEvent.DAEMON_READY, {})

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                continue
            if not raw:
                break

            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            if any(marker in text for marker in self.stderr_suppressions):
                self.stats["stderr_suppressed"] += 1
                continue
            logger.warning(f"Daemon error: {text}")

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        # Drain both streams first so every stdout line is handled before exit
        await asyncio.gather(self._stdout_task, self._stderr_task, return_exceptions=True)
        code = await process.wait()

        planned = self._planned_stop
        self.last_exit_code = code
        self._process = None
        self._started_at = None
        self._ready_event.clear()
        if self._state is not DaemonState.RESTARTING:
            self._state = DaemonState.STOPPED

        if planned:
            log_info_event("daemon_supervisor", "exited", pid=process.pid, code=code)
        else:
            self.stats["unexpected_exits"] += 1
            log_warning_event("daemon_supervisor", "exited_unexpectedly", pid=process.pid, code=code)
            self.on_event(BridgeEvent.DAEMON_EXITED, {"code": code})

        if self.on_exit is not None:
            try:
                self.on_exit(code, planned)
            except Exception as e:
                logger.error(f"Daemon exit handler error: {e}", exc_info=True)

    def process_stats(self) -> Optional[Dict[str, Any]]:
        """
        Resource usage of the live daemon process.

        Returns:
            Dict with pid, memory_mb, cpu_percent and uptime_sec, or None
            when no daemon is running
        """
        process = self._process
        if process is None:
            return None
        try:
            ps_process = psutil.Process(process.pid)
            with ps_process.oneshot():
                rss = ps_process.memory_info().rss
                cpu_percent = ps_process.cpu_percent(interval=None)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

        uptime = time.monotonic() - self._started_at if self._started_at else 0.0
        return {
            "pid": process.pid,
            "memory_mb": round(rss / (1024 ** 2), 1),
            "cpu_percent": cpu_percent,
            "uptime_sec": round(uptime, 1),
        }

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
