"""
Bridge configuration.

All settings have defaults suitable for running next to a bundled
``basic-pitch-cli/basicpitch_daemon`` binary and may be overridden through
``PITCH_BRIDGE_*`` environment variables.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_DAEMON_PATH = BASE_DIR / "basic-pitch-cli" / "basicpitch_daemon"
DEFAULT_OUTPUT_DIR = BASE_DIR / "temp-midi"

# Benign ONNX Runtime schema-registration warnings printed by the daemon
DEFAULT_STDERR_SUPPRESSIONS: Tuple[str, ...] = (
    "Schema error",
    "but it is already registered from file",
)


class ConfigError(ValueError):
    """Raised when an environment override cannot be parsed"""
    pass


def _parse_float(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name}: expected a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name}: must be positive, got {value}")
    return value


def _parse_bool(name: str, raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name}: expected true/false, got {raw!r}")


@dataclass
class BridgeConfig:
    """
    Runtime settings for the bridge.

    Attributes:
        daemon_command: Executable (plus optional prefix arguments) of the daemon
        output_dir: Directory handed to the daemon with ``--daemon``
        ffmpeg_path: Explicit normalization tool path (None = auto-detect)
        stop_timeout: Seconds to wait after ``quit`` before force-killing
        ready_timeout: Seconds a submission waits for the daemon to become ready
        stale_after: Age in seconds after which a pending request is stale
        sweep_interval: Seconds between stale-request sweeps
        duplicate_grace: Seconds a handled output path suppresses duplicates
        auto_start: Start the daemon on submission when it is not running
        stderr_suppressions: Substrings of daemon stderr lines to drop
        log_level: Root logging level name
    """
    daemon_command: Tuple[str, ...] = (str(DEFAULT_DAEMON_PATH),)
    output_dir: Path = DEFAULT_OUTPUT_DIR
    ffmpeg_path: Optional[str] = None
    stop_timeout: float = 3.0
    ready_timeout: float = 10.0
    stale_after: float = 20.0
    sweep_interval: float = 20.0
    duplicate_grace: float = 5.0
    auto_start: bool = True
    stderr_suppressions: Tuple[str, ...] = field(default=DEFAULT_STDERR_SUPPRESSIONS)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BridgeConfig":
        """
        Build a configuration from ``PITCH_BRIDGE_*`` environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ`` (tests)

        Raises:
            ConfigError: If a numeric or boolean override is malformed
        """
        env = os.environ if environ is None else environ
        overrides: Dict[str, object] = {}

        daemon = env.get("PITCH_BRIDGE_DAEMON")
        if daemon:
            overrides["daemon_command"] = tuple(daemon.split())

        output_dir = env.get("PITCH_BRIDGE_OUTPUT_DIR")
        if output_dir:
            overrides["output_dir"] = Path(output_dir)

        ffmpeg = env.get("PITCH_BRIDGE_FFMPEG")
        if ffmpeg:
            overrides["ffmpeg_path"] = ffmpeg

        for name, attr in (
            ("PITCH_BRIDGE_STOP_TIMEOUT", "stop_timeout"),
            ("PITCH_BRIDGE_READY_TIMEOUT", "ready_timeout"),
            ("PITCH_BRIDGE_STALE_AFTER", "stale_after"),
            ("PITCH_BRIDGE_SWEEP_INTERVAL", "sweep_interval"),
            ("PITCH_BRIDGE_DUPLICATE_GRACE", "duplicate_grace"),
        ):
            raw = env.get(name)
            if raw:
                overrides[attr] = _parse_float(name, raw)

        auto_start = env.get("PITCH_BRIDGE_AUTO_START")
        if auto_start:
            overrides["auto_start"] = _parse_bool("PITCH_BRIDGE_AUTO_START", auto_start)

        suppress = env.get("PITCH_BRIDGE_STDERR_SUPPRESS")
        if suppress is not None:
            overrides["stderr_suppressions"] = tuple(
                part.strip() for part in suppress.split(",") if part.strip()
            )

        log_level = env.get("PITCH_BRIDGE_LOG_LEVEL")
        if log_level:
            level_name = log_level.upper()
            if not isinstance(logging.getLevelName(level_name), int):
                raise ConfigError(f"PITCH_BRIDGE_LOG_LEVEL: unknown level {log_level!r}")
            overrides["log_level"] = level_name

        config = cls(**overrides)
        logger.debug(f"Loaded configuration: {config}")
        return config
