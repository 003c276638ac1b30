"""
Daemon line protocol.

This module contains the decoder for the daemon's stdout notifications and
the encoder for commands written to its stdin.
"""

from .daemon_lines import (
    READY_MARKER,
    QUIT_COMMAND,
    Notification,
    SuccessNotification,
    FailureNotification,
    ProgressNotification,
    UnrecognizedLine,
    parse_daemon_line,
    is_ready_line,
    format_process_command,
)

__all__ = [
    "READY_MARKER",
    "QUIT_COMMAND",
    "Notification",
    "SuccessNotification",
    "FailureNotification",
    "ProgressNotification",
    "UnrecognizedLine",
    "parse_daemon_line",
    "is_ready_line",
    "format_process_command",
]
