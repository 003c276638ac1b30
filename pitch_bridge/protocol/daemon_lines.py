"""
Decoder/encoder for the daemon's newline-delimited text protocol.

Inbound (daemon stdout):
    Ready for commands                      readiness marker (substring)
    SUCCESS: "<midi path>" (<N> bytes)      conversion finished
    Error processing <input path>: ...      conversion failed
    Processing: <input path>                progress

Outbound (daemon stdin):
    process "<input path>" "<output dir>"
    quit

The daemon carries no request id; success lines are correlated by file
name only (see output_correlator).
"""

import re
from dataclasses import dataclass
from typing import Union

READY_MARKER = "Ready for commands"
QUIT_COMMAND = "quit\n"

_SUCCESS_PATTERN = re.compile(r'^SUCCESS: "([^"]+)" \((\d+) bytes\)')
_FAILURE_PATTERN = re.compile(r'^Error processing ([^:]+):')
_PROGRESS_PATTERN = re.compile(r'^Processing: (.+)$')


@dataclass(frozen=True)
class SuccessNotification:
    output_path: str
    byte_count: int
    raw: str


@dataclass(frozen=True)
class FailureNotification:
    failed_key: str
    raw: str


@dataclass(frozen=True)
class ProgressNotification:
    path: str
    raw: str


@dataclass(frozen=True)
class UnrecognizedLine:
    raw: str


Notification = Union[SuccessNotification, FailureNotification, ProgressNotification, UnrecognizedLine]


def parse_daemon_line(line: str) -> Notification:
    """
    Classify one line of daemon stdout.

    Args:
        line: A single line; surrounding whitespace is ignored

    Returns:
        One of SuccessNotification, FailureNotification,
        ProgressNotification or UnrecognizedLine
    """
    text = line.strip()

    match = _SUCCESS_PATTERN.match(text)
    if match:
        return SuccessNotification(
            output_path=match.group(1),
            byte_count=int(match.group(2)),
            raw=text,
        )

    match = _FAILURE_PATTERN.match(text)
    if match:
        return FailureNotification(failed_key=match.group(1), raw=text)

    match = _PROGRESS_PATTERN.match(text)
    if match:
        return ProgressNotification(path=match.group(1), raw=text)

    return UnrecognizedLine(raw=text)


def is_ready_line(line: str) -> bool:
    return READY_MARKER in line


def format_process_command(input_path: str, output_dir: str) -> str:
    """Build the ``process`` command line (newline-terminated)."""
    for value in (input_path, output_dir):
        if '"' in value or "\n" in value:
            raise ValueError(f"Path cannot be sent to the daemon: {value!r}")
    return f'process "{input_path}" "{output_dir}"\n'
