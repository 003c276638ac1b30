"""
Parameter validation for daemon restarts.

Converts a flat ``key value key value ...`` list (as sent by the host) into
command-line flags for the daemon. Numeric keys become ``--<key> <value>``.
The two boolean keys are on by default in the daemon, so only ``false``
produces a flag (``--no-melodia-trick`` / ``--no-pitch-bends``).
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


class ParameterValidationError(ValueError):
    """Raised when a parameter list cannot be converted to daemon flags"""
    pass


@dataclass(frozen=True)
class ParameterSpec:
    """
    Declared type and bounds of one daemon parameter.

    Attributes:
        key: Parameter name without leading dashes
        kind: "number" or "boolean"
        description: Human-facing help text
        minimum: Inclusive lower bound (numbers only)
        maximum: Inclusive upper bound (numbers only)
        negative_flag: Flag emitted when a boolean is set to false
    """
    key: str
    kind: str
    description: str
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    negative_flag: Optional[str] = None


PARAMETER_SPECS: Dict[str, ParameterSpec] = {
    spec.key: spec
    for spec in (
        ParameterSpec("onset-threshold", "number",
                      "Onset threshold (higher = fewer onsets detected)", 0.0, 1.0),
        ParameterSpec("frame-threshold", "number",
                      "Frame threshold (higher = fewer notes detected)", 0.0, 1.0),
        ParameterSpec("min-frequency", "number",
                      "Minimum frequency in Hz", 20.0, 8000.0),
        ParameterSpec("max-frequency", "number",
                      "Maximum frequency in Hz", 20.0, 8000.0),
        ParameterSpec("min-note-length", "number",
                      "Minimum note length in seconds", 0.01, 10.0),
        ParameterSpec("tempo-bpm", "number",
                      "Tempo in BPM for beat tracking", 60.0, 200.0),
        ParameterSpec("use-melodia-trick", "boolean",
                      "Use melodia trick for better pitch tracking",
                      negative_flag="--no-melodia-trick"),
        ParameterSpec("include-pitch-bends", "boolean",
                      "Include pitch bends in MIDI output",
                      negative_flag="--no-pitch-bends"),
    )
}

_TRUE_VALUES = ("true", "1")
_FALSE_VALUES = ("false", "0")


def validate_parameter(key: str, value: Any) -> Any:
    """
    Validate a single parameter value against its declared type and bounds.

    Args:
        key: Parameter name (leading dashes already stripped)
        value: Raw value as received from the host (string, number or bool)

    Returns:
        float for numeric parameters, bool for boolean parameters

    Raises:
        ParameterValidationError: Unknown key, unparseable or out-of-range value
    """
    spec = PARAMETER_SPECS.get(key)
    if spec is None:
        raise ParameterValidationError(f"Unknown parameter: {key}")

    if spec.kind == "number":
        if isinstance(value, bool):
            raise ParameterValidationError(f"{key}: Value must be a number")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ParameterValidationError(f"{key}: Value must be a number")
        if not math.isfinite(number):
            raise ParameterValidationError(f"{key}: Value must be a number")
        if number < spec.minimum or number > spec.maximum:
            raise ParameterValidationError(
                f"{key}: Value {_format_number(number)} out of range "
                f"[{_format_number(spec.minimum)}, {_format_number(spec.maximum)}]"
            )
        return number

    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise ParameterValidationError(f"{key}: Value must be true/false")


def _format_number(value: float) -> str:
    # 120.0 -> "120", 0.8 -> "0.8"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def parse_parameter_list(items: Sequence[Any]) -> List[str]:
    """
    Convert a flat key/value list into daemon command-line flags.

    An empty list is legal and yields no flags.

    Args:
        items: ``[k1, v1, k2, v2, ...]``; keys may carry leading dashes

    Returns:
        Ordered list of flags, e.g. ``["--onset-threshold", "0.8", "--no-melodia-trick"]``

    Raises:
        ParameterValidationError: Odd length, unknown key or invalid value.
            The message is prefixed with "Parameter validation failed: ".
    """
    flags: List[str] = []

    try:
        for i in range(0, len(items), 2):
            if i + 1 >= len(items):
                raise ParameterValidationError(f"Missing value for parameter: {items[i]}")

            key = str(items[i]).lstrip("-")
            value = validate_parameter(key, items[i + 1])
            spec = PARAMETER_SPECS[key]

            if spec.kind == "boolean":
                if not value:
                    flags.append(spec.negative_flag)
            else:
                flags.append(f"--{key}")
                flags.append(_format_number(value))

    except ParameterValidationError as e:
        raise ParameterValidationError(f"Parameter validation failed: {e}") from e

    logger.debug(f"Parsed {len(items) // 2} parameters into flags: {flags}")
    return flags


def flags_to_values(flags: Sequence[str]) -> List[Tuple[str, Any]]:
    """
    Re-parse flags produced by :func:`parse_parameter_list` into key/value pairs.

    Boolean parameters that were set to true emit no flag and therefore do
    not appear in the result.

    Raises:
        ParameterValidationError: If a flag is not one this module emits
    """
    negative_flags = {
        spec.negative_flag: spec.key
        for spec in PARAMETER_SPECS.values()
        if spec.negative_flag
    }
    values: List[Tuple[str, Any]] = []
    i = 0
    while i < len(flags):
        flag = flags[i]
        if flag in negative_flags:
            values.append((negative_flags[flag], False))
            i += 1
            continue
        if not flag.startswith("--") or i + 1 >= len(flags):
            raise ParameterValidationError(f"Unexpected flag: {flag}")
        key = flag[2:]
        values.append((key, validate_parameter(key, flags[i + 1])))
        i += 2
    return values


def describe_parameters() -> List[Dict[str, Any]]:
    """Return the parameter table for help listings."""
    described = []
    for spec in PARAMETER_SPECS.values():
        entry: Dict[str, Any] = {
            "key": spec.key,
            "type": spec.kind,
            "description": spec.description,
        }
        if spec.kind == "number":
            entry["range"] = [spec.minimum, spec.maximum]
        else:
            entry["range"] = [1, 0]
        described.append(entry)
    return described
