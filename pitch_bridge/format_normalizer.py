"""
Audio format normalization with ffmpeg.

The daemon is most reliable with 22050 Hz mono 16-bit PCM WAV input, so
compressed formats are transcoded to a sibling ``<name>.proc.wav`` file
before submission. The produced file is deleted once its request resolves.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

COMMON_FFMPEG_PATHS = (
    "/opt/homebrew/bin/ffmpeg",  # Apple Silicon Homebrew
    "/usr/local/bin/ffmpeg",     # Intel Homebrew
    "/usr/bin/ffmpeg",           # System install
    "/Applications/ffmpeg",      # Manual install
)

# Extensions normalized even when the caller did not ask for it
NORMALIZE_EXTENSIONS = (".mp3", ".m4a", ".aac", ".flac", ".ogg")

OUTPUT_SUFFIX = ".proc.wav"


class NormalizationError(Exception):
    """Raised when an input file could not be transcoded"""
    pass


class NormalizerNotFoundError(NormalizationError):
    """Raised when no ffmpeg executable can be located"""
    pass


def needs_normalization(path: str) -> bool:
    return Path(path).suffix.lower() in NORMALIZE_EXTENSIONS


def remove_temporary_file(path: Optional[str]) -> bool:
    """
    Delete a normalization output if it still exists.

    Returns:
        True if a file was deleted
    """
    if not path or not os.path.exists(path):
        return False
    try:
        os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove temporary file {path}: {e}")
        return False
    logger.info(f"Cleaned up temporary file: {os.path.basename(path)}")
    return True


class FormatNormalizer:
    """
    Locates ffmpeg and transcodes inputs to the daemon's canonical format.

    Attributes:
        tool_path: Explicit ffmpeg path; when None the tool is searched for
        search_paths: Well-known install locations checked before PATH
    """

    TARGET_SAMPLE_RATE = 22050
    TARGET_CHANNELS = 1
    TARGET_SAMPLE_FORMAT = "s16"

    INSTALL_HINT = "ffmpeg not found. Please install with: brew install ffmpeg"

    def __init__(
        self,
        tool_path: Optional[str] = None,
        search_paths: Sequence[str] = COMMON_FFMPEG_PATHS
    ):
        self.tool_path = tool_path
        self.search_paths = tuple(search_paths)

    def find_tool(self) -> Optional[str]:
        """
        Locate the ffmpeg executable.

        Order: explicit ``tool_path``, well-known install paths, PATH lookup.

        Returns:
            Path to ffmpeg, or None if not found
        """
        if self.tool_path:
            if os.path.exists(self.tool_path):
                return self.tool_path
            logger.warning(f"Configured ffmpeg path does not exist: {self.tool_path}")

        for candidate in self.search_paths:
            if os.path.exists(candidate):
                logger.debug(f"Found ffmpeg at: {candidate}")
                return candidate

        found = shutil.which("ffmpeg")
        if found:
            logger.debug(f"Found ffmpeg via PATH: {found}")
            return found

        logger.warning("ffmpeg not found in common locations or PATH")
        return None

    @staticmethod
    def output_path_for(input_path: str) -> str:
        """Sibling path the normalized file is written to."""
        path = Path(input_path)
        return str(path.with_name(path.stem + OUTPUT_SUFFIX))

    def build_command(self, tool: str, input_path: str, output_path: str) -> List[str]:
        return [
            tool,
            "-i", input_path,
            "-ar", str(self.TARGET_SAMPLE_RATE),
            "-ac", str(self.TARGET_CHANNELS),
            "-sample_fmt", self.TARGET_SAMPLE_FORMAT,
            "-y",
            output_path,
        ]

    async def normalize(self, input_path: str) -> str:
        """
        Transcode ``input_path`` next to itself.

        Returns:
            Path of the normalized file

        Raises:
            NormalizerNotFoundError: If ffmpeg cannot be located
            NormalizationError: If ffmpeg cannot be spawned or exits non-zero
        """
        tool = self.find_tool()
        if tool is None:
            raise NormalizerNotFoundError(self.INSTALL_HINT)

        output_path = self.output_path_for(input_path)
        command = self.build_command(tool, input_path, output_path)

        logger.info(
            f"Normalizing audio: {os.path.basename(input_path)} -> {os.path.basename(output_path)}"
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise NormalizationError(f"ffmpeg could not be started: {e}") from e

        try:
            _, stderr = await process.communicate()
        except BaseException:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            remove_temporary_file(output_path)
            raise

        if process.returncode != 0:
            # No request will ever own a partial output
            remove_temporary_file(output_path)
            diagnostic = stderr.decode("utf-8", errors="replace").strip()
            logger.error(f"Normalization failed with code {process.returncode}: {diagnostic}")
            raise NormalizationError(
                f"ffmpeg failed with code {process.returncode}: {diagnostic}"
            )

        logger.info(f"Normalization complete: {os.path.basename(output_path)}")
        return output_path
