"""FFprobe wrapper utilities for extracting stream metadata."""
import asyncio
import json
import logging
from typing import Optional, Dict, Any
from plex_encoder.config import settings
from plex_encoder.exceptions import ProbeError

logger = logging.getLogger(__name__)


async def probe_video(file_path: str, ffprobe_binary: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Read the first video stream of a file using ffprobe.

    Args:
        file_path: Path to media file
        ffprobe_binary: ffprobe executable, defaults to settings.FFPROBE_BINARY

    Returns:
        Dictionary with codec, width, height and duration, or None when the
        file has no video stream

    Raises:
        ProbeError: If ffprobe cannot be run or cannot read the file
    """
    try:
        process = await asyncio.create_subprocess_exec(
            ffprobe_binary or settings.FFPROBE_BINARY,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            file_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProbeError(f"Cannot run ffprobe: {e}") from e

    stdout, stderr = await process.communicate()

    if process.returncode != 0:
        raise ProbeError(
            f"ffprobe failed for {file_path}: {stderr.decode(errors='replace').strip()}"
        )

    try:
        data = json.loads(stdout.decode(errors="replace"))
    except json.JSONDecodeError as e:
        raise ProbeError(f"Unreadable ffprobe output for {file_path}: {e}") from e

    video_stream = next(
        (s for s in data.get("streams", []) if s.get("codec_type") == "video"),
        None
    )

    if not video_stream:
        return None

    format_info = data.get("format", {})

    return {
        "codec": video_stream.get("codec_name", "unknown"),
        "width": video_stream.get("width", 0),
        "height": video_stream.get("height", 0),
        "duration": _to_float(format_info.get("duration")),
    }


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
