"""Encoder process execution with progress tracking."""

import asyncio
import logging
import os
import re
import signal
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from plex_encoder.config import settings
from plex_encoder.exceptions import EncodingError

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class EncoderProfile:
    """Opaque encoder flag set for one acceleration path."""

    name: str
    hardware: bool
    input_args: Tuple[str, ...]
    video_args: Tuple[str, ...]


HARDWARE_PROFILE = EncoderProfile(
    name="hevc_qsv",
    hardware=True,
    input_args=("-hwaccel", "qsv", "-hwaccel_device", "0"),
    video_args=(
        "-c:v", "hevc_qsv",
        "-preset", "veryfast",
        "-global_quality", "28",
        "-profile:v", "main10",
    ),
)

SOFTWARE_PROFILE = EncoderProfile(
    name="libx265",
    hardware=False,
    input_args=(),
    video_args=("-c:v", "libx265", "-preset", "medium", "-crf", "28"),
)


@dataclass
class EncodeResult:
    """Outcome of one encoder run."""

    returncode: int
    stderr_tail: str


def parse_progress_time(text: str) -> Optional[float]:
    """Return the last elapsed-time marker in text, in seconds."""
    matches = TIME_PATTERN.findall(text)
    if not matches:
        return None
    hours, minutes, seconds = matches[-1]
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def format_elapsed(seconds: float) -> str:
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def kill_process(process: asyncio.subprocess.Process):
    """Kill an encoder and everything in its process group."""
    if process.returncode is not None:
        return
    try:
        os.killpg(os.getpgid(process.pid), signal.SIGKILL)
    except ProcessLookupError:
        pass  # Process already gone


class EncoderService:
    """Selects an encoder profile and runs ffmpeg for one file."""

    def __init__(self, ffmpeg_binary: Optional[str] = None, hwaccel: Optional[str] = None):
        self.ffmpeg_binary = ffmpeg_binary or settings.FFMPEG_BINARY
        self.hwaccel = (hwaccel or settings.HWACCEL).lower()
        self._profile: Optional[EncoderProfile] = None

    async def select_profile(self) -> EncoderProfile:
        """
        Pick the hardware or software profile.

        Hardware availability is checked once against `ffmpeg -encoders` and
        cached for the life of the service.
        """
        if self._profile is not None:
            return self._profile

        if self.hwaccel == "none":
            self._profile = SOFTWARE_PROFILE
        elif await self._encoder_available(HARDWARE_PROFILE.name):
            self._profile = HARDWARE_PROFILE
        else:
            if self.hwaccel == "qsv":
                logger.warning("hevc_qsv requested but not available, using libx265")
            self._profile = SOFTWARE_PROFILE

        logger.info(f"Selected encoder profile: {self._profile.name}")
        return self._profile

    async def _encoder_available(self, encoder: str) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_binary, "-hide_banner", "-encoders",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=10)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not list ffmpeg encoders: {e}")
            return False
        return encoder in stdout.decode(errors="replace")

    def build_command(self, profile: EncoderProfile, source_file: str, output_file: str) -> List[str]:
        """HEVC, 10-bit, every audio and subtitle stream copied."""
        return [
            self.ffmpeg_binary,
            "-hide_banner",
            "-nostdin",
            "-y",
            *profile.input_args,
            "-i", source_file,
            "-map", "0",
            *profile.video_args,
            "-pix_fmt", "p010le",
            "-tag:v", "hvc1",
            "-c:a", "copy",
            "-c:s", "copy",
            output_file,
        ]

    async def encode(
        self,
        job_id: int,
        source_file: str,
        output_file: str,
        progress_callback: Callable[[int, Dict], None],
        process_callback: Optional[Callable[[asyncio.subprocess.Process], None]] = None,
        duration: float = 0.0,
        timeout: Optional[float] = None,
    ) -> EncodeResult:
        """
        Run the encoder and stream progress until it exits.

        Args:
            job_id: Job id for progress events
            source_file: Absolute path to source file
            output_file: Scratch output path
            progress_callback: Called with (job_id, progress dict) per time marker
            process_callback: Called with the process once spawned
            duration: Source duration in seconds, enables percentages
            timeout: Seconds before the encoder is killed, None for no limit

        Returns:
            Exit code and the tail of the encoder's diagnostics

        Raises:
            EncodingError: If the encoder cannot start or times out
        """
        profile = await self.select_profile()
        cmd = self.build_command(profile, source_file, output_file)
        logger.info(f"Starting encoding job {job_id}: {source_file} -> {output_file}")
        logger.debug(f"Job {job_id} executing: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise EncodingError(f"Process error: {e}") from e

        if process_callback:
            process_callback(process)

        tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        try:
            await asyncio.wait_for(
                self._read_diagnostics(job_id, process, tail, progress_callback, duration),
                timeout=timeout or None,
            )
            returncode = await process.wait()
        except asyncio.TimeoutError:
            kill_process(process)
            await process.wait()
            raise EncodingError(f"Encoder timed out after {timeout:.0f} seconds")
        except asyncio.CancelledError:
            kill_process(process)
            raise

        if returncode != 0:
            logger.error(f"Job {job_id} encoder exited with code {returncode}")
        return EncodeResult(returncode=returncode, stderr_tail="\n".join(tail))

    async def _read_diagnostics(self, job_id, process, tail, progress_callback, duration):
        assert process.stderr is not None
        buffer = ""
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            buffer += chunk.decode(errors="replace")

            # ffmpeg rewrites its stats line with carriage returns
            lines = re.split(r"[\r\n]", buffer)
            buffer = lines.pop()
            for line in lines:
                line = line.strip()
                if not line:
                    continue
                tail.append(line)
                seconds = parse_progress_time(line)
                if seconds is not None:
                    progress_callback(job_id, self._progress(seconds, duration))

        if buffer.strip():
            tail.append(buffer.strip())

    @staticmethod
    def _progress(seconds: float, duration: float) -> Dict:
        percent = min(seconds / duration * 100, 100.0) if duration > 0 else None
        return {"time": format_elapsed(seconds), "seconds": seconds, "percent": percent}


# Global encoder service instance
encoder_service = EncoderService()
