"""Library discovery: tree walk, classification and live watch."""

import logging
import os
import re
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from plex_encoder.config import settings
from plex_encoder.exceptions import InvalidLibraryPathError, ProbeError
from plex_encoder.models.schemas import MediaInfo, ScanResult
from plex_encoder.services.admission import AdmissionPolicy, admission_policy
from plex_encoder.services.job_store import JobStore, job_store
from plex_encoder.services.notifier import SCAN_PROGRESS, Notifier, notifier
from plex_encoder.services.watcher import CREATED, LibraryWatcher
from plex_encoder.utils.ffprobe import probe_video

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS = {
    ".mp4", ".mkv", ".avi", ".mov", ".wmv", ".m4v", ".mpg", ".mpeg", ".flv",
}

EPISODE_PATTERN = re.compile(r"S(\d+)E(\d+)|(\d+)x(\d+)", re.IGNORECASE)


def is_media_file(path: str) -> bool:
    """Check the extension against the recognised media containers."""
    return Path(path).suffix.lower() in MEDIA_EXTENSIONS


def classify(file_path: str) -> Dict[str, Optional[str]]:
    """
    Derive title, episode name and media type from a file path.

    Files with a season/episode marker are series episodes titled after
    their directory; everything else is a movie titled after the file.
    """
    path = Path(file_path)
    if EPISODE_PATTERN.search(path.stem):
        return {
            "title": path.parent.name,
            "episode_name": path.stem,
            "media_type": "tv",
        }
    return {"title": path.stem, "episode_name": None, "media_type": "movie"}


class DiscoveryEngine:
    """Finds media files under a library root and records them."""

    def __init__(
        self,
        store: JobStore = job_store,
        admission: AdmissionPolicy = admission_policy,
        events: Notifier = notifier,
        probe: Callable = probe_video,
        watch_poll_interval: float = settings.WATCH_POLL_INTERVAL,
        watch_stability_seconds: float = settings.WATCH_STABILITY_SECONDS,
    ):
        self.store = store
        self.admission = admission
        self.events = events
        self.probe = probe
        self.watch_poll_interval = watch_poll_interval
        self.watch_stability_seconds = watch_stability_seconds
        self.watcher: Optional[LibraryWatcher] = None

    async def scan(self, root_path: str) -> ScanResult:
        """
        Scan a library directory, start watching it, then admit new jobs.

        Args:
            root_path: Library root

        Returns:
            Aggregate counters for the scan

        Raises:
            InvalidLibraryPathError: If root_path is not a directory
        """
        root = Path(root_path).expanduser()
        if not root.is_dir():
            raise InvalidLibraryPathError(f"Path does not exist or is not a directory: {root_path}")
        root = root.resolve()

        result = ScanResult()
        await self._scan_directory(root, result)

        logger.info(
            f"Scan completed: {result.scanned} files scanned, {result.added} added, "
            f"{result.needs_transcode} need encoding, {result.errors} errors"
        )

        await self.watch(str(root))
        await self.admission.admit_pending()
        return result

    async def _scan_directory(self, directory: Path, result: ScanResult):
        try:
            entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
        except OSError as e:
            logger.error(f"Error scanning directory {directory}: {e}")
            result.errors += 1
            return

        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    await self._scan_directory(Path(entry.path), result)
                    continue
                if not entry.is_file() or not is_media_file(entry.name):
                    continue
            except OSError as e:
                logger.error(f"Error reading {entry.path}: {e}")
                result.errors += 1
                continue

            result.scanned += 1
            self.events.publish(
                SCAN_PROGRESS,
                current_file=entry.path,
                total_scanned=result.scanned,
                added=result.added,
            )

            try:
                recorded = await self.process_media_file(entry.path)
            except (OSError, ProbeError) as e:
                logger.error(f"Error processing file {entry.path}: {e}")
                result.errors += 1
                continue

            if recorded:
                result.added += 1
                if recorded[1]:
                    result.needs_transcode += 1

    async def process_media_file(self, file_path: str) -> Optional[Tuple[int, bool]]:
        """
        Probe a media file and upsert its record.

        Returns:
            (media id, needs encoding), or None if the file has no video stream

        Raises:
            OSError: If the file cannot be stat'ed
            ProbeError: If ffprobe cannot read the file
        """
        size = os.stat(file_path).st_size
        info = await self.probe(file_path)
        if not info:
            logger.info(f"No video stream found in {file_path}")
            return None

        media = MediaInfo(
            directory=str(Path(file_path).parent),
            file_path=file_path,
            file_size_bytes=size,
            encoding_type=info["codec"],
            **classify(file_path),
        )
        media_id = await self.store.upsert_media(media)
        return media_id, self.store.needs_encoding(media.encoding_type)

    async def watch(self, root_path: str):
        """Watch root_path, replacing any watch on a different root."""
        if self.watcher and self.watcher.root == root_path and self.watcher.running:
            return
        await self.stop_watching()

        self.watcher = LibraryWatcher(
            root=root_path,
            on_change=self._on_file_change,
            file_filter=is_media_file,
            poll_interval=self.watch_poll_interval,
            stability_seconds=self.watch_stability_seconds,
        )
        await self.watcher.start()

    async def stop_watching(self):
        if self.watcher:
            await self.watcher.stop()
            self.watcher = None

    @property
    def watched_root(self) -> Optional[str]:
        return self.watcher.root if self.watcher and self.watcher.running else None

    async def _on_file_change(self, kind: str, file_path: str):
        """Record a settled file; only new files trigger admission."""
        try:
            recorded = await self.process_media_file(file_path)
        except (OSError, ProbeError) as e:
            logger.error(f"Error processing {kind} file {file_path}: {e}")
            return

        if recorded and kind == CREATED:
            await self.admission.admit_pending()


# Global discovery engine instance
discovery_engine = DiscoveryEngine()
