"""Polling watcher reporting settled file creations and modifications."""
import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

CREATED = "created"
MODIFIED = "modified"

Signature = Tuple[int, int]


@dataclass
class _PendingChange:
    signature: Signature
    since: float
    kind: str


class LibraryWatcher:
    """
    Watches a directory tree by comparing periodic (size, mtime) snapshots.

    A change is reported only once the file's signature has stayed the same
    for stability_seconds, so files still being copied are not probed early.
    """

    def __init__(
        self,
        root: str,
        on_change: Callable[[str, str], Awaitable[None]],
        file_filter: Callable[[str], bool],
        poll_interval: float,
        stability_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.root = root
        self.on_change = on_change
        self.file_filter = file_filter
        self.poll_interval = poll_interval
        self.stability_seconds = stability_seconds
        self.clock = clock
        self._known: Dict[str, Signature] = {}
        self._pending: Dict[str, _PendingChange] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Take the baseline snapshot and start polling."""
        if self.running:
            return
        self._known = await asyncio.to_thread(self._snapshot)
        self._pending.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Watching {self.root} ({len(self._known)} media files)")

    async def stop(self):
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Stopped watching {self.root}")

    async def _run(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Watcher error on {self.root}: {e}", exc_info=True)

    def _snapshot(self) -> Dict[str, Signature]:
        snapshot = {}
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for name in filenames:
                path = os.path.join(dirpath, name)
                if not self.file_filter(path):
                    continue
                try:
                    stat = os.stat(path)
                except OSError:
                    continue
                snapshot[path] = (stat.st_size, stat.st_mtime_ns)
        return snapshot

    async def poll_once(self, now: Optional[float] = None):
        """Compare a fresh snapshot with the last one and report settled changes."""
        now = self.clock() if now is None else now
        current = await asyncio.to_thread(self._snapshot)

        for path in set(self._known) - set(current):
            del self._known[path]
        for path in set(self._pending) - set(current):
            del self._pending[path]

        for path, signature in sorted(current.items()):
            if self._known.get(path) == signature:
                self._pending.pop(path, None)
                continue

            pending = self._pending.get(path)
            if pending is None or pending.signature != signature:
                kind = MODIFIED if path in self._known else CREATED
                self._pending[path] = _PendingChange(signature, now, kind)
                continue

            if now - pending.since < self.stability_seconds:
                continue

            del self._pending[path]
            self._known[path] = signature
            logger.info(f"File {pending.kind}: {path}")
            try:
                await self.on_change(pending.kind, path)
            except Exception as e:
                logger.error(f"Error handling {pending.kind} file {path}: {e}", exc_info=True)
