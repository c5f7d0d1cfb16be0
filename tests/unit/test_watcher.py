import os

import pytest
from plex_encoder.services.discovery import is_media_file
from plex_encoder.services.watcher import CREATED, MODIFIED, LibraryWatcher


@pytest.fixture
def changes():
    return []


@pytest.fixture
def watcher(tmp_path, changes):
    async def on_change(kind, path):
        changes.append((kind, os.path.basename(path)))

    return LibraryWatcher(
        root=str(tmp_path),
        on_change=on_change,
        file_filter=is_media_file,
        poll_interval=3600,
        stability_seconds=2,
    )


async def test_new_file_reported_after_stability_window(tmp_path, watcher, changes):
    await watcher.start()
    try:
        (tmp_path / "new.mkv").write_bytes(b"abc")

        await watcher.poll_once(now=100.0)
        assert changes == []

        await watcher.poll_once(now=101.0)
        assert changes == []

        await watcher.poll_once(now=102.5)
        assert changes == [(CREATED, "new.mkv")]

        await watcher.poll_once(now=200.0)
        assert changes == [(CREATED, "new.mkv")]
    finally:
        await watcher.stop()


async def test_growing_file_waits_until_settled(tmp_path, watcher, changes):
    await watcher.start()
    try:
        path = tmp_path / "copying.mkv"
        path.write_bytes(b"a")
        await watcher.poll_once(now=0.0)

        path.write_bytes(b"ab")
        await watcher.poll_once(now=5.0)
        assert changes == []

        await watcher.poll_once(now=10.0)
        assert changes == [(CREATED, "copying.mkv")]
    finally:
        await watcher.stop()


async def test_existing_file_change_is_modification(tmp_path, watcher, changes):
    path = tmp_path / "existing.mkv"
    path.write_bytes(b"a")
    await watcher.start()
    try:
        path.write_bytes(b"abcdef")
        await watcher.poll_once(now=0.0)
        await watcher.poll_once(now=3.0)
        assert changes == [(MODIFIED, "existing.mkv")]
    finally:
        await watcher.stop()


async def test_ignores_non_media_and_baseline(tmp_path, watcher, changes):
    (tmp_path / "already-there.mkv").write_bytes(b"a")
    await watcher.start()
    try:
        (tmp_path / "notes.txt").write_text("hello")
        await watcher.poll_once(now=0.0)
        await watcher.poll_once(now=10.0)
        assert changes == []
    finally:
        await watcher.stop()


async def test_callback_errors_do_not_stop_polling(tmp_path):
    seen = []

    async def on_change(kind, path):
        seen.append(os.path.basename(path))
        raise RuntimeError("handler failed")

    watcher = LibraryWatcher(str(tmp_path), on_change, is_media_file, 3600, 0)
    await watcher.start()
    try:
        (tmp_path / "a.mkv").write_bytes(b"a")
        (tmp_path / "b.mkv").write_bytes(b"b")
        await watcher.poll_once(now=0.0)
        await watcher.poll_once(now=1.0)
        assert sorted(seen) == ["a.mkv", "b.mkv"]
    finally:
        await watcher.stop()
