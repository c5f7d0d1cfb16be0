import pytest
from plex_encoder.exceptions import InvalidLibraryPathError, ProbeError
from plex_encoder.models.job import QUEUED
from plex_encoder.services.admission import AdmissionPolicy
from plex_encoder.services.discovery import DiscoveryEngine, classify, is_media_file
from plex_encoder.services.watcher import CREATED, MODIFIED


class FakeProbe:
    """Maps file names to probe results; unknown names are h264."""

    def __init__(self, results=None):
        self.results = results or {}
        self.calls = []

    async def __call__(self, file_path):
        self.calls.append(file_path)
        for name, result in self.results.items():
            if file_path.endswith(name):
                if isinstance(result, Exception):
                    raise result
                return result
        return {"codec": "h264", "duration": 60.0}


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
async def engine(store, events, probe):
    discovery = DiscoveryEngine(
        store=store,
        admission=AdmissionPolicy(store=store, events=events),
        events=events,
        probe=probe,
        watch_poll_interval=3600,
        watch_stability_seconds=0,
    )
    yield discovery
    await discovery.stop_watching()


@pytest.mark.parametrize("name,expected", [
    ("movie.mkv", True),
    ("MOVIE.MKV", True),
    ("clip.mp4", True),
    ("old.mpeg", True),
    ("show.flv", True),
    ("notes.txt", False),
    ("subs.srt", False),
    ("archive.mkv.part", False),
])
def test_is_media_file(name, expected):
    assert is_media_file(name) is expected


def test_classify_series_episode():
    info = classify("/tv/Some Show/Season 1/Some.Show.S01E02.mkv")
    assert info == {
        "title": "Season 1",
        "episode_name": "Some.Show.S01E02",
        "media_type": "tv",
    }


def test_classify_alternate_episode_marker():
    info = classify("/tv/Other Show/other show 3x07.mp4")
    assert info["media_type"] == "tv"
    assert info["title"] == "Other Show"


def test_classify_lowercase_marker():
    assert classify("/tv/Show/show.s02e10.mkv")["media_type"] == "tv"


def test_classify_movie():
    info = classify("/movies/A Film (2001).mkv")
    assert info == {"title": "A Film (2001)", "episode_name": None, "media_type": "movie"}


async def test_scan_counts_and_admits(tmp_path, store, engine, probe):
    (tmp_path / "old.mkv").write_bytes(b"x" * 10)
    (tmp_path / "new.mkv").write_bytes(b"y" * 20)
    probe.results = {"new.mkv": {"codec": "hevc", "duration": 10.0}}

    result = await engine.scan(str(tmp_path))

    assert (result.scanned, result.added, result.needs_transcode, result.errors) == (2, 2, 1, 0)
    jobs = await store.list_jobs_by_status(QUEUED)
    assert [job.file_path for job in jobs] == [str(tmp_path / "old.mkv")]


async def test_scan_recurses_and_filters(tmp_path, engine, store, probe):
    show = tmp_path / "Show"
    show.mkdir()
    (show / "Show.S01E01.mkv").write_bytes(b"a")
    (show / "cover.jpg").write_bytes(b"b")
    (tmp_path / "readme.txt").write_text("hi")

    result = await engine.scan(str(tmp_path))

    assert result.scanned == 1
    assert probe.calls == [str(show / "Show.S01E01.mkv")]
    media = await store.find_media_needing_transcode()
    assert media[0].title == "Show"
    assert media[0].episode_name == "Show.S01E01"
    assert media[0].media_type == "tv"
    assert media[0].file_size_bytes == 1


async def test_scan_tolerates_probe_errors(tmp_path, engine, probe):
    (tmp_path / "corrupt.mkv").write_bytes(b"?")
    (tmp_path / "good.mkv").write_bytes(b"ok")
    probe.results = {"corrupt.mkv": ProbeError("moov atom not found")}

    result = await engine.scan(str(tmp_path))

    assert (result.scanned, result.added, result.errors) == (2, 1, 1)


async def test_scan_skips_files_without_video(tmp_path, engine, probe, store):
    (tmp_path / "audio_only.mp4").write_bytes(b"a")
    probe.results = {"audio_only.mp4": None}

    result = await engine.scan(str(tmp_path))

    assert (result.scanned, result.added, result.errors) == (1, 0, 0)
    assert await store.find_media_needing_transcode() == []


async def test_rescan_does_not_duplicate(tmp_path, engine, store):
    (tmp_path / "a.mkv").write_bytes(b"a")

    await engine.scan(str(tmp_path))
    await engine.scan(str(tmp_path))

    assert len(await store.find_media_needing_transcode()) == 1
    assert len(await store.list_jobs_by_status(QUEUED)) == 1


async def test_scan_publishes_progress(tmp_path, engine, events):
    (tmp_path / "a.mkv").write_bytes(b"a")
    (tmp_path / "b.mkv").write_bytes(b"b")

    await engine.scan(str(tmp_path))

    progress = [e for e in events.received if e["type"] == "scan_progress"]
    assert [e["total_scanned"] for e in progress] == [1, 2]
    assert progress[0]["current_file"] == str(tmp_path / "a.mkv")
    assert progress[1]["added"] == 1


async def test_scan_rejects_missing_root(tmp_path, engine):
    with pytest.raises(InvalidLibraryPathError):
        await engine.scan(str(tmp_path / "missing"))


async def test_scan_installs_single_watch(tmp_path, engine):
    first = tmp_path / "one"
    second = tmp_path / "two"
    first.mkdir()
    second.mkdir()

    await engine.scan(str(first))
    assert engine.watched_root == str(first.resolve())
    old_watcher = engine.watcher

    await engine.scan(str(second))
    assert engine.watched_root == str(second.resolve())
    assert not old_watcher.running


async def test_created_file_is_admitted(tmp_path, engine, store):
    path = tmp_path / "new.mkv"
    path.write_bytes(b"data")

    await engine._on_file_change(CREATED, str(path))

    assert len(await store.list_jobs_by_status(QUEUED)) == 1


async def test_modified_file_is_recorded_without_admission(tmp_path, engine, store):
    path = tmp_path / "changed.mkv"
    path.write_bytes(b"data")

    await engine._on_file_change(MODIFIED, str(path))

    assert len(await store.find_media_needing_transcode()) == 1
    assert await store.list_jobs_by_status(QUEUED) == []


async def test_file_change_probe_error_is_contained(tmp_path, engine, probe, store):
    path = tmp_path / "locked.mkv"
    path.write_bytes(b"data")
    probe.results = {"locked.mkv": ProbeError("permission denied")}

    await engine._on_file_change(CREATED, str(path))

    assert await store.find_media_needing_transcode() == []
