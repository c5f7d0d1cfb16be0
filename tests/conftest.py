import os
import tempfile

# Settings are read at import time; point them at a throwaway location first
_RUNTIME_DIR = tempfile.mkdtemp(prefix="plex-encoder-tests-")
os.environ.setdefault("DATABASE_PATH", os.path.join(_RUNTIME_DIR, "api.db"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.environ['DATABASE_PATH']}")
os.environ.setdefault("TEMP_DIR", os.path.join(_RUNTIME_DIR, "scratch"))
os.environ.setdefault("LIBRARY_ROOT", os.path.join(_RUNTIME_DIR, "library"))
os.environ.setdefault("HWACCEL", "none")

import pytest  # noqa: E402
from plex_encoder.database import create_engine, create_session_factory, init_db  # noqa: E402
from plex_encoder.models.schemas import MediaInfo  # noqa: E402
from plex_encoder.services.job_store import JobStore  # noqa: E402
from plex_encoder.services.notifier import Notifier  # noqa: E402

ACCEPTED = ["hevc", "h265", "av1"]


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
async def store(tmp_path):
    """A JobStore backed by a fresh SQLite file."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield JobStore(session_factory=create_session_factory(engine), accepted_codecs=ACCEPTED)
    await engine.dispose()


@pytest.fixture
def events():
    """A notifier that records every published event."""
    notifier = Notifier()
    notifier.received = []
    notifier.subscribe(notifier.received.append)
    return notifier


def make_media(path, size=1024, codec="h264", **overrides):
    """Build a MediaInfo for a movie file."""
    values = {
        "title": os.path.splitext(os.path.basename(str(path)))[0],
        "episode_name": None,
        "directory": os.path.dirname(str(path)),
        "file_path": str(path),
        "file_size_bytes": size,
        "encoding_type": codec,
        "media_type": "movie",
    }
    values.update(overrides)
    return MediaInfo(**values)


@pytest.fixture
def media_factory():
    return make_media


# ============================================================================
# Collaborator Fakes
# ============================================================================

class FakeDispatch:
    """Records the control calls a scheduler makes."""

    def __init__(self):
        self.calls = []
        self.paused = False
        self.limit = 2

    def pause(self):
        self.paused = True
        self.calls.append(("pause",))

    def resume(self):
        self.paused = False
        self.calls.append(("resume",))

    def set_concurrency_limit(self, limit):
        self.limit = max(1, limit)
        self.calls.append(("limit", self.limit))
        return self.limit


@pytest.fixture
def fake_dispatch():
    return FakeDispatch()
