"""Pytest configuration: make the project root importable and provide shared fixtures."""

import io
import os
import sys
import tempfile
from unittest.mock import MagicMock

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# bookvision.main builds a module-level app; keep its data out of the repo
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="bookvision-test-"))

from PIL import Image  # noqa: E402

from bookvision.config import Settings  # noqa: E402
from bookvision.schemas import ImageMeta, TrainingExample  # noqa: E402
from bookvision.session import Session  # noqa: E402
from bookvision.store import PersistentStore  # noqa: E402
from bookvision.assets import AssetStore  # noqa: E402


class FakeScheduler:
    """Records start/stop calls instead of spawning poll threads."""

    def __init__(self):
        self.started = []
        self.stopped = []
        self.running = set()

    def start(self, job_id, tick):
        if job_id in self.running:
            return False
        self.started.append(job_id)
        self.running.add(job_id)
        return True

    def stop(self, job_id):
        self.stopped.append(job_id)
        self.running.discard(job_id)

    def stop_all(self):
        for job_id in list(self.running):
            self.stop(job_id)

    def is_polling(self, job_id):
        return job_id in self.running

    def active(self):
        return sorted(self.running)


class Clock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path / "data"),
        fal_key="test-key",
        queue_url="https://queue.test",
        run_url="https://run.test",
        storage_url="https://storage.test",
        poll_interval=0.01,
    )


@pytest.fixture
def store(settings):
    return PersistentStore(settings.data_dir, namespace=settings.storage_namespace)


@pytest.fixture
def assets(settings):
    return AssetStore(settings.data_dir)


@pytest.fixture
def session(store, assets):
    s = Session(store, assets)
    s.initialize()
    return s


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def remote():
    return MagicMock()


@pytest.fixture
def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def make_examples(png_bytes):
    def _make(n, description="a" * 10):
        return [
            TrainingExample(
                image=ImageMeta(name=f"page{i}.png", size=len(png_bytes), type="image/png"),
                description=description,
                image_data=png_bytes,
            )
            for i in range(n)
        ]

    return _make
