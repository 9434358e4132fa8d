from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from ingest_queue.api.main import create_app
from ingest_queue.models import IngestQueueConfig
from ingest_queue.processors import MediaContentProcessor, PlaceholderAIClient
from ingest_queue.queue import JobQueue, SQLiteStore, Worker
from ingest_queue.storage import LocalStorage

WORKER_SECRET = "worker-secret"
CRON_SECRET = "cron-secret"
WEBHOOK_SECRET = "webhook-secret"


class FakeClock:
    """Controllable UTC clock shared by the store, queue and monitor."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def store(db_path, clock):
    """SQLiteStore on a temporary database file."""
    s = SQLiteStore(db_path, busy_base_delay_s=0.01, clock=clock)
    yield s
    s.close()


@pytest.fixture
def queue(store, clock):
    return JobQueue(store, clock=clock)


@pytest.fixture
def config(tmp_path, db_path):
    return IngestQueueConfig.from_dict(
        {
            "store": {"db_path": db_path, "busy_base_delay_s": 0.01},
            "storage": {"root": str(tmp_path / "storage")},
            "secrets": {
                "worker_secret": WORKER_SECRET,
                "cron_secret": CRON_SECRET,
                "webhook_secret": WEBHOOK_SECRET,
            },
        }
    )


@pytest.fixture
def storage(config):
    s = LocalStorage(config.storage)
    s.ensure_buckets()
    return s


@pytest.fixture
def upload(storage):
    """Write a file into the ingest bucket and return its object path."""

    def _upload(object_path: str, data: bytes = b"fake media bytes") -> str:
        storage.write("ingest", object_path, data)
        return object_path

    return _upload


@pytest.fixture
def processor(store, storage, config):
    return MediaContentProcessor(store, PlaceholderAIClient(), storage, config.processing)


@pytest.fixture
def worker(queue, processor):
    return Worker(queue, processor)


@pytest.fixture
def api_store(db_path):
    """Store on the wall clock, matching the app's monitor and queue."""
    s = SQLiteStore(db_path, busy_base_delay_s=0.01)
    yield s
    s.close()


@pytest.fixture
def app(config, api_store):
    return create_app(config, store=api_store)


@pytest.fixture(scope="function")
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def age_job(store, job_id, status, **delta):
    """Force a job into `status` with updated_at moved into the past."""
    from ingest_queue.queue.sqlite_backend import format_timestamp

    stamp = format_timestamp(store.clock() - timedelta(**delta))
    with store.db.conn:
        store.db.conn.execute(
            "UPDATE jobs SET status = ?, updated_at = ?, created_at = MIN(created_at, ?) WHERE id = ?",
            (status, stamp, stamp, job_id),
        )


@pytest.fixture
def aged():
    return age_job
