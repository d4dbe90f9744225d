import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from songdrop.database import Base  # noqa: E402
from songdrop.models import DownloadJob, User  # noqa: E402
from songdrop.services.state_machine import JobStatus  # noqa: E402


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def downloads_dir(tmp_path):
    d = tmp_path / "downloads"
    d.mkdir()
    return d


@pytest.fixture()
def make_user(db):
    def _make(username="alice", fcm_token="device-token-1"):
        user = User(username=username, fcm_token=fcm_token)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture()
def make_job(db):
    counter = {"n": 0}

    def _make(item_id="abc", owner_namespace="alice", status=JobStatus.PENDING, retry_count=0, title="Song"):
        counter["n"] += 1
        job = DownloadJob(
            item_id=item_id,
            owner_namespace=owner_namespace,
            title=title,
            status=status,
            retry_count=retry_count,
            created_at=datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["n"]),
        )
        db.add(job)
        db.commit()
        return job

    return _make


def reload_job(session_factory, job_id):
    with session_factory() as s:
        return s.get(DownloadJob, job_id)


class FakeStore:
    """In-memory stand-in for ObjectStore with per-call failure switches."""

    def __init__(self, *, upload_ok=True, sign_failures=0):
        self.objects = set()
        self.upload_ok = upload_ok
        self.sign_failures = sign_failures
        self.calls = []

    def exists(self, path):
        self.calls.append(("exists", path))
        return path in self.objects

    def upload(self, local_path, path):
        self.calls.append(("upload", local_path, path))
        if not self.upload_ok:
            return None
        self.objects.add(path)
        return path

    def signed_url(self, path, ttl):
        self.calls.append(("signed_url", path, ttl))
        if self.sign_failures > 0:
            self.sign_failures -= 1
            return None
        return f"https://storage.example.com/{path}?expires={int(ttl.total_seconds())}"

    def delete(self, path):
        self.calls.append(("delete", path))
        self.objects.discard(path)
        return True

    def count(self, name):
        return sum(1 for c in self.calls if c[0] == name)


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_download_ready(self, target, title, download_url):
        if self.fail:
            raise RuntimeError("push service unavailable")
        self.sent.append((target, title, download_url))
        return f"projects/test/messages/{len(self.sent)}"


class FakeDownloader:
    """
    Writes <item_id>.mp3 into the owner directory. `outcomes` is consumed one
    entry per call: "ok", "fail" (raise) or "ghost" (report a file that was
    never written). When exhausted, every call succeeds.
    """

    def __init__(self, root, outcomes=()):
        self.root = Path(root)
        self.outcomes = list(outcomes)
        self.calls = []

    async def download(self, item_id, owner_namespace):
        self.calls.append((item_id, owner_namespace))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        filename = f"{item_id}.mp3"
        if outcome == "fail":
            raise RuntimeError("yt-dlp exited with ERROR")
        if outcome == "ghost":
            return filename
        target = self.root / owner_namespace
        target.mkdir(parents=True, exist_ok=True)
        (target / filename).write_bytes(b"ID3 fake audio")
        return filename


@pytest.fixture()
def fake_store():
    return FakeStore()


@pytest.fixture()
def fake_notifier():
    return FakeNotifier()


def local_artifact(downloads_dir, owner="alice", name="abc.mp3"):
    target = Path(downloads_dir) / owner
    target.mkdir(parents=True, exist_ok=True)
    path = target / name
    path.write_bytes(b"ID3 fake audio")
    return str(path)
