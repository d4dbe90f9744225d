import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeNotifier, FakeStore, local_artifact, reload_job
from songdrop.services.publisher import PublishOrchestrator, storage_path_for
from songdrop.services.repository import TaskRepository
from songdrop.services.state_machine import JobStatus


@pytest.fixture()
def processing_job(db, make_job):
    job = make_job(item_id="abc", title="Never Gonna Give You Up")
    TaskRepository(db).mark_processing(job)
    return job


def _publish(db, store, notifier, job, path, owner):
    publisher = PublishOrchestrator(TaskRepository(db), store, notifier)
    return asyncio.run(publisher.publish(job, path, "alice", owner))


def test_publish_uploads_signs_persists_notifies_and_cleans_up(
    db, session_factory, make_user, processing_job, downloads_dir, fake_store, fake_notifier
):
    owner = make_user("alice", fcm_token="device-1")
    path = local_artifact(downloads_dir)

    assert _publish(db, fake_store, fake_notifier, processing_job, path, owner) is True

    expected_path = f"users/{owner.id}/songs/abc.mp3"
    assert fake_store.count("upload") == 1
    stored = reload_job(session_factory, processing_job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.storage_path == expected_path
    assert stored.download_url.startswith("https://storage.example.com/" + expected_path)
    assert stored.download_url_expiry is not None
    assert fake_notifier.sent == [("device-1", "Never Gonna Give You Up", stored.download_url)]
    assert not os.path.exists(path)


def test_signed_url_uses_a_48_hour_window(db, make_user, processing_job, downloads_dir, fake_store):
    owner = make_user()
    path = local_artifact(downloads_dir)

    _publish(db, fake_store, None, processing_job, path, owner)

    (_, _, ttl), = [c for c in fake_store.calls if c[0] == "signed_url"]
    assert ttl == timedelta(hours=48)


def test_storage_path_is_deterministic(make_user, downloads_dir):
    owner = make_user()
    path = local_artifact(downloads_dir, name="Song_Title.mp3")

    assert storage_path_for(owner, path) == f"users/{owner.id}/songs/Song_Title.mp3"
    assert storage_path_for(owner, path) == storage_path_for(owner, path)


def test_missing_local_file_fails_fast(db, make_user, processing_job, downloads_dir, fake_store):
    owner = make_user()

    ok = _publish(db, fake_store, None, processing_job, str(downloads_dir / "alice" / "nope.mp3"), owner)

    assert ok is False
    assert fake_store.calls == []
    assert processing_job.status == JobStatus.PROCESSING


def test_publish_is_idempotent_when_object_already_stored(
    db, session_factory, make_user, processing_job, downloads_dir, fake_store
):
    owner = make_user()

    assert _publish(db, fake_store, None, processing_job, local_artifact(downloads_dir), owner) is True
    # same file materialised again, remote copy already present
    assert _publish(db, fake_store, None, processing_job, local_artifact(downloads_dir), owner) is True

    assert fake_store.count("upload") == 1
    assert fake_store.count("exists") == 2
    assert reload_job(session_factory, processing_job.id).status == JobStatus.COMPLETED


def test_upload_without_resulting_path_fails(db, session_factory, make_user, processing_job, downloads_dir):
    owner = make_user()
    store = FakeStore(upload_ok=False)
    path = local_artifact(downloads_dir)

    assert _publish(db, store, None, processing_job, path, owner) is False

    stored = reload_job(session_factory, processing_job.id)
    assert stored.status == JobStatus.PROCESSING
    assert stored.storage_path is None
    assert os.path.exists(path)


def test_url_issuance_failure_leaves_job_uncommitted(db, session_factory, make_user, processing_job, downloads_dir):
    owner = make_user()
    store = FakeStore(sign_failures=1)
    notifier = FakeNotifier()

    assert _publish(db, store, notifier, processing_job, local_artifact(downloads_dir), owner) is False

    stored = reload_job(session_factory, processing_job.id)
    assert stored.status == JobStatus.PROCESSING
    assert stored.storage_path is None
    assert stored.download_url is None
    assert notifier.sent == []


def test_notification_failure_does_not_fail_publish(
    db, session_factory, make_user, processing_job, downloads_dir, fake_store
):
    owner = make_user()
    path = local_artifact(downloads_dir)

    assert _publish(db, fake_store, FakeNotifier(fail=True), processing_job, path, owner) is True

    assert reload_job(session_factory, processing_job.id).status == JobStatus.COMPLETED
    assert not os.path.exists(path)


def test_owner_without_push_token_is_not_notified(db, make_user, processing_job, downloads_dir, fake_store, fake_notifier):
    owner = make_user(fcm_token=None)

    assert _publish(db, fake_store, fake_notifier, processing_job, local_artifact(downloads_dir), owner) is True
    assert fake_notifier.sent == []


def test_cleanup_failure_is_swallowed(db, make_user, processing_job, downloads_dir, fake_store, monkeypatch):
    owner = make_user()
    path = local_artifact(downloads_dir)

    def _locked(_path):
        raise PermissionError("file in use")

    monkeypatch.setattr("songdrop.services.publisher.os.remove", _locked)

    assert _publish(db, fake_store, None, processing_job, path, owner) is True
    assert processing_job.status == JobStatus.COMPLETED


@pytest.fixture()
def completed_job(db, make_job):
    def _make(expires_in, download_url="https://storage.example.com/users/1/songs/abc.mp3?old"):
        job = make_job(item_id="abc", status=JobStatus.COMPLETED)
        job.storage_path = "users/1/songs/abc.mp3"
        job.download_url = download_url
        job.download_url_expiry = datetime.now(timezone.utc) + expires_in
        db.commit()
        return job

    return _make


def _ensure_url(db, store, job):
    return asyncio.run(PublishOrchestrator(TaskRepository(db), store).ensure_download_url(job))


def test_valid_download_url_is_reused(db, completed_job, fake_store):
    job = completed_job(timedelta(hours=24))

    assert _ensure_url(db, fake_store, job) == job.download_url
    assert fake_store.calls == []


def test_expired_download_url_is_reissued_and_stored(db, session_factory, completed_job, fake_store):
    job = completed_job(timedelta(hours=-1))

    url = _ensure_url(db, fake_store, job)

    assert url == "https://storage.example.com/users/1/songs/abc.mp3?expires=172800"
    assert fake_store.count("signed_url") == 1
    stored = reload_job(session_factory, job.id)
    assert stored.download_url == url
    assert stored.status == JobStatus.COMPLETED


def test_download_url_about_to_expire_is_reissued(db, completed_job, fake_store):
    job = completed_job(timedelta(minutes=2))

    assert _ensure_url(db, fake_store, job).endswith("?expires=172800")
    assert fake_store.count("signed_url") == 1


def test_expiry_without_offset_is_read_as_utc(db, completed_job, fake_store):
    job = completed_job(timedelta(hours=24))
    # SQLite returns stored timestamps without an offset
    job.download_url_expiry = job.download_url_expiry.replace(tzinfo=None)

    assert _ensure_url(db, fake_store, job) == job.download_url
    assert fake_store.calls == []


def test_no_download_url_without_stored_object(db, make_job, fake_store):
    job = make_job(item_id="abc", status=JobStatus.COMPLETED)

    assert _ensure_url(db, fake_store, job) is None
    assert fake_store.calls == []


def test_reissue_failure_keeps_old_url(db, session_factory, completed_job):
    job = completed_job(timedelta(hours=-1))

    assert _ensure_url(db, FakeStore(sign_failures=1), job) is None
    assert reload_job(session_factory, job.id).download_url.endswith("?old")
