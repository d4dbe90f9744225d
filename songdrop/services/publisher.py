from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone

from fastapi.concurrency import run_in_threadpool

from songdrop.models.job import DownloadJob
from songdrop.models.user import User
from songdrop.services.notifier import PushNotifier
from songdrop.services.object_store import ObjectStore
from songdrop.services.repository import TaskRepository
from songdrop.utils.constants import DOWNLOAD_URL_REFRESH_MARGIN_MINUTES, DOWNLOAD_URL_TTL_HOURS

logger = logging.getLogger(__name__)


def storage_path_for(owner: User, local_file_path: str) -> str:
    # deterministic so a re-run for the same file lands on the same object
    return f"users/{owner.id}/songs/{os.path.basename(local_file_path)}"


def remove_local_file(local_file_path: str) -> None:
    try:
        os.remove(local_file_path)
        logger.info("Local file deleted: %s", local_file_path)
    except OSError as e:
        logger.warning("Failed to delete local file %s: %s", local_file_path, e)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without an offset; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PublishOrchestrator:
    """
    Turns one downloaded file into a stored, signed and announced artifact:
    upload -> signed URL -> persist COMPLETED -> notify -> local cleanup.
    """

    def __init__(
        self,
        repository: TaskRepository,
        store: ObjectStore,
        notifier: PushNotifier | None = None,
        url_ttl: timedelta = timedelta(hours=DOWNLOAD_URL_TTL_HOURS),
        refresh_margin: timedelta = timedelta(minutes=DOWNLOAD_URL_REFRESH_MARGIN_MINUTES),
    ):
        self.repository = repository
        self.store = store
        self.notifier = notifier
        self.url_ttl = url_ttl
        self.refresh_margin = refresh_margin

    async def publish(self, job: DownloadJob, local_file_path: str, owner_namespace: str, owner: User) -> bool:
        if job is None:
            raise ValueError("job is required")
        if not local_file_path:
            raise ValueError("local_file_path is required")
        if owner is None:
            raise ValueError("owner is required")

        if not os.path.isfile(local_file_path):
            logger.error("Local file not found for job %s: %s", job.id, local_file_path)
            return False

        storage_path = storage_path_for(owner, local_file_path)
        logger.info("Publishing job %s for %s: %s -> %s", job.id, owner_namespace, local_file_path, storage_path)

        if await run_in_threadpool(self.store.exists, storage_path):
            logger.info("Object already stored at %s, skipping upload", storage_path)
            uploaded_path = storage_path
        else:
            uploaded_path = await run_in_threadpool(self.store.upload, local_file_path, storage_path)

        if not uploaded_path:
            logger.error("Upload returned no storage path for job %s", job.id)
            return False

        download_url = await run_in_threadpool(self.store.signed_url, uploaded_path, self.url_ttl)
        if not download_url:
            logger.error("Failed to issue download URL for job %s", job.id)
            return False

        self.repository.mark_completed(
            job,
            storage_path=uploaded_path,
            download_url=download_url,
            download_url_expiry=datetime.now(timezone.utc) + self.url_ttl,
        )
        logger.info("Job %s stored at %s and marked COMPLETED", job.id, uploaded_path)

        await self._notify(job, owner, download_url)
        remove_local_file(local_file_path)
        return True

    async def _notify(self, job: DownloadJob, owner: User, download_url: str) -> None:
        if not owner.fcm_token:
            logger.warning("User %s has no push token; skipping notification for job %s", owner.id, job.id)
            return
        if self.notifier is None:
            logger.warning("No notifier configured; skipping notification for job %s", job.id)
            return

        try:
            message_id = await self.notifier.send_download_ready(owner.fcm_token, job.title, download_url)
        except Exception:
            logger.exception("Exception while sending notification for job %s", job.id)
            return

        if message_id:
            logger.info("Notification sent for job %s, MessageId=%s", job.id, message_id)
        else:
            logger.warning("Notification failed for job %s", job.id)

    async def ensure_download_url(self, job: DownloadJob) -> str | None:
        """
        Hand out the stored URL of a COMPLETED job while it is still valid, or
        sign a fresh one for the stored object and persist it. None if no URL
        can be produced.
        """
        expiry = _as_utc(job.download_url_expiry)
        if job.download_url and expiry and expiry > datetime.now(timezone.utc) + self.refresh_margin:
            logger.info("Returning existing download URL for job %s", job.id)
            return job.download_url

        if not job.storage_path:
            logger.warning("Job %s has no storage path; cannot issue a download URL", job.id)
            return None

        download_url = await run_in_threadpool(self.store.signed_url, job.storage_path, self.url_ttl)
        if not download_url:
            logger.error("Failed to refresh download URL for job %s", job.id)
            return None

        expiry = datetime.now(timezone.utc) + self.url_ttl
        self.repository.update_download_url(job, download_url, expiry)
        logger.info("Issued new download URL for job %s, valid until %s", job.id, expiry.isoformat())
        return download_url
