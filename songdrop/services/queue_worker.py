from __future__ import annotations

import asyncio
import logging
import os
import threading
from datetime import timedelta

from songdrop.models.job import DownloadJob
from songdrop.services.downloader import owner_dir
from songdrop.services.publisher import PublishOrchestrator, remove_local_file
from songdrop.services.repository import TaskRepository
from songdrop.services.state_machine import JobStatus
from songdrop.utils.constants import ERROR_COOLDOWN_SECONDS, POLL_DELAY_SECONDS

logger = logging.getLogger(__name__)


class QueueWorker:
    """
    Single-flight background processor for the download queue.

    Built once per process and shared through app.state. The loop is started on
    demand with start_if_not_running(), drains every eligible job and stops by
    itself when a fetch comes back empty. The lock only guards the running flag
    and the task handle; it is never held across an await.
    """

    def __init__(
        self,
        session_factory,
        downloader,
        store,
        notifier=None,
        *,
        poll_delay: float = POLL_DELAY_SECONDS,
        error_cooldown: float = ERROR_COOLDOWN_SECONDS,
    ):
        self.session_factory = session_factory
        self.downloader = downloader
        self.store = store
        self.notifier = notifier
        # artifacts are looked up where the downloader writes them
        self.downloads_dir = str(downloader.root)
        self.poll_delay = poll_delay
        self.error_cooldown = error_cooldown

        self._lock = threading.Lock()
        self._running = False
        self._task: asyncio.Task | None = None

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def start_if_not_running(self, owner_namespace: str) -> bool:
        """Spawn the loop on the current event loop. Returns False if one is already active."""
        if not owner_namespace:
            raise ValueError("owner_namespace is required")

        with self._lock:
            if self._running:
                logger.debug("Queue worker already running; start request for %s ignored", owner_namespace)
                return False

            loop = asyncio.get_running_loop()
            self._running = True
            self._task = loop.create_task(self._run(owner_namespace), name="songdrop-queue-worker")
        return True

    async def wait_idle(self) -> None:
        with self._lock:
            task = self._task
        if task is not None:
            await task

    def reconcile(self, older_than: timedelta | None = None) -> int:
        """Requeue jobs stranded in PROCESSING by a previous process. Call before the first start."""
        if self.is_running():
            raise RuntimeError("Cannot reconcile while the queue worker is running")
        with self.session_factory() as db:
            return TaskRepository(db).reset_stale_processing(older_than)

    async def _run(self, owner_namespace: str) -> None:
        logger.info("Queue worker starting (trigger=%s)", owner_namespace)
        try:
            await self._worker_loop(owner_namespace)
        finally:
            with self._lock:
                self._running = False
                self._task = None
            logger.info("Queue worker stopped.")

    async def _worker_loop(self, owner_namespace: str) -> None:
        while True:
            try:
                with self.session_factory() as db:
                    repo = TaskRepository(db)
                    jobs = repo.fetch_eligible_jobs()
                    if not jobs:
                        logger.info("No pending download jobs found. Queue worker stopping.")
                        break

                    logger.info("Fetched %s eligible download job(s)", len(jobs))
                    publisher = PublishOrchestrator(repo, self.store, self.notifier)
                    for job in jobs:
                        await self._process(repo, publisher, job, owner_namespace)
            except Exception:
                logger.exception("Unhandled error in queue worker loop. Cooling down before retry.")
                await asyncio.sleep(self.error_cooldown)

            await asyncio.sleep(self.poll_delay)

    async def _process(
        self,
        repo: TaskRepository,
        publisher: PublishOrchestrator,
        job: DownloadJob,
        owner_namespace: str,
    ) -> None:
        if not repo.mark_processing(job):
            logger.info("Job %s changed since it was fetched (now %s); skipping", job.id, job.status.value)
            return
        logger.info("Processing download job %s: title=%s item_id=%s", job.id, job.title, job.item_id)

        filename = None
        error = None
        try:
            filename = await self.downloader.download(job.item_id, owner_namespace)
        except Exception as e:
            logger.error("Downloader failed for item_id=%s: %s", job.item_id, e)
            error = f"download failed: {e}"

        local_path = None
        if filename:
            local_path = os.path.join(owner_dir(owner_namespace, self.downloads_dir), os.path.basename(filename))

        if not local_path or not os.path.isfile(local_path):
            if local_path and not error:
                logger.error("Downloader reported %s but no file exists at %s", filename, local_path)
                error = f"artifact missing: {filename}"
            self._record_failure(repo, job, error or "download produced no artifact", "Download")
            return

        owner = repo.get_owner(owner_namespace)
        if owner is None:
            logger.error("User %s not found. Cannot publish job %s", owner_namespace, job.id)
            repo.mark_failed(job, f"owner account not found: {owner_namespace}")
            remove_local_file(local_path)
            return

        try:
            published = await publisher.publish(job, local_path, owner_namespace, owner)
        except Exception as e:
            logger.exception("Exception while publishing job %s", job.id)
            repo.db.rollback()
            published = False
            error = f"publish failed: {e}"

        if published:
            logger.info("Job %s published successfully", job.id)
            return

        if self._record_failure(repo, job, error or "publish failed", "Publish") == JobStatus.FAILED:
            remove_local_file(local_path)

    def _record_failure(self, repo: TaskRepository, job: DownloadJob, error: str, stage: str) -> JobStatus:
        status = repo.record_transient_failure(job, error)
        if status == JobStatus.FAILED:
            logger.warning("%s permanently failed for job %s after %s attempts", stage, job.id, job.retry_count)
        else:
            logger.warning("%s failed for job %s. Will retry (attempt %s).", stage, job.id, job.retry_count)
        return status
