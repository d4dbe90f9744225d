from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, asc, func, update
from sqlalchemy.orm import Session

from songdrop.models.job import DownloadJob
from songdrop.models.user import User
from songdrop.services.state_machine import JobStatus, ensure_transition
from songdrop.utils.constants import RETRY_LIMIT

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskRepository:
    """
    Reads and mutates persisted download jobs.

    Every mutator validates the status transition, stamps last_checked_at and
    commits immediately, so a crash mid-loop strands at most the one job that
    was PROCESSING at the time.
    """

    def __init__(self, db: Session):
        self.db = db

    # ---------- queries ----------
    def fetch_eligible_jobs(self, limit: int | None = None) -> list[DownloadJob]:
        q = (
            select(DownloadJob)
            .where(DownloadJob.status == JobStatus.PENDING)
            .where(DownloadJob.retry_count <= RETRY_LIMIT)
            .order_by(asc(DownloadJob.created_at), asc(DownloadJob.id))
        )
        if limit:
            q = q.limit(limit)
        return list(self.db.execute(q).scalars().all())

    def count_by_status(self) -> dict[str, int]:
        rows = self.db.execute(
            select(DownloadJob.status, func.count()).group_by(DownloadJob.status)
        ).all()
        out = {s.value: 0 for s in JobStatus}
        for status, count in rows:
            out[JobStatus(status).value] = count
        return out

    def get_job(self, job_id: int) -> DownloadJob | None:
        return self.db.get(DownloadJob, job_id)

    def get_owner(self, owner_namespace: str) -> User | None:
        return self.db.execute(
            select(User).where(User.username == owner_namespace)
        ).scalars().first()

    # ---------- mutators ----------
    def _set_status(self, job: DownloadJob, target: JobStatus) -> None:
        ensure_transition(job.status, target)
        job.status = target
        job.last_checked_at = utcnow()

    def mark_processing(self, job: DownloadJob) -> bool:
        """
        Claim a PENDING job for this worker and reload it from the database.

        The claim is a conditional UPDATE, so a job that was picked up, finished
        or re-enqueued since it was fetched is never processed from a stale
        snapshot. Returns False when the row was no longer claimable.
        """
        result = self.db.execute(
            update(DownloadJob)
            .where(DownloadJob.id == job.id)
            .where(DownloadJob.status == JobStatus.PENDING)
            .where(DownloadJob.retry_count <= RETRY_LIMIT)
            .values(status=JobStatus.PROCESSING, last_checked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(job)
        return result.rowcount == 1

    def record_transient_failure(self, job: DownloadJob, error: str | None = None) -> JobStatus:
        """
        Count one recoverable failure against a PROCESSING job and requeue it,
        or park it as FAILED once the retry ceiling is reached.
        """
        if job.status != JobStatus.PROCESSING:
            raise ValueError(f"Job {job.id} is {job.status.value}, not PROCESSING")

        job.retry_count = (job.retry_count or 0) + 1
        target = JobStatus.FAILED if job.retry_count >= RETRY_LIMIT else JobStatus.PENDING
        self._set_status(job, target)
        if error:
            job.last_error = error[:2000]
        self.db.commit()
        return target

    def mark_failed(self, job: DownloadJob, error: str | None = None) -> None:
        self._set_status(job, JobStatus.FAILED)
        if error:
            job.last_error = error[:2000]
        self.db.commit()

    def mark_completed(
        self,
        job: DownloadJob,
        *,
        storage_path: str,
        download_url: str,
        download_url_expiry: datetime,
    ) -> None:
        if job.status == JobStatus.COMPLETED:
            # re-publish of a finished job only refreshes the URL
            job.last_checked_at = utcnow()
        else:
            self._set_status(job, JobStatus.COMPLETED)
        job.storage_path = storage_path
        job.download_url = download_url
        job.download_url_expiry = download_url_expiry
        job.downloaded_at = job.last_checked_at
        job.last_error = None
        self.db.commit()

    def update_download_url(self, job: DownloadJob, download_url: str, download_url_expiry: datetime) -> None:
        if job.status != JobStatus.COMPLETED:
            raise ValueError(f"Job {job.id} is {job.status.value}, not COMPLETED")
        job.download_url = download_url
        job.download_url_expiry = download_url_expiry
        job.last_checked_at = utcnow()
        self.db.commit()

    def requeue(self, job: DownloadJob) -> None:
        """External re-enqueue: back to PENDING with a fresh retry budget."""
        if job.status == JobStatus.PROCESSING:
            raise ValueError(f"Job {job.id} is being processed and cannot be re-enqueued")
        self._set_status(job, JobStatus.PENDING)
        job.retry_count = 0
        job.last_error = None
        self.db.commit()

    def reset_stale_processing(self, older_than: timedelta | None = None) -> int:
        """
        Return jobs left PROCESSING by a crashed process to PENDING.
        The retry count is left alone; the interrupted attempt is not counted.
        """
        q = select(DownloadJob).where(DownloadJob.status == JobStatus.PROCESSING)
        if older_than is not None:
            q = q.where(DownloadJob.last_checked_at <= utcnow() - older_than)

        stale = self.db.execute(q).scalars().all()
        for job in stale:
            self._set_status(job, JobStatus.PENDING)
            logger.warning("Reset stale PROCESSING job %s (item_id=%s) to PENDING", job.id, job.item_id)

        if stale:
            self.db.commit()
        return len(stale)
