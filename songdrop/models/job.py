from datetime import datetime, timezone

from sqlalchemy import String, DateTime, Integer, Text, Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from songdrop.database import Base
from songdrop.services.state_machine import JobStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DownloadJob(Base):
    __tablename__ = "download_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # YouTube video id handed to the downloader
    item_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    owner_namespace: Mapped[str] = mapped_column(String(150), nullable=False)
    title: Mapped[str | None] = mapped_column(String(300), nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", native_enum=False, length=20),
        default=JobStatus.PENDING,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    downloaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # populated only once the job is COMPLETED, e.g. "users/12/songs/song-title.mp3"
    storage_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    download_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    download_url_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


Index("ix_download_jobs_status_retry", DownloadJob.status, DownloadJob.retry_count)
