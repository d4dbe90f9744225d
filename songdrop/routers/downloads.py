from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from typing import Any

from songdrop.database import get_db
from songdrop.schemas.download_job import DownloadJobOut, EnqueueRequest, WorkerStatusOut
from songdrop.services.publisher import PublishOrchestrator
from songdrop.services.queue_worker import QueueWorker
from songdrop.services.repository import TaskRepository
from songdrop.services.state_machine import JobStatus

router = APIRouter(prefix="/downloads", tags=["downloads"])


def get_queue_worker(request: Request) -> QueueWorker:
    worker = getattr(request.app.state, "queue_worker", None)
    if worker is None:
        raise HTTPException(status_code=503, detail="Queue worker is not configured")
    return worker


@router.post("/enqueue", status_code=202)
async def enqueue(
    payload: EnqueueRequest,
    db: Session = Depends(get_db),
    worker: QueueWorker = Depends(get_queue_worker),
):
    """
    Re-enqueue jobs for an owner and make sure the queue worker is running.
    Already COMPLETED jobs are not re-run; their download URL is returned instead,
    re-signed first if it has expired.
    """
    repo = TaskRepository(db)

    queued: list[int] = []
    completed: list[dict[str, Any]] = []
    skipped: list[dict[str, Any]] = []

    for job_id in payload.job_ids:
        job = repo.get_job(job_id)
        if job is None or job.owner_namespace != payload.owner_namespace:
            skipped.append({"id": job_id, "reason": "Job not found"})
            continue

        if job.status == JobStatus.COMPLETED:
            download_url = await PublishOrchestrator(repo, worker.store).ensure_download_url(job)
            completed.append({"id": job.id, "download_url": download_url})
            continue

        if job.status == JobStatus.PROCESSING:
            skipped.append({"id": job.id, "status": job.status.value, "reason": "Job is already being processed"})
            continue

        repo.requeue(job)
        queued.append(job.id)

    if not queued and not completed and all(s["reason"] == "Job not found" for s in skipped):
        raise HTTPException(status_code=404, detail="No jobs found")

    started = worker.start_if_not_running(payload.owner_namespace) if queued else False

    return {
        "queued": len(queued),
        "queued_ids": queued,
        "completed": completed,
        "skipped": len(skipped),
        "skipped_items": skipped,
        "worker_started": started,
        "worker_running": worker.is_running(),
    }


@router.get("/worker", response_model=WorkerStatusOut)
def worker_status(worker: QueueWorker = Depends(get_queue_worker)):
    return {"running": worker.is_running()}


@router.get("/stats")
def stats(db: Session = Depends(get_db)):
    return {"by_status": TaskRepository(db).count_by_status()}


@router.get("/{job_id}", response_model=DownloadJobOut)
def get_job(job_id: int, db: Session = Depends(get_db)):
    job = TaskRepository(db).get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
