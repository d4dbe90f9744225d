import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from songdrop.database import SessionLocal
from songdrop.routers import downloads
from songdrop.services.downloader import YtDlpDownloader
from songdrop.services.notifier import NotifierError, PushNotifier
from songdrop.services.object_store import ObjectStore
from songdrop.services.queue_worker import QueueWorker

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def build_queue_worker() -> QueueWorker:
    try:
        notifier = PushNotifier.from_env()
    except NotifierError as e:
        logger.warning("Push notifications disabled: %s", e)
        notifier = None

    return QueueWorker(
        SessionLocal,
        downloader=YtDlpDownloader(),
        store=ObjectStore.from_env(),
        notifier=notifier,
    )


def create_app(worker_factory=build_queue_worker) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        worker = worker_factory()
        reset = worker.reconcile()
        if reset:
            logger.warning("Requeued %s job(s) left PROCESSING by a previous run", reset)
        app.state.queue_worker = worker
        yield
        # the loop has no abort switch; process shutdown tears it down
        app.state.queue_worker = None

    app = FastAPI(title="SongDrop Backend", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(downloads.router)

    # Health check
    @app.get("/")
    def health_check():
        return {"status": "ok"}

    return app


app = create_app()
