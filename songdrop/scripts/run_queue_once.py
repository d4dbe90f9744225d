import asyncio
import sys

from songdrop.database import SessionLocal
from songdrop.main import build_queue_worker
from songdrop.services.repository import TaskRepository


async def drain(owner_namespace: str):
    worker = build_queue_worker()
    worker.reconcile()
    worker.start_if_not_running(owner_namespace)
    await worker.wait_idle()


def main():
    if len(sys.argv) != 2:
        print("usage: python -m songdrop.scripts.run_queue_once OWNER_NAMESPACE")
        raise SystemExit(2)

    asyncio.run(drain(sys.argv[1]))

    db = SessionLocal()
    try:
        print(TaskRepository(db).count_by_status())
    finally:
        db.close()

if __name__ == "__main__":
    main()
