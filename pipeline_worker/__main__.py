import asyncio
import logging
import os
import socket
from typing import Optional

from canvascast.db.session import Database
from canvascast.pipeline.runner import PipelineRunner
from canvascast.pipeline.services import PipelineServices
from canvascast.settings import settings
from pipeline_worker.clients import GenerationClient, HttpObjectStorage, LocalObjectStorage
from pipeline_worker.worker import PipelineWorker

logger = logging.getLogger(__name__)

def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"

async def run_worker(worker_id: Optional[str] = None):
    database = Database(settings.SQLALCHEMY_DATABASE_URI)
    generation = GenerationClient(
        settings.GENERATION_API_URL,
        api_key=settings.GENERATION_API_KEY,
        timeout=settings.GENERATION_TIMEOUT_SECONDS
    )
    if settings.STORAGE_API_URL:
        storage = HttpObjectStorage(settings.STORAGE_API_URL, api_key=settings.STORAGE_API_KEY)
    else:
        logger.info(f"STORAGE_API_URL not set, storing assets under {settings.LOCAL_STORAGE_ROOT}")
        storage = LocalObjectStorage(settings.LOCAL_STORAGE_ROOT)

    await database.open()
    await generation.open()
    await storage.open()
    try:
        services = PipelineServices(
            fetcher=generation,
            script=generation,
            speech=generation,
            transcriber=generation,
            images=generation,
            renderer=generation,
            moderator=generation,
        )
        runner = PipelineRunner(database, services, storage)
        worker = PipelineWorker(database, runner, worker_id or default_worker_id())
        await worker.run()
    finally:
        await storage.close()
        await generation.close()
        await database.close()

def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    asyncio.run(run_worker(os.environ.get("WORKER_ID")))

if __name__ == "__main__":
    main()
