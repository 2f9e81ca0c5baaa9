import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from canvascast.api.v1.admin import router as admin_router
from canvascast.api.v1.credits import router as credits_router
from canvascast.api.v1.jobs import router as jobs_router
from canvascast.api.v1.metrics import router as metrics_router
from canvascast.api.v1.projects import router as projects_router
from canvascast.db.session import Database
from canvascast.scheduler.service import SchedulerService
from canvascast.settings import settings

logger = logging.getLogger("uvicorn")

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    database = Database(settings.SQLALCHEMY_DATABASE_URI)
    await database.open()
    app.state.database = database

    # Reaper and gauges, leader-elected across API instances
    scheduler = SchedulerService(database, interval=settings.SCHEDULER_INTERVAL_SECONDS)
    await scheduler.start()
    logger.info(f"{settings.PROJECT_NAME} started")

    yield

    # Shutdown
    await scheduler.stop()
    await database.close()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(projects_router, prefix="/api/v1/projects", tags=["projects"])
app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(credits_router, prefix="/api/v1/users", tags=["credits"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
