import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError

from app.api.v1.clearance.router import router as clearance_router
from app.api.v1.jobs.queue import open_job_queue
from app.api.v1.jobs.router import router as jobs_router
from app.api.v1.students.router import router as students_router
from app.api.v1.transfers.router import router as transfers_router
from app.core.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    app.state.job_queue = None
    try:
        app.state.job_queue = await open_job_queue()
    except (RedisError, OSError, asyncio.TimeoutError):
        logger.exception("Job queue unavailable; background requests will be refused")
    yield
    if app.state.job_queue is not None:
        await app.state.job_queue.aclose()


def create_app() -> FastAPI:
    app = FastAPI(title="Student Lifecycle Engine", lifespan=lifespan)

    # CORS: allow frontend to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(students_router)
    app.include_router(clearance_router)
    app.include_router(transfers_router)
    app.include_router(jobs_router)

    return app


app = create_app()
