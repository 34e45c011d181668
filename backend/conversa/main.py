import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from conversa.api.v1.router import api_v1_router
from conversa.core.config import settings
from conversa.core.logging import configure_logging
from conversa.services.scheduler import scheduler_loop
from conversa.services.worker import WorkerPool

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler_task = None
    pool = None
    if settings.WORKER_ENABLED:
        scheduler_task = asyncio.create_task(scheduler_loop())
        pool = WorkerPool()
        pool.start()
        app.state.worker_pool = pool
    else:
        logger.info("Worker pool and scheduler disabled (WORKER_ENABLED=false)")

    yield

    if pool is not None:
        await pool.stop()
    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
