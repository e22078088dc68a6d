import time
import logging
from contextlib import asynccontextmanager # Import for lifespan management
from fastapi import FastAPI, Request
from research_app.api.routers import health_router, research_router, status_router, templates_router
from research_app.background.celery_worker import celery
from research_app.config import settings
from research_app.services.events import RedisStatusBroadcaster
from research_app.services.job_store import RedisJobStore
from research_app.services.notifier import WebhookNotifier
from research_app.services.queue import ResearchQueue
from research_app.services.templates import TemplateRegistry
from research_app.utils.logger import setup_logging

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Context manager for managing the lifespan of the FastAPI application.
    Connects to the job store and wires the queue to the Celery app. The pipeline
    itself runs in the Celery worker (see research_app.background.tasks).
    """
    logger.info("Application startup...")
    store = RedisJobStore(settings.REDIS_URL)
    await store.ping()

    templates = TemplateRegistry()
    broadcaster = RedisStatusBroadcaster(settings.REDIS_URL)
    notifier = None
    if settings.WEBHOOK_URLS:
        notifier = WebhookNotifier(settings.WEBHOOK_URLS, settings.WEBHOOK_SECRET, settings.WEBHOOK_TIMEOUT)

    queue = ResearchQueue(
        store=store,
        templates=templates,
        celery_app=celery,
        broadcaster=broadcaster,
        notifier=notifier,
        watchdog_threshold_seconds=settings.WATCHDOG_THRESHOLD_SECONDS,
    )
    app.state.queue = queue
    app.state.templates = templates

    yield # Application runs

    logger.info("Application shutdown...")
    if notifier is not None:
        await notifier.close()
    await broadcaster.close()
    await store.close()

# Create FastAPI app instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="A FastAPI service that researches a query on the open web and synthesizes a cited report.",
    lifespan=lifespan # Assign the lifespan manager
)

# Add a middleware to log requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log incoming requests and their processing time.
    """
    start_time = time.time()
    logger.info(f"Incoming request: {request.method} {request.url.path}")
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(f"Request finished: {request.method} {request.url.path} with status {response.status_code} in {process_time:.4f}s")
    return response

# Include API routers
app.include_router(health_router, prefix=settings.API_PREFIX, tags=["Health"])
app.include_router(research_router, prefix=settings.API_PREFIX, tags=["Research"])
app.include_router(status_router, prefix=settings.API_PREFIX, tags=["Status"])
app.include_router(templates_router, prefix=settings.API_PREFIX, tags=["Templates"])

@app.get("/", tags=["Root"])
async def read_root():
    """
    Root endpoint providing a welcome message.
    """
    return {"message": f"Welcome to {settings.APP_NAME}!"}


def run():
    """Console entry point: serves the API with uvicorn."""
    import uvicorn
    uvicorn.run("research_app.main:app", host=settings.HOST, port=settings.PORT, log_config=None)
