import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from pipeline_core.core.db import init_db, close_db
from pipeline_core.core.logging import setup_logging
from pipeline_core.api.v1.requests import router as requests_router
from pipeline_core.api.v1.outbox import router as outbox_router
from pipeline_core.core.config import PROJECT_NAME, VERSION
from pipeline_core.core.exception_handlers import setup_exception_handlers

log = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    setup_logging()
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db() # Connect to DB and generate schemas
    yield
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Read-only operations API over the durable state
app.include_router(requests_router, prefix="/api/v1/requests", tags=["Request Lifecycle"])
app.include_router(outbox_router, prefix="/api/v1/outbox", tags=["Outbox Monitoring"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME, "version": VERSION}
