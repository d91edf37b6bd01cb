"""TrainAI background job service - FastAPI application."""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, settings
from app.api.v1.router import v1_router
from app.api.v1.health import router as health_root_router
from app.core.logging import configure_logging
from app.db.job_store import SupabaseJobStore
from app.db.supabase_client import create_anon_client, create_service_client
from app.db.training_modules import SupabaseTrainingModuleWriter
from app.jobs.executors.registry import build_registry
from app.jobs.processor import JobProcessor
from app.jobs.service import JobService
from app.jobs.store import InMemoryJobStore
from app.providers.mux_client import MuxClient
from app.providers.openai_client import OpenAIClient
from app.storage.uploads import InMemoryUploadStorage, SupabaseUploadStorage

logger = logging.getLogger(__name__)


async def wire_services(app: FastAPI, config: Settings) -> None:
    """Build the store, service, providers and processor and attach them to ``app.state``."""
    http = httpx.AsyncClient(timeout=120.0, follow_redirects=True)
    openai = OpenAIClient(config.openai_api_key, config.openai_base_url, client=http)
    mux = MuxClient(config.mux_token_id, config.mux_token_secret, config.mux_base_url, client=http)

    if config.job_store_backend == "memory":
        logger.warning("Using in-memory job store; jobs are lost on restart")
        store = InMemoryJobStore()
        training_modules = None
        upload_storage = InMemoryUploadStorage()
        auth_client = None
    else:
        service_client = create_service_client(config)
        store = SupabaseJobStore(service_client, config.jobs_table)
        training_modules = SupabaseTrainingModuleWriter(service_client)
        upload_storage = SupabaseUploadStorage(service_client, config.upload_bucket)
        auth_client = create_anon_client(config)

    service = JobService(store, default_max_retries=config.job_default_max_retries)
    registry = build_registry(config, openai, mux, http, training_modules)

    app.state.http = http
    app.state.auth_client = auth_client
    app.state.job_service = service
    app.state.registry = registry
    app.state.upload_storage = upload_storage
    app.state.processor = JobProcessor(
        service,
        registry,
        batch_size=config.job_batch_size,
        retry_delay_minutes=config.job_retry_delay_minutes,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    configure_logging()
    logger.info("Starting %s (job store: %s)", settings.app_name, settings.job_store_backend)
    if not settings.background_job_token:
        logger.warning("BACKGROUND_JOB_TOKEN is not set; the processing trigger rejects every call")

    await wire_services(app, settings)
    logger.info("Executors registered for: %s", ", ".join(t.value for t in app.state.registry.job_types()))

    yield

    logger.info("Shutting down %s", settings.app_name)
    await app.state.http.aclose()


def create_app() -> FastAPI:
    app = FastAPI(
        title="TrainAI Job Service",
        description="Background job orchestration for training content processing",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS - allow frontend dev server and any configured origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    return app


app = create_app()
