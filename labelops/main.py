from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from labelops.config.logging import setup_logging
from labelops.config.settings import settings
from labelops.infra.database import get_database
from labelops.v1.ai.registry_init import init_ai_registries
from labelops.v1.core.exceptions import RequestContextMiddleware, install_error_handlers
from labelops.v1.core.registries import (
    completion_registry,
    embedding_registry,
    job_registry,
)
from labelops.v1.evaluation.routes import router as evaluation_router
from labelops.v1.healthz import router as health_router
from labelops.v1.infra.jobs.continuation import get_worker_trigger
from labelops.v1.infra.jobs.registry_init import register_job_handlers
from labelops.v1.infra.jobs.routes import router as jobs_router
from labelops.v1.ingest.routes import router as ingest_router
from labelops.v1.workers.routes import router as workers_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let in-flight self-triggers finish before the loop goes away
    await get_worker_trigger(settings).drain(timeout=settings.self_trigger_timeout_s)
    await get_database(settings).close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Persistent job queue and workers for labeling operations",
        version=settings.version,
        debug=settings.debug,
        # All endpoints are under the /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    install_error_handlers(app)

    # Populate registries before any worker can run
    if not job_registry.is_frozen():
        init_ai_registries(settings)
        register_job_handlers(settings)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(workers_router, prefix="/v1")
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(ingest_router, prefix="/v1")
    app.include_router(evaluation_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        embedding_registry.freeze()
        completion_registry.freeze()
        job_registry.freeze()

    return app


# Create the app instance
app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "labelops.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )


if __name__ == "__main__":
    main()
