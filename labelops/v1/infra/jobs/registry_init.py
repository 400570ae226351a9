"""
Job registry initialization.

Registers all job handlers with the global job registry.
"""

import logging

from labelops.config.settings import Settings, settings
from labelops.v1.core.registries import job_registry
from labelops.v1.infra.jobs.handlers import (
    CleanupHandler,
    EvaluateBatchHandler,
    IngestHandler,
    VectorizeHandler,
)
from labelops.v1.infra.jobs.models import JobType

logger = logging.getLogger(__name__)


def register_job_handlers(app_settings: Settings = settings) -> None:
    """Register all job handlers with the job registry."""

    logger.info("Registering job handlers")

    job_registry.register(JobType.INGEST.value, IngestHandler(app_settings))
    job_registry.register(JobType.VECTORIZE.value, VectorizeHandler(app_settings))
    job_registry.register(
        JobType.EVALUATE_BATCH.value, EvaluateBatchHandler(app_settings)
    )

    # Maintenance job handlers
    job_registry.register(JobType.CLEANUP.value, CleanupHandler(app_settings))

    logger.info(
        "Job handlers registered", extra={"registered_handlers": job_registry.list()}
    )
