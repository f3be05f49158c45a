"""arq task definitions for the invoice pipeline.

- `process_invoice`: one processing attempt for one invoice (job id
  `process-invoice:{invoice_id}`, so an invoice is never queued twice).
- `retry_sweep` / `recover_stuck`: cron jobs for the retry worker and the
  recovery service, each on its own schedule. Recovery also runs once at
  worker startup.

The pipeline services are synchronous (SQLAlchemy sessions, provider SDKs)
and run in a thread so the event loop keeps serving other jobs.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import asyncio
import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings
from arq.cron import CronJob

from invoicing.extraction.factory import create_extraction_provider
from invoicing.extraction.fallback import AIFallbackExtractor
from invoicing.integration.catalog import HttpCatalogGateway
from invoicing.matching.products import ProductMatcher
from invoicing.ocr.service import OCRService
from invoicing.queue.base import ArqJobQueue
from invoicing.queue.processor import InvoiceProcessor
from invoicing.recovery.service import RecoveryService
from invoicing.retry.service import RetryService
from invoicing.shared.config import Settings, get_settings
from invoicing.shared.db import create_db_engine, create_session_factory, init_db
from invoicing.storage.service import create_blob_store

logger = logging.getLogger(__name__)


async def process_invoice(
    ctx: dict[str, Any], invoice_id: int, tenant_id: int, source: str = "upload"
) -> dict[str, Any] | None:
    """Run one processing attempt.

    Args:
        ctx: arq context (holds the services built in `startup`)
        invoice_id: Invoice to process
        tenant_id: Owning tenant
        source: What enqueued the job

    Returns:
        ProcessingSummary as dict, or None if the invoice was not claimable
    """
    processor: InvoiceProcessor = ctx["processor"]
    summary = await asyncio.to_thread(processor.process, invoice_id, tenant_id, source)
    return summary.model_dump(mode="json") if summary else None


async def retry_sweep(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron: re-submit invoices that failed for transient reasons."""
    retry_service: RetryService = ctx["retry_service"]
    result = await retry_service.sweep()
    return result.model_dump()


async def recover_stuck(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron: re-enqueue invoices stuck in pending/processing."""
    recovery_service: RecoveryService = ctx["recovery_service"]
    result = await recovery_service.recover_stuck_invoices()
    return result.model_dump()


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize services and run one recovery sweep.

    Called once when worker starts. Initializes shared services
    to avoid re-creating them for each job.
    """
    logger.info("Initializing worker services...")
    settings: Settings = ctx.get("settings") or get_settings()
    engine = create_db_engine(settings)
    init_db(engine)
    session_factory = create_session_factory(engine)

    queue = ArqJobQueue(ctx["redis"], settings.queue_name)
    fallback = AIFallbackExtractor(create_extraction_provider(settings), settings)
    catalog = HttpCatalogGateway(settings)

    ctx["settings"] = settings
    ctx["engine"] = engine
    ctx["catalog"] = catalog
    ctx["processor"] = InvoiceProcessor(
        session_factory,
        settings,
        fallback,
        blob_store=create_blob_store(settings),
        ocr=OCRService(settings),
        product_matcher=ProductMatcher(catalog, settings),
    )
    ctx["retry_service"] = RetryService(session_factory, queue, settings)
    ctx["recovery_service"] = RecoveryService(session_factory, queue, settings)
    logger.info("Worker services initialized")

    try:
        await ctx["recovery_service"].recover_stuck_invoices()
    except Exception:
        logger.exception("Startup recovery sweep failed; the scheduled sweep will retry")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - cleanup resources."""
    logger.info("Worker shutting down...")
    catalog = ctx.get("catalog")
    if catalog is not None:
        catalog.close()
    engine = ctx.get("engine")
    if engine is not None:
        engine.dispose()


def _every(minutes: int) -> set[int]:
    return set(range(0, 60, minutes))


def build_cron_jobs(settings: Settings) -> list[CronJob]:
    """Schedule the retry and recovery sweeps from their configured intervals."""
    return [
        cron(retry_sweep, minute=_every(settings.retry_sweep_interval_minutes), second=0),
        cron(recover_stuck, minute=_every(settings.recovery_interval_minutes), second=30),
    ]


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions and cron jobs to register
    - Redis connection settings and queue name
    - Job timeout and result retention

    Results are not kept (keep_result=0) so a finished invoice job id can
    be enqueued again by the retry worker or the recovery sweep.
    """

    functions = [process_invoice]
    cron_jobs: list[CronJob] = []
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings: RedisSettings | None = None
    queue_name = "invoice-processing"
    max_jobs = 5
    job_timeout = 300
    keep_result = 0

    @classmethod
    def configure(cls, settings: Settings) -> None:
        """Apply configuration to the worker class before `run_worker`."""
        cls.redis_settings = RedisSettings.from_dsn(settings.redis_url)
        cls.queue_name = settings.queue_name
        cls.max_jobs = settings.queue_max_jobs
        cls.job_timeout = settings.queue_job_timeout
        cls.cron_jobs = build_cron_jobs(settings)
