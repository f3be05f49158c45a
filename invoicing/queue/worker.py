"""arq worker runner.

Run with: python -m invoicing.queue.worker

This module configures and runs the invoice processing worker, including
the retry and recovery sweeps.
"""

import logging

from arq import run_worker
from prometheus_client import start_http_server

from invoicing.queue.tasks import WorkerSettings
from invoicing.shared.config import get_settings

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the arq worker."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info(f"Starting worker with Redis: {settings.redis_url}")
    logger.info(f"Queue: {settings.queue_name}, max jobs: {settings.queue_max_jobs}")
    logger.info(f"Job timeout: {settings.queue_job_timeout}s, AI timeout: {settings.ai_request_timeout}s")

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Prometheus metrics on port {settings.metrics_port}")

    WorkerSettings.configure(settings)
    run_worker(WorkerSettings)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
