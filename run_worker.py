"""
Start an RQ worker for import jobs (IMPORT_QUEUE=rq deployments).

Usage:
    REDIS_URL=redis://localhost:6379/0 python run_worker.py
"""

from __future__ import annotations

import logging
import os

from epub_reader.importing import RQJobQueue, WorkerConfig
from epub_reader.logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    config = WorkerConfig.from_env()
    queue = RQJobQueue(
        config,
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        queue_name=os.getenv("RQ_QUEUE_NAME", "import-jobs"),
    )
    logger.info("Listening for import jobs on %s", queue.queue.name)
    queue.work()


if __name__ == "__main__":
    main()
