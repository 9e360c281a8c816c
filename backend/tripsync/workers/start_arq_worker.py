#!/usr/bin/env python3
"""Start the ARQ worker for anonymization jobs and maintenance sweeps.

USAGE:
    python -m tripsync.workers.start_arq_worker

    Or directly:
    arq tripsync.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    from tripsync.workers.arq_worker import WorkerSettings

    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
