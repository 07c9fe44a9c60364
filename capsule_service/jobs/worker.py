"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from capsule_service.config import settings
from capsule_service.infrastructure.observability.logging import get_logger, setup_logging
from capsule_service.jobs.crank_job import CrankJob, start_crank_scheduler

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def run_crank_once() -> None:
    """Single crank pass, for use from an external cron."""
    await start_crank_scheduler(CrankJob(), max_cycles=1)


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "crank": start_crank_scheduler,
    "crank_once": run_crank_once,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "crank").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
