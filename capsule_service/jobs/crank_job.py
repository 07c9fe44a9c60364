"""
Crank Job for executing expired intent capsules.
Runs as a background worker so execution does not depend on an external
scheduler hitting the cron endpoint.
"""

import asyncio
from datetime import datetime

from capsule_service.config import Settings, settings as default_settings
from capsule_service.infrastructure.observability.logging import get_logger
from capsule_service.models.domain.capsule_domain import CrankResult
from capsule_service.services.crank.execution_crank import run_crank
from capsule_service.services.crank.signer import ConfigurationError, load_crank_keypair
from capsule_service.services.ledger.cancellation import CancellationToken
from capsule_service.services.ledger.rpc_client import LedgerRpcClient

logger = get_logger(__name__)

ERROR_RETRY_SECONDS = 60


class CrankJobError(Exception):
    """Custom exception for crank job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class CrankJobMetrics:
    """Metrics tracking for crank runs."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for new job run."""
        self.start_time = datetime.utcnow()
        self.eligible_count = 0
        self.executed_count = 0
        self.errors: list[str] = []
        self.signatures: dict[str, str] = {}
        self.truncated = False
        self.total_duration_seconds = 0.0

    def record_result(self, result: CrankResult):
        self.eligible_count = result.eligible_count
        self.executed_count = result.executed_count
        self.errors = list(result.errors)
        self.signatures = dict(result.signatures)
        self.truncated = result.truncated

        for error in self.errors:
            logger.warning("Capsule execution failed", error=error, job_run="crank")

    def finalize(self):
        """Finalize metrics and calculate totals."""
        self.total_duration_seconds = (datetime.utcnow() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert metrics to dictionary for logging."""
        return {
            "job_run": "crank",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "eligible_count": self.eligible_count,
            "executed_count": self.executed_count,
            "truncated": self.truncated,
            "success_rate_percent": round(
                (self.executed_count / self.eligible_count * 100) if self.eligible_count > 0 else 0,
                2,
            ),
            "errors_count": len(self.errors),
            "errors": self.errors,
            "signatures": self.signatures,
        }


class CrankJob:
    """
    Background job that periodically runs one crank pass.

    The ledger client is owned by the job: created on first use and
    released by close().
    """

    def __init__(self, settings: Settings | None = None, client: LedgerRpcClient | None = None):
        self.settings = settings or default_settings
        self._client = client
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = CrankJobMetrics()

    @property
    def client(self) -> LedgerRpcClient:
        if self._client is None:
            self._client = LedgerRpcClient.from_settings(self.settings)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def run_once(self, now: int | None = None) -> dict:
        """
        Run a single crank pass.

        Returns:
            Dict: Job execution metrics and results

        Raises:
            CrankJobError: If the signer is misconfigured or the pass fails
        """
        if self.is_running:
            logger.warning("Crank job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            try:
                signer = load_crank_keypair(self.settings.CRANK_WALLET_PRIVATE_KEY)
            except ConfigurationError as e:
                raise CrankJobError(str(e), operation="load_signer", recoverable=False) from e

            logger.info("Starting crank job", program_id=self.settings.PROGRAM_ID)

            cancel = CancellationToken.with_timeout(self.settings.CRANK_DEADLINE_SECONDS)
            result = await run_crank(self.client, self.settings, signer, now=now, cancel=cancel)

            self.job_metrics.record_result(result)
            self.job_metrics.finalize()
            self.last_run_time = datetime.utcnow()

            metrics = self.job_metrics.to_dict()
            logger.info("Crank job completed", **{k: v for k, v in metrics.items() if k != "errors"})
            return metrics

        except CrankJobError:
            raise
        except Exception as e:
            logger.error("Crank job failed", error=str(e), error_type=type(e).__name__)
            self.job_metrics.finalize()
            raise CrankJobError(f"Crank job failed: {e}", operation="run_once") from e

        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": "crank",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_minutes": self.settings.CRANK_INTERVAL_MINUTES,
            "max_concurrent": self.settings.CRANK_MAX_CONCURRENCY,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }


async def start_crank_scheduler(job: CrankJob | None = None, max_cycles: int | None = None):
    """
    Start the crank job scheduler.

    Runs until cancelled; max_cycles bounds the loop for one-shot runs.
    """
    job = job or CrankJob()
    interval_minutes = job.settings.CRANK_INTERVAL_MINUTES
    logger.info("Starting crank job scheduler", interval_minutes=interval_minutes)

    cycles = 0
    try:
        while True:
            cycles += 1
            delay = interval_minutes * 60
            try:
                await job.run_once()
            except CrankJobError as e:
                logger.error(
                    "Error in crank job scheduler",
                    error=str(e),
                    operation=e.operation,
                    recoverable=e.recoverable,
                )
                # Avoid a tight error loop
                delay = ERROR_RETRY_SECONDS

            if max_cycles is not None and cycles >= max_cycles:
                break
            await asyncio.sleep(delay)
    finally:
        await job.close()
