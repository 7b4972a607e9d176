"""
Dialer Worker
Background worker that claims due call jobs and hands them to the telephony service

Run as separate process:
    python -m callqueue.workers.dialer_worker
"""
import asyncio
import json
import logging
import signal
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from dotenv import load_dotenv
import redis.asyncio as redis
from sqlalchemy.orm import Session

from callqueue.core.config import (
    SchedulerConfig,
    WorkerConfig,
    build_worker_config,
    get_redis_url,
    get_scheduler_config,
)
from callqueue.core.exceptions import TransientDispatchFailure
from callqueue.domain.models.call_job import CallJob
from callqueue.domain.services.admission_controller import AdmissionController
from callqueue.domain.services.queue_service import CallQueueService
from callqueue.infrastructure.storage.database import SessionLocal, get_engine
from callqueue.utils.clock import utcnow

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class DialerWorker:
    """
    Background worker for dispatching queued call jobs.

    Responsibilities:
    - Find tenants with due queued work
    - Claim jobs through the AdmissionController (caps, windows, ordering)
    - Publish each claimed job on the dispatch channel for the telephony service
    - Release the claim when the hand-off fails
    - Periodically return lapsed claims to the queue

    Architecture:
    - Runs as separate process from FastAPI
    - Shares the database with the API; outcomes come back via the webhook
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        redis_client: Optional[redis.Redis] = None,
        config: Optional[SchedulerConfig] = None,
        worker_config: Optional[WorkerConfig] = None,
    ):
        self.session_factory = session_factory
        self.config = config or get_scheduler_config()
        self.worker_config = worker_config or build_worker_config()

        self.running = False
        self._redis = redis_client
        self._owns_redis = redis_client is None

        # Stats
        self._jobs_dispatched = 0
        self._jobs_failed = 0
        self._claims_reaped = 0
        self._last_reap: Optional[datetime] = None

    async def initialize(self) -> None:
        """Initialize database and Redis connections."""
        logger.info("Initializing Dialer Worker...")

        if self.session_factory is None:
            get_engine()
            self.session_factory = SessionLocal

        if self._redis is None:
            self._redis = redis.from_url(get_redis_url(), decode_responses=True)

        logger.info("Dialer Worker initialized successfully")

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    async def run(self) -> None:
        """
        Main worker loop.

        Continuously:
        1. Reap expired claims (periodically)
        2. Claim and dispatch due jobs for every tenant that has some
        3. Sleep for the poll interval when nothing was dispatched
        """
        await self.initialize()

        self.running = True
        consecutive_errors = 0

        logger.info(f"Dialer Worker started - publishing to {self.worker_config.dispatch_channel}")

        while self.running:
            try:
                self.reap_if_due()

                dispatched = await self.dispatch_cycle()
                consecutive_errors = 0

                if dispatched == 0:
                    await asyncio.sleep(self.worker_config.poll_interval_seconds)

            except asyncio.CancelledError:
                logger.info("Worker received cancellation signal")
                break
            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Worker error ({consecutive_errors}): {e}", exc_info=True)

                if consecutive_errors >= self.worker_config.max_consecutive_errors:
                    logger.critical("Too many consecutive errors, stopping worker")
                    break

                await asyncio.sleep(min(5 * consecutive_errors, 60))

        await self.shutdown()

    def reap_if_due(self, now: Optional[datetime] = None) -> int:
        """Requeue lapsed claims when the reap interval has elapsed."""
        now = now or utcnow()
        if self._last_reap is not None:
            elapsed = (now - self._last_reap).total_seconds()
            if elapsed < self.worker_config.reap_interval_seconds:
                return 0

        with self._session() as db:
            reaped = AdmissionController(db, self.config).reap_expired_claims(now)

        self._last_reap = now
        self._claims_reaped += reaped
        if reaped > 0:
            logger.info(f"Requeued {reaped} expired claims")
        return reaped

    async def dispatch_cycle(self, now: Optional[datetime] = None) -> int:
        """
        Claim and publish as many due jobs as capacity allows.

        Returns:
            Number of jobs handed to the telephony service
        """
        now = now or utcnow()
        dispatched = 0

        with self._session() as db:
            tenant_ids = CallQueueService(db, self.config).tenants_with_due_jobs(now)
            controller = AdmissionController(db, self.config)

            for tenant_id in tenant_ids:
                while True:
                    job = controller.claim_next(tenant_id, now=now)
                    if job is None:
                        break

                    try:
                        await self.dispatch_job(job)
                    except TransientDispatchFailure as e:
                        self._jobs_failed += 1
                        logger.warning(f"Dispatch failed for job {job.id}, releasing claim: {e.message}")
                        controller.release(tenant_id, job.id, job.claim_token, reason=e.message, now=now)
                        # Channel is down; leave the rest of this tenant for the next cycle
                        break

                    dispatched += 1

        return dispatched

    async def dispatch_job(self, job: CallJob) -> None:
        """
        Publish a claimed job for the telephony service to pick up.

        Raises:
            TransientDispatchFailure: when the channel cannot be reached
        """
        event = {
            "event": "call_dispatch",
            **job.to_dispatch_dict(),
            "timestamp": utcnow().isoformat(),
        }

        try:
            await self._redis.publish(self.worker_config.dispatch_channel, json.dumps(event))
        except Exception as e:
            raise TransientDispatchFailure(f"Publish to {self.worker_config.dispatch_channel} failed: {e}") from e

        self._jobs_dispatched += 1
        logger.info(
            f"Dispatched job {job.id} to {job.phone_number} "
            f"(tenant={job.tenant_id}, lane={job.lane}, retry={job.retry_count})"
        )

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down Dialer Worker...")
        self.running = False

        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None

        # Log final stats
        logger.info(
            f"Dialer Worker shutdown complete. "
            f"Dispatched: {self._jobs_dispatched}, Failed: {self._jobs_failed}"
        )

    def get_stats(self) -> dict:
        """Get worker statistics."""
        return {
            "running": self.running,
            "jobs_dispatched": self._jobs_dispatched,
            "jobs_failed": self._jobs_failed,
            "claims_reaped": self._claims_reaped,
            "dispatch_channel": self.worker_config.dispatch_channel,
        }


async def main():
    """Entry point for running dialer worker as separate process."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    worker = DialerWorker()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        worker.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    finally:
        await worker.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
