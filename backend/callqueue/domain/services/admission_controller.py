"""
Admission Controller
Atomically selects and claims the next dispatchable job for a tenant
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from callqueue.core.config import SchedulerConfig, get_scheduler_config
from callqueue.core.exceptions import ConcurrencyConflict
from callqueue.domain.models.call_job import CallJob
from callqueue.domain.services.queue_service import CallQueueService
from callqueue.domain.services.scheduling_rules import SchedulingRuleEngine
from callqueue.infrastructure.storage.database import DISPATCH_LOCK_SCOPE, commit_or_raise
from callqueue.infrastructure.storage.models import DispatchLock
from callqueue.utils.clock import utcnow

logger = logging.getLogger(__name__)


class AdmissionController:
    """
    Hands out claims on queued jobs.

    claim_next() runs as one transaction:
    1. Take the dispatch lock row (serializes cap checks across claimers)
    2. Bail out early if the tenant or the system is at capacity
    3. Walk due candidates in claim order; campaigns whose window is
       closed are filtered out before paging
    4. Claim the first one with a guarded UPDATE; a lost race moves on
    """

    def __init__(self, db: Session, config: Optional[SchedulerConfig] = None):
        self.db = db
        self.config = config or get_scheduler_config()
        self.queue = CallQueueService(db, self.config)
        self.rules = SchedulingRuleEngine(db, self.queue, self.config)

    def _acquire_dispatch_lock(self, token: str, now: datetime) -> None:
        """
        Write to the lock row so that the rest of the transaction runs while
        holding it (row lock on PostgreSQL, write lock on SQLite).
        """
        result = self.db.execute(
            update(DispatchLock)
            .where(DispatchLock.scope == DISPATCH_LOCK_SCOPE)
            .values(holder=token, acquired_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.add(DispatchLock(scope=DISPATCH_LOCK_SCOPE, holder=token, acquired_at=now))
            self.db.flush()

    def claim_next(self, tenant_id: str, now: Optional[datetime] = None) -> Optional[CallJob]:
        """
        Claim the highest-ranked eligible job for a tenant.

        Returns:
            The claimed job (status processing, with claim_token and lease),
            or None when nothing is eligible or capacity is exhausted.
        """
        now = now or utcnow()
        claim_token = str(uuid.uuid4())

        try:
            self._acquire_dispatch_lock(claim_token, now)

            has_capacity, reason = self.rules.check_capacity(tenant_id)
            if not has_capacity:
                logger.debug(f"No claim for tenant {tenant_id}: {reason}")
                self.db.rollback()
                return None

            tenant_cap = self.rules.get_tenant_cap(tenant_id)
            closed = self.rules.closed_campaign_ids(tenant_id, now)
            batch_size = self.config.claim_batch_size
            offset = 0

            while True:
                candidates = self.queue.fetch_candidates(
                    tenant_id, now, limit=batch_size, offset=offset, exclude_campaign_ids=closed,
                )
                if not candidates:
                    break

                for job, campaign in candidates:
                    allowed, reason = self.rules.check_job(job, campaign, now)
                    if not allowed:
                        continue

                    try:
                        self.queue.try_claim(job, now, tenant_cap, claim_token=claim_token)
                    except ConcurrencyConflict:
                        # Lost to another writer or campaign at its own cap
                        continue

                    commit_or_raise(self.db)
                    claimed = self.queue.get_job(tenant_id, job.id)
                    logger.info(
                        f"Claimed job {job.id} for tenant {tenant_id} "
                        f"(lane={job.lane}, priority={job.priority}, position={job.position})"
                    )
                    return claimed

                offset += batch_size

            self.db.rollback()
            return None

        except Exception:
            self.db.rollback()
            raise

    def release(
        self,
        tenant_id: str,
        job_id: str,
        claim_token: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CallJob:
        """Return a claimed job to the queue, e.g. when the call failed to start."""
        return self.queue.release(tenant_id, job_id, claim_token, reason=reason, now=now)

    def heartbeat(
        self, tenant_id: str, job_id: str, claim_token: str, now: Optional[datetime] = None
    ) -> CallJob:
        return self.queue.heartbeat(tenant_id, job_id, claim_token, now=now)

    def reap_expired_claims(self, now: Optional[datetime] = None) -> int:
        """Return claims whose lease lapsed without heartbeat or outcome."""
        return self.queue.requeue_expired_claims(now)
