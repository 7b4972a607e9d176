"""
Call Queue Service
Durable two-lane job queue backed by the call_queue table
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, case, delete, exists, func, or_, select, update
from sqlalchemy.orm import Session, aliased

from callqueue.core.config import SchedulerConfig, get_scheduler_config
from callqueue.core.exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from callqueue.domain.models.call_job import (
    CallJob, ContactPayload, JobStatus, Lane, LANE_DEFAULTS, DIRECT_CALL_PRIORITY,
)
from callqueue.infrastructure.storage.database import commit_or_raise
from callqueue.infrastructure.storage.models import Campaign, QueuedCall
from callqueue.utils.clock import utcnow
from callqueue.utils.tenant_filter import apply_tenant_filter

logger = logging.getLogger(__name__)

QUEUED = JobStatus.QUEUED.value
PROCESSING = JobStatus.PROCESSING.value


class CallQueueService:
    """
    Queue of pending and in-flight call jobs.

    Direct and campaign jobs live in one table keyed by `lane` and share
    the same state machine:

        queued -> processing -> completed | failed   (row then deleted)
        queued -> deleted                            (cancel)
        processing -> queued                         (release, lease expiry)

    Every transition out of `queued` is a guarded UPDATE/DELETE on
    `status = 'queued'`, so a claim and a cancel racing for the same job
    cannot both succeed.
    """

    def __init__(self, db: Session, config: Optional[SchedulerConfig] = None):
        self.db = db
        self.config = config or get_scheduler_config()

    # ------------------------------------------------------------------
    # Ordering helpers
    # ------------------------------------------------------------------

    def _lane_rank(self):
        """0 for direct, 1 for campaign under direct_first; constant otherwise."""
        if self.config.lane_policy == "direct_first":
            return case((QueuedCall.lane == Lane.DIRECT.value, 0), else_=1)
        return None

    def dispatch_order(self) -> list:
        """ORDER BY clauses for claim order: priority DESC, position ASC, created_at ASC."""
        order = [QueuedCall.priority.desc(), QueuedCall.position.asc(), QueuedCall.created_at.asc()]
        rank = self._lane_rank()
        if rank is not None:
            order.insert(0, rank.asc())
        return order

    def _next_position(self, tenant_id: str) -> int:
        current = self.db.execute(
            select(func.max(QueuedCall.position)).where(QueuedCall.tenant_id == tenant_id)
        ).scalar()
        return (current or 0) + 1

    def _snapshot(self, job_id: str) -> Optional[CallJob]:
        row = self.db.get(QueuedCall, job_id, populate_existing=True)
        return CallJob.model_validate(row) if row is not None else None

    def _get_row(self, tenant_id: str, job_id: str) -> QueuedCall:
        stmt = apply_tenant_filter(select(QueuedCall).where(QueuedCall.id == job_id), QueuedCall, tenant_id)
        row = self.db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
        if row is None:
            raise NotFoundError("Job", job_id)
        return row

    def _explain_miss(self, tenant_id: str, job_id: str) -> None:
        """A guarded write matched nothing: decide between not-found and lost race."""
        self._get_row(tenant_id, job_id)
        raise ConcurrencyConflict(f"Job {job_id} changed state concurrently")

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def add_campaign_jobs(
        self,
        campaign: Campaign,
        contacts: List[ContactPayload],
        scheduled_for: datetime,
    ) -> int:
        """
        Insert one queued job per contact and bump total_contacts, without
        committing. Positions continue the tenant's sequence so FIFO holds
        across campaigns and lanes.
        """
        if not contacts:
            return 0

        start = self._next_position(campaign.tenant_id)
        now = utcnow()
        rows = []
        for i, contact in enumerate(contacts):
            rows.append(QueuedCall(
                tenant_id=campaign.tenant_id,
                lane=Lane.CAMPAIGN.value,
                campaign_id=campaign.id,
                agent_id=campaign.agent_id,
                contact_id=contact.contact_id,
                phone_number=contact.phone_number,
                contact_name=contact.name,
                user_data={
                    "summary": campaign.description or campaign.name,
                    "next_action": campaign.next_action,
                    "email": contact.email,
                    "company": contact.company,
                    "notes": contact.notes,
                },
                status=QUEUED,
                priority=campaign.priority,
                position=start + i,
                scheduled_for=scheduled_for,
                created_at=now,
                updated_at=now,
            ))
        self.db.add_all(rows)

        self.db.execute(
            update(Campaign)
            .where(Campaign.id == campaign.id, Campaign.tenant_id == campaign.tenant_id)
            .values(total_contacts=Campaign.total_contacts + len(rows), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()

        logger.info(f"Enqueued {len(rows)} jobs for campaign {campaign.id} (positions {start}-{start + len(rows) - 1})")
        return len(rows)

    def enqueue_direct_call(
        self,
        tenant_id: str,
        agent_id: str,
        phone_number: str,
        contact_id: Optional[str] = None,
        contact_name: Optional[str] = None,
        user_data: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> CallJob:
        """Queue an ad hoc call in the direct lane at the fixed direct priority."""
        if not tenant_id:
            raise ValidationError("tenant_id is required")

        defaults = LANE_DEFAULTS[Lane.DIRECT.value]
        now = now or utcnow()
        row = QueuedCall(
            tenant_id=tenant_id,
            lane=Lane.DIRECT.value,
            campaign_id=None,
            agent_id=agent_id,
            contact_id=contact_id,
            phone_number=phone_number,
            contact_name=contact_name,
            user_data={**defaults["user_data"], **(user_data or {})},
            status=QUEUED,
            priority=DIRECT_CALL_PRIORITY,
            position=self._next_position(tenant_id),
            scheduled_for=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        commit_or_raise(self.db)

        logger.info(f"Enqueued direct call {row.id} for tenant {tenant_id} (position {row.position})")
        return self._snapshot(row.id)

    def add_retry_job(self, job: CallJob, scheduled_for: datetime, outcome: str) -> QueuedCall:
        """
        Queue the next attempt for a finished job, without committing.

        Priority, routing and payload are inherited; the retry counter moves on.
        """
        now = utcnow()
        row = QueuedCall(
            tenant_id=job.tenant_id,
            lane=job.lane,
            campaign_id=job.campaign_id,
            agent_id=job.agent_id,
            contact_id=job.contact_id,
            phone_number=job.phone_number,
            contact_name=job.contact_name,
            user_data=dict(job.user_data or {}),
            status=QUEUED,
            priority=job.priority,
            position=self._next_position(job.tenant_id),
            scheduled_for=scheduled_for,
            retry_count=job.retry_count + 1,
            original_job_id=job.original_job_id or job.id,
            last_call_outcome=outcome,
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        self.db.flush()
        return row

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job(self, tenant_id: str, job_id: str) -> CallJob:
        return CallJob.model_validate(self._get_row(tenant_id, job_id))

    def find_by_call_id(self, tenant_id: str, call_id: str) -> Optional[CallJob]:
        stmt = apply_tenant_filter(select(QueuedCall).where(QueuedCall.call_id == call_id), QueuedCall, tenant_id)
        row = self.db.execute(stmt).scalars().first()
        return CallJob.model_validate(row) if row is not None else None

    def list_tenant_queue(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        lane: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[CallJob], int]:
        """Jobs for a tenant in dispatch order, with the unpaged total."""
        stmt = apply_tenant_filter(select(QueuedCall), QueuedCall, tenant_id)
        if status:
            stmt = stmt.where(QueuedCall.status == status)
        if lane:
            stmt = stmt.where(QueuedCall.lane == lane)

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
        rows = self.db.execute(stmt.order_by(*self.dispatch_order()).limit(limit).offset(offset)).scalars().all()
        return [CallJob.model_validate(r) for r in rows], total

    def list_campaign_jobs(
        self,
        tenant_id: str,
        campaign_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[CallJob], int]:
        stmt = apply_tenant_filter(
            select(QueuedCall).where(QueuedCall.campaign_id == campaign_id), QueuedCall, tenant_id
        )
        if status:
            stmt = stmt.where(QueuedCall.status == status)

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
        rows = self.db.execute(stmt.order_by(*self.dispatch_order()).limit(limit).offset(offset)).scalars().all()
        return [CallJob.model_validate(r) for r in rows], total

    def count_jobs(
        self,
        tenant_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        statuses: Optional[List[str]] = None,
    ) -> int:
        stmt = select(func.count()).select_from(QueuedCall)
        if tenant_id:
            stmt = stmt.where(QueuedCall.tenant_id == tenant_id)
        if campaign_id:
            stmt = stmt.where(QueuedCall.campaign_id == campaign_id)
        if statuses:
            stmt = stmt.where(QueuedCall.status.in_(statuses))
        return self.db.execute(stmt).scalar() or 0

    def count_processing(self, tenant_id: Optional[str] = None, campaign_id: Optional[str] = None) -> int:
        """Live in-flight count; the caps are checked against this, never a cached counter."""
        return self.count_jobs(tenant_id=tenant_id, campaign_id=campaign_id, statuses=[PROCESSING])

    def get_queue_position(self, tenant_id: str, job_id: str) -> Optional[int]:
        """1-based rank of a queued job among the tenant's queued jobs; None if not queued."""
        job = self._get_row(tenant_id, job_id)
        if job.status != QUEUED:
            return None

        ahead = or_(
            QueuedCall.priority > job.priority,
            and_(QueuedCall.priority == job.priority, QueuedCall.position < job.position),
            and_(
                QueuedCall.priority == job.priority,
                QueuedCall.position == job.position,
                QueuedCall.created_at < job.created_at,
            ),
        )
        rank = self._lane_rank()
        if rank is not None:
            own_rank = 0 if job.lane == Lane.DIRECT.value else 1
            ahead = or_(rank < own_rank, and_(rank == own_rank, ahead))

        count = self.db.execute(
            select(func.count()).select_from(QueuedCall).where(
                QueuedCall.tenant_id == tenant_id,
                QueuedCall.status == QUEUED,
                QueuedCall.id != job.id,
                ahead,
            )
        ).scalar() or 0
        return count + 1

    def get_statistics(self, tenant_id: str) -> Dict[str, int]:
        """Job counts per status plus the next position to be handed out."""
        rows = self.db.execute(
            select(QueuedCall.status, func.count())
            .where(QueuedCall.tenant_id == tenant_id)
            .group_by(QueuedCall.status)
        ).all()
        stats = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            stats[status] = count
        stats["total"] = sum(count for _, count in rows)
        stats["next_position"] = self._next_position(tenant_id)
        return stats

    def get_lane_breakdown(self, tenant_id: str) -> Dict[str, Dict[str, int]]:
        rows = self.db.execute(
            select(QueuedCall.lane, QueuedCall.status, func.count())
            .where(QueuedCall.tenant_id == tenant_id)
            .group_by(QueuedCall.lane, QueuedCall.status)
        ).all()
        breakdown = {lane.value: {"queued": 0, "processing": 0, "total": 0} for lane in Lane}
        for lane, status, count in rows:
            bucket = breakdown.setdefault(lane, {"queued": 0, "processing": 0, "total": 0})
            if status in (QUEUED, PROCESSING):
                bucket[status] += count
            bucket["total"] += count
        return breakdown

    def fetch_candidates(
        self,
        tenant_id: str,
        now: datetime,
        limit: int,
        offset: int = 0,
        exclude_campaign_ids: Optional[Set[str]] = None,
    ) -> List[Tuple[CallJob, Optional[Campaign]]]:
        """
        Queued jobs that are due and whose campaign (if any) is active,
        in claim order. Window checks happen in the caller; campaigns in
        `exclude_campaign_ids` are left out up front.
        """
        conditions = [
            QueuedCall.tenant_id == tenant_id,
            QueuedCall.status == QUEUED,
            QueuedCall.scheduled_for <= now,
            or_(
                QueuedCall.lane == Lane.DIRECT.value,
                and_(Campaign.status == "active", Campaign.tenant_id == tenant_id),
            ),
        ]
        if exclude_campaign_ids:
            conditions.append(
                or_(QueuedCall.campaign_id.is_(None), QueuedCall.campaign_id.not_in(exclude_campaign_ids))
            )

        stmt = (
            select(QueuedCall, Campaign)
            .outerjoin(Campaign, Campaign.id == QueuedCall.campaign_id)
            .where(*conditions)
            .order_by(*self.dispatch_order())
            .limit(limit)
            .offset(offset)
        )
        return [(CallJob.model_validate(job), campaign) for job, campaign in self.db.execute(stmt).all()]

    def tenants_with_due_jobs(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        """Tenants holding due queued work, oldest waiting job first."""
        now = now or utcnow()
        oldest = func.min(QueuedCall.scheduled_for)
        rows = self.db.execute(
            select(QueuedCall.tenant_id, oldest)
            .where(QueuedCall.status == QUEUED, QueuedCall.scheduled_for <= now)
            .group_by(QueuedCall.tenant_id)
            .order_by(oldest)
            .limit(limit)
        ).all()
        return [tenant_id for tenant_id, _ in rows]

    # ------------------------------------------------------------------
    # Claim lifecycle
    # ------------------------------------------------------------------

    def try_claim(
        self,
        job: CallJob,
        now: datetime,
        tenant_cap: int,
        claim_token: Optional[str] = None,
    ) -> str:
        """
        Move one job queued -> processing in a single guarded UPDATE.

        The WHERE clause re-checks status, due time, campaign activity and
        every concurrency cap against live counts. Returns the claim token;
        raises ConcurrencyConflict when the row no longer qualifies.
        Does not commit.
        """
        claim_token = claim_token or str(uuid.uuid4())
        inflight = aliased(QueuedCall)

        tenant_inflight = (
            select(func.count()).select_from(inflight)
            .where(inflight.status == PROCESSING, inflight.tenant_id == job.tenant_id)
            .scalar_subquery()
        )
        system_inflight = (
            select(func.count()).select_from(inflight)
            .where(inflight.status == PROCESSING)
            .scalar_subquery()
        )

        conditions = [
            QueuedCall.id == job.id,
            QueuedCall.tenant_id == job.tenant_id,
            QueuedCall.status == QUEUED,
            QueuedCall.scheduled_for <= now,
            tenant_inflight < tenant_cap,
            system_inflight < self.config.system_concurrent_calls_limit,
        ]

        if job.lane == Lane.CAMPAIGN.value:
            campaign_inflight = (
                select(func.count()).select_from(inflight)
                .where(inflight.status == PROCESSING, inflight.campaign_id == job.campaign_id)
                .scalar_subquery()
            )
            campaign_cap = (
                select(Campaign.max_concurrent_calls)
                .where(Campaign.id == job.campaign_id)
                .scalar_subquery()
            )
            conditions.append(
                exists().where(
                    Campaign.id == job.campaign_id,
                    Campaign.tenant_id == job.tenant_id,
                    Campaign.status == "active",
                )
            )
            conditions.append(campaign_inflight < campaign_cap)

        result = self.db.execute(
            update(QueuedCall)
            .where(*conditions)
            .values(
                status=PROCESSING,
                claim_token=claim_token,
                started_at=now,
                lease_expires_at=now + timedelta(seconds=self.config.claim_lease_seconds),
                last_system_allocation_at=now,
                failure_reason=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(f"Job {job.id} could not be claimed")
        return claim_token

    def release(
        self,
        tenant_id: str,
        job_id: str,
        claim_token: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CallJob:
        """Return a claimed job to queued. Only the current claimant may release."""
        now = now or utcnow()
        result = self.db.execute(
            update(QueuedCall)
            .where(
                QueuedCall.id == job_id,
                QueuedCall.tenant_id == tenant_id,
                QueuedCall.status == PROCESSING,
                QueuedCall.claim_token == claim_token,
            )
            .values(
                status=QUEUED,
                claim_token=None,
                lease_expires_at=None,
                started_at=None,
                call_id=None,
                failure_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            self._explain_miss(tenant_id, job_id)
        commit_or_raise(self.db)

        logger.info(f"Released job {job_id} back to queue: {reason or 'no reason given'}")
        return self._snapshot(job_id)

    def heartbeat(self, tenant_id: str, job_id: str, claim_token: str, now: Optional[datetime] = None) -> CallJob:
        """Extend the claim lease of an in-flight job."""
        now = now or utcnow()
        result = self.db.execute(
            update(QueuedCall)
            .where(
                QueuedCall.id == job_id,
                QueuedCall.tenant_id == tenant_id,
                QueuedCall.status == PROCESSING,
                QueuedCall.claim_token == claim_token,
            )
            .values(
                lease_expires_at=now + timedelta(seconds=self.config.claim_lease_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            self._explain_miss(tenant_id, job_id)
        commit_or_raise(self.db)
        return self._snapshot(job_id)

    def attach_call(
        self,
        tenant_id: str,
        job_id: str,
        claim_token: str,
        call_id: str,
        now: Optional[datetime] = None,
    ) -> CallJob:
        """Record the external call id once the call has started; refreshes the lease."""
        now = now or utcnow()
        result = self.db.execute(
            update(QueuedCall)
            .where(
                QueuedCall.id == job_id,
                QueuedCall.tenant_id == tenant_id,
                QueuedCall.status == PROCESSING,
                QueuedCall.claim_token == claim_token,
            )
            .values(
                call_id=call_id,
                lease_expires_at=now + timedelta(seconds=self.config.claim_lease_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            self._explain_miss(tenant_id, job_id)
        commit_or_raise(self.db)

        logger.info(f"Job {job_id} attached to call {call_id}")
        return self._snapshot(job_id)

    def requeue_expired_claims(self, now: Optional[datetime] = None) -> int:
        """Return every claim whose lease has lapsed to queued."""
        now = now or utcnow()
        result = self.db.execute(
            update(QueuedCall)
            .where(
                QueuedCall.status == PROCESSING,
                QueuedCall.lease_expires_at.is_not(None),
                QueuedCall.lease_expires_at < now,
            )
            .values(
                status=QUEUED,
                claim_token=None,
                lease_expires_at=None,
                started_at=None,
                call_id=None,
                failure_reason="lease_expired",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        commit_or_raise(self.db)

        if result.rowcount:
            logger.warning(f"Requeued {result.rowcount} jobs with expired claims")
        return result.rowcount

    def finalize(
        self,
        tenant_id: str,
        job_id: str,
        status: str,
        failure_reason: Optional[str] = None,
        outcome: Optional[str] = None,
        now: Optional[datetime] = None,
        claim_token: Optional[str] = None,
        call_id: Optional[str] = None,
    ) -> CallJob:
        """
        Terminal transition processing -> completed | failed, then delete
        the row. Returns the final state. Does not commit.

        `claim_token` and `call_id`, when given, must match the current
        claim. An outcome for an earlier claim of a job that was reaped and
        claimed again raises ConcurrencyConflict instead of finishing the
        new attempt.
        """
        if status not in (JobStatus.COMPLETED.value, JobStatus.FAILED.value):
            raise ValidationError(f"Not a terminal job status: {status}")

        conditions = [
            QueuedCall.id == job_id,
            QueuedCall.tenant_id == tenant_id,
            QueuedCall.status == PROCESSING,
        ]
        if claim_token is not None:
            conditions.append(QueuedCall.claim_token == claim_token)
        if call_id is not None:
            conditions.append(QueuedCall.call_id == call_id)

        now = now or utcnow()
        result = self.db.execute(
            update(QueuedCall)
            .where(*conditions)
            .values(
                status=status,
                completed_at=now,
                failure_reason=failure_reason,
                last_call_outcome=outcome,
                claim_token=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._explain_miss(tenant_id, job_id)

        row = self.db.get(QueuedCall, job_id, populate_existing=True)
        final = CallJob.model_validate(row)
        self.db.delete(row)
        self.db.flush()
        return final

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_job(self, tenant_id: str, job_id: str) -> None:
        """Delete a single queued job. Fails if it was claimed first."""
        result = self.db.execute(
            delete(QueuedCall)
            .where(
                QueuedCall.id == job_id,
                QueuedCall.tenant_id == tenant_id,
                QueuedCall.status == QUEUED,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            row = self._get_row(tenant_id, job_id)
            raise ValidationError(f"Only queued jobs can be cancelled (job is {row.status})")
        commit_or_raise(self.db)
        logger.info(f"Cancelled queued job {job_id}")

    def delete_queued_for_campaign(self, tenant_id: str, campaign_id: str) -> int:
        """Delete every still-queued job of a campaign. Does not commit."""
        result = self.db.execute(
            delete(QueuedCall)
            .where(
                QueuedCall.tenant_id == tenant_id,
                QueuedCall.campaign_id == campaign_id,
                QueuedCall.status == QUEUED,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def update_campaign_priority(self, tenant_id: str, campaign_id: str, priority: int) -> int:
        """Carry a campaign priority change over to its queued jobs. Does not commit."""
        result = self.db.execute(
            update(QueuedCall)
            .where(
                QueuedCall.tenant_id == tenant_id,
                QueuedCall.campaign_id == campaign_id,
                QueuedCall.status == QUEUED,
            )
            .values(priority=priority, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
