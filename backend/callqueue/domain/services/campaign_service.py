"""
Campaign Service
Owns campaign state transitions and the counters the admission controller reads
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.orm import Session

from callqueue.core.config import SchedulerConfig, get_scheduler_config
from callqueue.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from callqueue.domain.models.call_job import ContactPayload, JobStatus
from callqueue.domain.models.calling_window import CallingWindow
from callqueue.domain.models.campaign import (
    CAMPAIGN_TRANSITIONS,
    DELETABLE_CAMPAIGN_STATUSES,
    NULLABLE_PATCH_FIELDS,
    TERMINAL_CAMPAIGN_STATUSES,
    CampaignCreate,
    CampaignPatch,
    CampaignStatus,
    CampaignView,
)
from callqueue.domain.services.queue_service import CallQueueService
from callqueue.infrastructure.storage.database import commit_or_raise
from callqueue.infrastructure.storage.models import Campaign, QueuedCall
from callqueue.utils.clock import utcnow
from callqueue.utils.tenant_filter import apply_tenant_filter

logger = logging.getLogger(__name__)

PENDING_JOB_STATUSES = [JobStatus.QUEUED.value, JobStatus.PROCESSING.value]


class CampaignService:
    """
    Campaign lifecycle manager.

    Transitions:
        draft | scheduled -> active      start (needs >= 1 queued job)
        active -> paused -> active       pause / resume
        active | paused -> completed     complete (needs an empty queue)
        any non-terminal -> cancelled    cancel (drops queued jobs)

    Every status change is one guarded UPDATE scoped by campaign id and
    tenant id; a miss is reported as not-found or an illegal transition.
    """

    def __init__(self, db: Session, config: Optional[SchedulerConfig] = None):
        self.db = db
        self.config = config or get_scheduler_config()
        self.queue = CallQueueService(db, self.config)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_row(self, tenant_id: str, campaign_id: str) -> Campaign:
        stmt = apply_tenant_filter(select(Campaign).where(Campaign.id == campaign_id), Campaign, tenant_id)
        row = self.db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
        if row is None:
            raise NotFoundError("Campaign", campaign_id)
        return row

    def _view(self, tenant_id: str, campaign_id: str) -> CampaignView:
        return CampaignView.model_validate(self._get_row(tenant_id, campaign_id))

    def _has_jobs(self, campaign_id: str, statuses: List[str]):
        return exists().where(QueuedCall.campaign_id == campaign_id, QueuedCall.status.in_(statuses))

    def _transition(
        self,
        tenant_id: str,
        campaign_id: str,
        operation: str,
        extra_conditions: Optional[list] = None,
        **values,
    ) -> int:
        """Guarded status UPDATE for a lifecycle operation. Does not commit."""
        allowed_from, target = CAMPAIGN_TRANSITIONS[operation]
        now = values.pop("now", None) or utcnow()
        result = self.db.execute(
            update(Campaign)
            .where(
                Campaign.id == campaign_id,
                Campaign.tenant_id == tenant_id,
                Campaign.status.in_(allowed_from),
                *(extra_conditions or []),
            )
            .values(status=target, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def _raise_for_miss(self, tenant_id: str, campaign_id: str, operation: str) -> Campaign:
        """Not found or illegal source status; returns the row when neither applies."""
        self.db.rollback()
        row = self._get_row(tenant_id, campaign_id)
        allowed_from, target = CAMPAIGN_TRANSITIONS[operation]
        if row.status not in allowed_from:
            raise InvalidTransitionError(row.status, target)
        return row

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(self, tenant_id: str, data: CampaignCreate, now: Optional[datetime] = None) -> CampaignView:
        """
        Create a campaign.

        With contacts the campaign is queued and goes straight to active;
        without contacts it stays a draft until contacts are added and it
        is started.
        """
        if not tenant_id:
            raise ValidationError("tenant_id is required")

        now = now or utcnow()
        window = CallingWindow(
            first_call_time=data.first_call_time,
            last_call_time=data.last_call_time,
            timezone=data.timezone or self.config.default_timezone,
            start_date=data.start_date,
            end_date=data.end_date,
        )
        window.check()

        campaign = Campaign(
            tenant_id=tenant_id,
            name=data.name,
            description=data.description,
            agent_id=data.agent_id,
            next_action=data.next_action,
            status=CampaignStatus.DRAFT.value,
            first_call_time=window.first_call_time,
            last_call_time=window.last_call_time,
            timezone=window.timezone,
            start_date=window.start_date,
            end_date=window.end_date,
            max_retries=data.max_retries,
            retry_interval_minutes=data.retry_interval_minutes,
            priority=data.priority,
            max_concurrent_calls=data.max_concurrent_calls,
            created_at=now,
            updated_at=now,
        )
        self.db.add(campaign)
        self.db.flush()

        if data.contacts:
            self.queue.add_campaign_jobs(campaign, data.contacts, window.first_dispatch_time(now))
            campaign.status = CampaignStatus.ACTIVE.value
            campaign.started_at = now

        campaign_id = campaign.id
        commit_or_raise(self.db)

        logger.info(
            f"Created campaign {campaign_id} for tenant {tenant_id} "
            f"with {len(data.contacts)} contacts"
        )
        return self._view(tenant_id, campaign_id)

    def get(self, tenant_id: str, campaign_id: str) -> CampaignView:
        return self._view(tenant_id, campaign_id)

    def list_campaigns(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        agent_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[CampaignView], int]:
        stmt = apply_tenant_filter(select(Campaign), Campaign, tenant_id)
        if status:
            stmt = stmt.where(Campaign.status == status)
        if agent_id:
            stmt = stmt.where(Campaign.agent_id == agent_id)

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
        rows = self.db.execute(
            stmt.order_by(Campaign.created_at.desc()).limit(limit).offset(offset)
        ).scalars().all()
        return [CampaignView.model_validate(r) for r in rows], total

    def summary(self, tenant_id: str) -> Dict[str, int]:
        """Campaign counts per status for a tenant."""
        rows = self.db.execute(
            select(Campaign.status, func.count())
            .where(Campaign.tenant_id == tenant_id)
            .group_by(Campaign.status)
        ).all()
        counts = {status.value: 0 for status in CampaignStatus}
        for status, count in rows:
            counts[status] = count
        counts["total"] = sum(count for _, count in rows)
        return counts

    def get_statistics(self, tenant_id: str, campaign_id: str) -> Dict[str, int]:
        """Live queue counts for the campaign next to its stored counters."""
        campaign = self._get_row(tenant_id, campaign_id)
        rows = self.db.execute(
            select(QueuedCall.status, func.count())
            .where(QueuedCall.campaign_id == campaign_id, QueuedCall.tenant_id == tenant_id)
            .group_by(QueuedCall.status)
        ).all()
        stats = {
            "total_contacts": campaign.total_contacts,
            "completed_calls": campaign.completed_calls,
            "successful_calls": campaign.successful_calls,
            "failed_calls": campaign.failed_calls,
            "queued": 0,
            "processing": 0,
        }
        for status, count in rows:
            stats[status] = count
        return stats

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def add_contacts(
        self,
        tenant_id: str,
        campaign_id: str,
        contacts: List[ContactPayload],
        now: Optional[datetime] = None,
    ) -> int:
        """Queue more contacts on a campaign that has not finished."""
        if not contacts:
            raise ValidationError("No contacts provided")

        now = now or utcnow()
        campaign = self._get_row(tenant_id, campaign_id)
        if campaign.status in TERMINAL_CAMPAIGN_STATUSES:
            raise ValidationError(f"Cannot add contacts to a {campaign.status} campaign")

        window = CallingWindow.from_campaign(campaign)
        added = self.queue.add_campaign_jobs(campaign, contacts, window.first_dispatch_time(now))
        commit_or_raise(self.db)
        return added

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None) -> CampaignView:
        """draft | scheduled -> active, only while at least one job is queued."""
        now = now or utcnow()
        changed = self._transition(
            tenant_id, campaign_id, "start",
            extra_conditions=[self._has_jobs(campaign_id, [JobStatus.QUEUED.value])],
            started_at=func.coalesce(Campaign.started_at, now),
            now=now,
        )
        if not changed:
            self._raise_for_miss(tenant_id, campaign_id, "start")
            raise ValidationError("no contacts in queue")

        commit_or_raise(self.db)
        logger.info(f"Campaign {campaign_id} started")
        return self._view(tenant_id, campaign_id)

    def pause(self, tenant_id: str, campaign_id: str) -> CampaignView:
        """active -> paused. Queued jobs stay; they just stop being claimable."""
        if not self._transition(tenant_id, campaign_id, "pause"):
            self._raise_for_miss(tenant_id, campaign_id, "pause")
        commit_or_raise(self.db)
        logger.info(f"Campaign {campaign_id} paused")
        return self._view(tenant_id, campaign_id)

    def resume(self, tenant_id: str, campaign_id: str) -> CampaignView:
        """paused -> active."""
        if not self._transition(tenant_id, campaign_id, "resume"):
            self._raise_for_miss(tenant_id, campaign_id, "resume")
        commit_or_raise(self.db)
        logger.info(f"Campaign {campaign_id} resumed")
        return self._view(tenant_id, campaign_id)

    def complete(self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None) -> CampaignView:
        """active | paused -> completed, once nothing is queued or in flight."""
        now = now or utcnow()
        changed = self._transition(
            tenant_id, campaign_id, "complete",
            extra_conditions=[~self._has_jobs(campaign_id, PENDING_JOB_STATUSES)],
            completed_at=now,
            now=now,
        )
        if not changed:
            self._raise_for_miss(tenant_id, campaign_id, "complete")
            raise ValidationError("Campaign still has queued or in-progress calls")

        commit_or_raise(self.db)
        logger.info(f"Campaign {campaign_id} completed")
        return self._view(tenant_id, campaign_id)

    def complete_if_drained(self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None) -> bool:
        """
        Complete an active campaign whose queue is empty. Does not commit;
        used inside the outcome transaction.
        """
        now = now or utcnow()
        _, target = CAMPAIGN_TRANSITIONS["complete"]
        result = self.db.execute(
            update(Campaign)
            .where(
                Campaign.id == campaign_id,
                Campaign.tenant_id == tenant_id,
                Campaign.status == CampaignStatus.ACTIVE.value,
                ~self._has_jobs(campaign_id, PENDING_JOB_STATUSES),
            )
            .values(status=target, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Campaign {campaign_id} drained and completed")
        return bool(result.rowcount)

    def cancel(self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None) -> Tuple[CampaignView, int]:
        """
        Cancel a campaign and drop its queued jobs.

        Jobs already processing are left to reach their own terminal state.

        Returns:
            (campaign, number of queued jobs removed)
        """
        now = now or utcnow()
        if not self._transition(tenant_id, campaign_id, "cancel", completed_at=now, now=now):
            self._raise_for_miss(tenant_id, campaign_id, "cancel")

        removed = self.queue.delete_queued_for_campaign(tenant_id, campaign_id)
        commit_or_raise(self.db)

        logger.info(f"Campaign {campaign_id} cancelled, removed {removed} queued jobs")
        return self._view(tenant_id, campaign_id), removed

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    def update(self, tenant_id: str, campaign_id: str, patch: CampaignPatch) -> CampaignView:
        """Apply a sparse patch; only the fields present in it are written."""
        changes = patch.changes()
        if not changes:
            return self._view(tenant_id, campaign_id)

        for name, value in changes.items():
            if value is None and name not in NULLABLE_PATCH_FIELDS:
                raise ValidationError(f"{name} cannot be null")

        campaign = self._get_row(tenant_id, campaign_id)
        if campaign.status in TERMINAL_CAMPAIGN_STATUSES:
            raise ValidationError(f"Cannot modify a {campaign.status} campaign")

        window = CallingWindow.from_campaign(campaign).model_copy(
            update={k: v for k, v in changes.items() if k in CallingWindow.model_fields}
        )
        window.check()

        result = self.db.execute(
            update(Campaign)
            .where(
                Campaign.id == campaign_id,
                Campaign.tenant_id == tenant_id,
                Campaign.status.not_in(TERMINAL_CAMPAIGN_STATUSES),
            )
            .values(updated_at=utcnow(), **changes)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self.db.rollback()
            current = self._get_row(tenant_id, campaign_id)
            raise ValidationError(f"Cannot modify a {current.status} campaign")

        if "priority" in changes:
            moved = self.queue.update_campaign_priority(tenant_id, campaign_id, changes["priority"])
            logger.info(f"Campaign {campaign_id} priority -> {changes['priority']} ({moved} queued jobs)")

        commit_or_raise(self.db)
        return self._view(tenant_id, campaign_id)

    def delete(self, tenant_id: str, campaign_id: str) -> None:
        """Delete a draft or cancelled campaign together with its queued jobs."""
        campaign = self._get_row(tenant_id, campaign_id)
        if campaign.status not in DELETABLE_CAMPAIGN_STATUSES:
            raise ValidationError(
                f"Only draft or cancelled campaigns can be deleted (campaign is {campaign.status})"
            )

        self.queue.delete_queued_for_campaign(tenant_id, campaign_id)
        result = self.db.execute(
            delete(Campaign)
            .where(
                Campaign.id == campaign_id,
                Campaign.tenant_id == tenant_id,
                Campaign.status.in_(DELETABLE_CAMPAIGN_STATUSES),
                ~self._has_jobs(campaign_id, [JobStatus.PROCESSING.value]),
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self.db.rollback()
            raise ValidationError("Campaign has calls in progress or changed state")

        self.db.expunge(campaign)
        commit_or_raise(self.db)
        logger.info(f"Deleted campaign {campaign_id}")
