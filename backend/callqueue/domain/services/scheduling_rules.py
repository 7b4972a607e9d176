"""
Scheduling Rules Engine
Determines whether a queued job may be dispatched right now
"""
import logging
from datetime import datetime
from typing import Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from callqueue.core.config import SchedulerConfig, get_scheduler_config
from callqueue.domain.models.call_job import CallJob, Lane
from callqueue.domain.models.calling_window import CallingWindow
from callqueue.domain.services.queue_service import CallQueueService
from callqueue.infrastructure.storage.models import Campaign, TenantSettings

logger = logging.getLogger(__name__)


class SchedulingRuleEngine:
    """
    Evaluates scheduling rules for a candidate job.

    Rules checked:
    1. Job is due (scheduled_for <= now)
    2. Campaign jobs: campaign active, local time inside the window,
       local date inside the start/end range
    3. Tenant and system in-flight counts below their caps

    In-flight counts are read live from the queue on every check.
    """

    def __init__(
        self,
        db: Session,
        queue: Optional[CallQueueService] = None,
        config: Optional[SchedulerConfig] = None,
    ):
        self.db = db
        self.config = config or get_scheduler_config()
        self.queue = queue or CallQueueService(db, self.config)

    def get_tenant_cap(self, tenant_id: str) -> int:
        """Per-tenant concurrent call limit, falling back to the configured default."""
        limit = self.db.execute(
            select(TenantSettings.concurrent_calls_limit).where(TenantSettings.tenant_id == tenant_id)
        ).scalar()
        return limit or self.config.default_tenant_concurrent_calls_limit

    def check_capacity(self, tenant_id: str) -> Tuple[bool, str]:
        """
        Check tenant and system in-flight counts against their caps.

        Returns:
            (has_capacity, reason)
        """
        system_active = self.queue.count_processing()
        if system_active >= self.config.system_concurrent_calls_limit:
            reason = f"system_limit_reached_{system_active}/{self.config.system_concurrent_calls_limit}"
            logger.debug(f"Concurrent limit reached system-wide: {reason}")
            return False, reason

        tenant_cap = self.get_tenant_cap(tenant_id)
        tenant_active = self.queue.count_processing(tenant_id=tenant_id)
        if tenant_active >= tenant_cap:
            reason = f"tenant_limit_reached_{tenant_active}/{tenant_cap}"
            logger.debug(f"Concurrent limit reached for tenant {tenant_id}: {reason}")
            return False, reason

        return True, "capacity_available"

    def closed_campaign_ids(self, tenant_id: str, now: datetime) -> Set[str]:
        """Active campaigns of the tenant whose calling window is shut at `now`."""
        campaigns = self.db.execute(
            select(Campaign).where(Campaign.tenant_id == tenant_id, Campaign.status == "active")
        ).scalars().all()

        closed = set()
        for campaign in campaigns:
            in_window, _ = CallingWindow.from_campaign(campaign).is_within_time_window(now)
            if not in_window:
                closed.add(campaign.id)
        return closed

    def check_job(self, job: CallJob, campaign: Optional[Campaign], now: datetime) -> Tuple[bool, str]:
        """
        Check the per-job rules (due time, campaign state and window).

        Returns:
            (can_dispatch, reason)
        """
        if job.scheduled_for > now:
            return False, "not_due"

        if job.lane == Lane.DIRECT.value:
            return True, "direct_call"

        if campaign is None:
            return False, "campaign_missing"
        if campaign.status != "active":
            return False, f"campaign_{campaign.status}"

        in_window, reason = CallingWindow.from_campaign(campaign).is_within_time_window(now)
        if not in_window:
            logger.debug(f"Job {job.id} outside window: {reason}")
            return False, reason

        return True, "all_rules_passed"

