"""
Analytics Service
Derives campaign progress, connection and success metrics
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from callqueue.domain.models.analytics import (
    AttemptDistribution,
    CampaignAnalytics,
    QueueBreakdown,
    safe_percentage,
)
from callqueue.domain.models.call_job import CONTACTED_OUTCOMES, TERMINAL_OUTCOMES, CallOutcome, JobStatus
from callqueue.infrastructure.storage.models import Call, Campaign, QueuedCall
from callqueue.utils.clock import utcnow
from callqueue.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)


class AnalyticsService:
    """
    Campaign metrics from the call history and the live queue.

    - progress_percentage   = handled / total_contacts
    - call_connection_rate  = contacted / attempted (attempted excludes 'initiated')
    - success_rate          = successful_calls / completed_calls
    - average_call_duration = mean over 'completed' calls only

    Every ratio is 0 when its denominator is 0.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_campaign_analytics(
        self,
        tenant_id: str,
        campaign_id: str,
        now: Optional[datetime] = None,
    ) -> CampaignAnalytics:
        campaign = self.db.execute(
            select(Campaign).where(Campaign.id == campaign_id, Campaign.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if campaign is None:
            raise NotFoundError("Campaign", campaign_id)

        status_counts = dict(self.db.execute(
            select(Call.call_lifecycle_status, func.count())
            .where(Call.campaign_id == campaign_id, Call.tenant_id == tenant_id)
            .group_by(Call.call_lifecycle_status)
        ).all())

        handled = sum(count for status, count in status_counts.items() if status in TERMINAL_OUTCOMES)
        attempted = sum(
            count for status, count in status_counts.items() if status != CallOutcome.INITIATED.value
        )
        contacted = sum(count for status, count in status_counts.items() if status in CONTACTED_OUTCOMES)

        avg_duration, credits = self.db.execute(
            select(
                func.avg(case(
                    (Call.call_lifecycle_status == CallOutcome.COMPLETED.value, Call.duration_seconds),
                )),
                func.coalesce(func.sum(Call.credits_used), 0),
            ).where(Call.campaign_id == campaign_id, Call.tenant_id == tenant_id)
        ).one()

        queue_counts = dict(self.db.execute(
            select(QueuedCall.status, func.count())
            .where(QueuedCall.campaign_id == campaign_id, QueuedCall.tenant_id == tenant_id)
            .group_by(QueuedCall.status)
        ).all())

        duration = None
        if campaign.started_at:
            end = campaign.completed_at or now or utcnow()
            duration = max(0, int((end - campaign.started_at).total_seconds()))

        analytics = CampaignAnalytics(
            campaign_id=campaign.id,
            status=campaign.status,
            total_contacts=campaign.total_contacts,
            handled_calls=handled,
            attempted_calls=attempted,
            contacted_calls=contacted,
            completed_calls=campaign.completed_calls,
            successful_calls=campaign.successful_calls,
            failed_calls=campaign.failed_calls,
            progress_percentage=safe_percentage(handled, campaign.total_contacts),
            call_connection_rate=safe_percentage(contacted, attempted),
            success_rate=safe_percentage(campaign.successful_calls, campaign.completed_calls),
            average_call_duration=round(float(avg_duration or 0), 2),
            total_credits_used=int(credits or 0),
            campaign_duration_seconds=duration,
            queue=QueueBreakdown(
                queued=queue_counts.get(JobStatus.QUEUED.value, 0),
                in_progress=queue_counts.get(JobStatus.PROCESSING.value, 0),
                cancelled=queue_counts.get(JobStatus.CANCELLED.value, 0),
                skipped=queue_counts.get(JobStatus.SKIPPED.value, 0),
            ),
            attempt_distribution=AttemptDistribution(
                busy=status_counts.get(CallOutcome.BUSY.value, 0),
                no_answer=status_counts.get(CallOutcome.NO_ANSWER.value, 0),
                contacted=contacted,
                failed=status_counts.get(CallOutcome.FAILED.value, 0),
                not_attempted=queue_counts.get(JobStatus.QUEUED.value, 0),
            ),
        )
        logger.debug(f"Analytics for campaign {campaign_id}: progress={analytics.progress_percentage}%")
        return analytics
