"""
Retry Scheduler
Re-enqueues campaign jobs whose calls ended busy or unanswered
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from callqueue.domain.models.call_job import CallJob, Lane, RETRYABLE_OUTCOMES
from callqueue.domain.models.campaign import TERMINAL_CAMPAIGN_STATUSES
from callqueue.domain.services.queue_service import CallQueueService
from callqueue.infrastructure.storage.models import Campaign
from callqueue.utils.clock import utcnow

logger = logging.getLogger(__name__)


class RetryScheduler:
    """
    Decides whether a finished attempt earns another one and queues it.

    The new job is due at now + retry_interval_minutes. It is not checked
    against the calling window here; the admission controller does that
    when the job comes up for dispatch.
    """

    def __init__(self, queue: CallQueueService):
        self.queue = queue

    def should_retry(self, job: CallJob, campaign: Optional[Campaign], outcome: str) -> Tuple[bool, str]:
        """
        Returns:
            (should_retry, reason)
        """
        if job.lane != Lane.CAMPAIGN.value or campaign is None:
            return False, "not_a_campaign_job"

        if outcome not in RETRYABLE_OUTCOMES:
            return False, f"non_retryable_{outcome}"

        if campaign.status in TERMINAL_CAMPAIGN_STATUSES:
            return False, f"campaign_{campaign.status}"

        if not campaign.max_retries or campaign.max_retries <= 0:
            return False, "retries_disabled"

        if job.retry_count >= campaign.max_retries:
            return False, "max_retries_reached"

        return True, f"retrying_{outcome}"

    def schedule_retry(
        self,
        job: CallJob,
        campaign: Optional[Campaign],
        outcome: str,
        now: Optional[datetime] = None,
    ) -> Optional[CallJob]:
        """
        Queue the next attempt when the policy allows it. Does not commit.

        Returns:
            The new job, or None when no retry is due.
        """
        retry, reason = self.should_retry(job, campaign, outcome)
        if not retry:
            logger.debug(f"No retry for job {job.id}: {reason}")
            return None

        now = now or utcnow()
        scheduled_for = now + timedelta(minutes=max(1, campaign.retry_interval_minutes))
        row = self.queue.add_retry_job(job, scheduled_for, outcome)

        logger.info(
            f"Scheduled retry {job.retry_count + 1}/{campaign.max_retries} for job {job.id} "
            f"({outcome}) at {scheduled_for.isoformat()}"
        )
        return CallJob.model_validate(row)
