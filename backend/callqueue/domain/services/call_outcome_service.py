"""
Call Outcome Service
Terminal transitions for jobs whose call has ended
"""
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.orm import Session

from callqueue.core.config import SchedulerConfig, get_scheduler_config
from callqueue.core.exceptions import NotFoundError, ValidationError
from callqueue.domain.models.call_job import CallJob, CallOutcome, JobStatus, TERMINAL_OUTCOMES
from callqueue.domain.services.campaign_service import CampaignService
from callqueue.domain.services.queue_service import CallQueueService
from callqueue.domain.services.retry_scheduler import RetryScheduler
from callqueue.infrastructure.storage.database import commit_or_raise
from callqueue.infrastructure.storage.models import Campaign
from callqueue.utils.clock import utcnow

logger = logging.getLogger(__name__)


class OutcomeResult(BaseModel):
    """What recording an outcome did"""
    job_id: str
    outcome: str
    terminal: bool
    job_status: str
    retry_job: Optional[CallJob] = None
    campaign_completed: bool = False


class CallOutcomeService:
    """
    Applies call outcomes reported by the telephony side.

    For a terminal outcome, in one transaction:
    1. processing -> completed | failed, then the queue row is deleted
    2. campaign counters bumped with single SQL increments
    3. retry queued when the campaign policy allows it
    4. campaign completed when nothing is left queued or in flight
    """

    def __init__(self, db: Session, config: Optional[SchedulerConfig] = None):
        self.db = db
        self.config = config or get_scheduler_config()
        self.queue = CallQueueService(db, self.config)
        self.campaigns = CampaignService(db, self.config)
        self.retries = RetryScheduler(self.queue)

    def _locate(self, tenant_id: str, job_id: Optional[str], call_id: Optional[str]) -> CallJob:
        if job_id:
            return self.queue.get_job(tenant_id, job_id)
        if call_id:
            job = self.queue.find_by_call_id(tenant_id, call_id)
            if job is None:
                raise NotFoundError("Job for call", call_id)
            return job
        raise ValidationError("job_id or call_id is required")

    def _bump_counters(self, job: CallJob, outcome: str, now: datetime) -> None:
        values = {
            "completed_calls": Campaign.completed_calls + 1,
            "updated_at": now,
        }
        if outcome == CallOutcome.COMPLETED.value:
            values["successful_calls"] = Campaign.successful_calls + 1
        else:
            values["failed_calls"] = Campaign.failed_calls + 1

        self.db.execute(
            update(Campaign)
            .where(Campaign.id == job.campaign_id, Campaign.tenant_id == job.tenant_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def record_outcome(
        self,
        tenant_id: str,
        outcome: str,
        job_id: Optional[str] = None,
        call_id: Optional[str] = None,
        claim_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OutcomeResult:
        """
        Record a call lifecycle status for a job.

        Non-terminal statuses (initiated, ringing, in-progress) leave the
        job untouched. A terminal status only finishes the job while the
        given claim_token and/or call_id still match its current claim.
        """
        now = now or utcnow()
        job = self._locate(tenant_id, job_id, call_id)

        if outcome not in TERMINAL_OUTCOMES:
            logger.debug(f"Ignoring non-terminal status {outcome} for job {job.id}")
            return OutcomeResult(
                job_id=job.id, outcome=outcome, terminal=False, job_status=job.status,
            )

        status = JobStatus.COMPLETED.value if outcome == CallOutcome.COMPLETED.value else JobStatus.FAILED.value
        try:
            final = self.queue.finalize(
                tenant_id,
                job.id,
                status,
                failure_reason=None if status == JobStatus.COMPLETED.value else outcome,
                outcome=outcome,
                now=now,
                claim_token=claim_token,
                call_id=call_id,
            )

            retry_job = None
            campaign_completed = False
            if final.campaign_id:
                self._bump_counters(final, outcome, now)
                campaign = self.db.get(Campaign, final.campaign_id, populate_existing=True)
                retry_job = self.retries.schedule_retry(final, campaign, outcome, now=now)
                campaign_completed = self.campaigns.complete_if_drained(tenant_id, final.campaign_id, now=now)

            commit_or_raise(self.db)
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Job {job.id} finished: {outcome} -> {status}"
            + (f", retry {retry_job.id} queued" if retry_job else "")
            + (", campaign completed" if campaign_completed else "")
        )
        return OutcomeResult(
            job_id=job.id,
            outcome=outcome,
            terminal=True,
            job_status=status,
            retry_job=retry_job,
            campaign_completed=campaign_completed,
        )
