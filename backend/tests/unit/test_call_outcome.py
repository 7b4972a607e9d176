"""
Unit Tests for Call Outcomes and Retries
Terminal transitions, counters, retry scheduling and automatic completion
"""
from datetime import datetime, timedelta

import pytest

from callqueue.core.exceptions import ConcurrencyConflict, NotFoundError
from callqueue.domain.models.call_job import CallJob
from callqueue.domain.services.admission_controller import AdmissionController
from callqueue.domain.services.call_outcome_service import CallOutcomeService
from callqueue.domain.services.campaign_service import CampaignService
from callqueue.domain.services.queue_service import CallQueueService
from callqueue.domain.services.retry_scheduler import RetryScheduler
from callqueue.infrastructure.storage.models import Campaign

from helpers import NOW, TENANT, make_campaign


@pytest.fixture
def campaigns(db, config):
    return CampaignService(db, config)


@pytest.fixture
def controller(db, config):
    return AdmissionController(db, config)


@pytest.fixture
def outcomes(db, config):
    return CallOutcomeService(db, config)


@pytest.fixture
def queue(db, config):
    return CallQueueService(db, config)


class TestRecordOutcome:
    """Tests for CallOutcomeService.record_outcome"""

    def test_completed_call(self, db, campaigns, controller, outcomes):
        campaign = campaigns.create(TENANT, make_campaign(contacts=2), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)

        result = outcomes.record_outcome(TENANT, "completed", job_id=job.id, now=NOW)

        assert result.terminal is True
        assert result.job_status == "completed"
        assert result.retry_job is None
        assert result.campaign_completed is False

        stored = db.get(Campaign, campaign.id, populate_existing=True)
        assert stored.completed_calls == 1
        assert stored.successful_calls == 1
        assert stored.failed_calls == 0

    def test_failed_outcome_counts_as_failed(self, db, campaigns, controller, outcomes):
        campaign = campaigns.create(TENANT, make_campaign(contacts=2), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)

        result = outcomes.record_outcome(TENANT, "call-disconnected", job_id=job.id, now=NOW)

        assert result.job_status == "failed"
        stored = db.get(Campaign, campaign.id, populate_existing=True)
        assert stored.completed_calls == 1
        assert stored.failed_calls == 1

    def test_job_row_deleted(self, campaigns, controller, outcomes, queue):
        campaigns.create(TENANT, make_campaign(contacts=2), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)

        outcomes.record_outcome(TENANT, "completed", job_id=job.id, now=NOW)

        with pytest.raises(NotFoundError):
            queue.get_job(TENANT, job.id)

    def test_non_terminal_status_is_ignored(self, campaigns, controller, outcomes, queue):
        campaigns.create(TENANT, make_campaign(contacts=1), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)

        result = outcomes.record_outcome(TENANT, "ringing", job_id=job.id, now=NOW)

        assert result.terminal is False
        assert queue.get_job(TENANT, job.id).status == "processing"

    def test_lookup_by_call_id(self, campaigns, controller, outcomes, queue):
        campaigns.create(TENANT, make_campaign(contacts=2), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)
        queue.attach_call(TENANT, job.id, job.claim_token, "call-77")

        result = outcomes.record_outcome(TENANT, "completed", call_id="call-77", now=NOW)

        assert result.job_id == job.id

    def test_unknown_call_id(self, outcomes):
        with pytest.raises(NotFoundError):
            outcomes.record_outcome(TENANT, "completed", call_id="nope", now=NOW)

    def test_outcome_twice_conflicts(self, campaigns, controller, outcomes, queue):
        campaigns.create(TENANT, make_campaign(contacts=2), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)
        outcomes.record_outcome(TENANT, "completed", job_id=job.id, now=NOW)

        with pytest.raises(NotFoundError):
            outcomes.record_outcome(TENANT, "completed", job_id=job.id, now=NOW)

    def test_outcome_for_unclaimed_job_conflicts(self, campaigns, outcomes, queue):
        campaign = campaigns.create(TENANT, make_campaign(contacts=1), now=NOW)
        jobs, _ = queue.list_campaign_jobs(TENANT, campaign.id)

        with pytest.raises(ConcurrencyConflict):
            outcomes.record_outcome(TENANT, "completed", job_id=jobs[0].id, now=NOW)

    def test_direct_call_outcome(self, controller, outcomes, queue):
        job = queue.enqueue_direct_call(TENANT, "agent-1", "+15550001111", now=NOW)
        controller.claim_next(TENANT, now=NOW)

        result = outcomes.record_outcome(TENANT, "busy", job_id=job.id, now=NOW)

        assert result.job_status == "failed"
        assert result.retry_job is None


class TestAutoCompletion:
    def test_last_outcome_completes_campaign(self, campaigns, controller, outcomes):
        campaign = campaigns.create(TENANT, make_campaign(contacts=1), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)

        result = outcomes.record_outcome(TENANT, "completed", job_id=job.id, now=NOW)

        assert result.campaign_completed is True
        assert campaigns.get(TENANT, campaign.id).status == "completed"

    def test_cancelled_campaign_stays_cancelled(self, campaigns, controller, outcomes):
        campaign = campaigns.create(TENANT, make_campaign(contacts=2, max_retries=3), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)
        campaigns.cancel(TENANT, campaign.id, now=NOW)

        result = outcomes.record_outcome(TENANT, "busy", job_id=job.id, now=NOW)

        assert result.retry_job is None
        assert result.campaign_completed is False
        assert campaigns.get(TENANT, campaign.id).status == "cancelled"

    def test_paused_campaign_not_auto_completed(self, campaigns, controller, outcomes):
        campaign = campaigns.create(TENANT, make_campaign(contacts=1), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)
        campaigns.pause(TENANT, campaign.id)

        result = outcomes.record_outcome(TENANT, "completed", job_id=job.id, now=NOW)

        assert result.campaign_completed is False
        assert campaigns.get(TENANT, campaign.id).status == "paused"


class TestReclaimedJobs:
    """An outcome for a lapsed claim must not finish the job's next attempt"""

    @pytest.fixture
    def reclaimed(self, campaigns, controller, queue, config):
        campaigns.create(TENANT, make_campaign(contacts=1, max_retries=1), now=NOW)
        first = controller.claim_next(TENANT, now=NOW)
        queue.attach_call(TENANT, first.id, first.claim_token, "call-1", now=NOW)

        later = NOW + timedelta(seconds=config.claim_lease_seconds + 5)
        assert controller.reap_expired_claims(later) == 1
        second = controller.claim_next(TENANT, now=later)
        queue.attach_call(TENANT, second.id, second.claim_token, "call-2", now=later)
        return first, second, later

    def test_same_job_claimed_again(self, reclaimed):
        first, second, _ = reclaimed

        assert second.id == first.id
        assert second.claim_token != first.claim_token

    def test_old_claim_token_conflicts(self, reclaimed, outcomes, queue):
        first, second, later = reclaimed

        with pytest.raises(ConcurrencyConflict):
            outcomes.record_outcome(TENANT, "busy", job_id=first.id, claim_token=first.claim_token, now=later)

        current = queue.get_job(TENANT, second.id)
        assert current.status == "processing"
        assert current.claim_token == second.claim_token
        assert current.call_id == "call-2"

    def test_old_call_id_not_found(self, reclaimed, outcomes, queue):
        _, second, later = reclaimed

        with pytest.raises(NotFoundError):
            outcomes.record_outcome(TENANT, "busy", call_id="call-1", now=later)

        assert queue.get_job(TENANT, second.id).status == "processing"

    def test_current_claim_still_finishes(self, db, reclaimed, outcomes):
        first, second, later = reclaimed
        with pytest.raises(ConcurrencyConflict):
            outcomes.record_outcome(TENANT, "busy", job_id=first.id, claim_token=first.claim_token, now=later)

        result = outcomes.record_outcome(TENANT, "busy", call_id="call-2", now=later)

        assert result.terminal is True
        assert result.retry_job.retry_count == 1
        stored = db.get(Campaign, second.campaign_id, populate_existing=True)
        assert stored.completed_calls == 1
        assert stored.failed_calls == 1

    def test_current_claim_token_finishes(self, reclaimed, outcomes):
        _, second, later = reclaimed

        result = outcomes.record_outcome(
            TENANT, "completed", job_id=second.id, claim_token=second.claim_token, now=later
        )

        assert result.job_status == "completed"
        assert result.campaign_completed is True


class TestRetryScheduling:
    """Busy and no-answer outcomes earn retries up to max_retries"""

    def test_two_retries_then_done(self, db, campaigns, controller, outcomes, queue):
        campaign = campaigns.create(
            TENANT, make_campaign(contacts=1, max_retries=2, retry_interval_minutes=30), now=NOW
        )

        job = controller.claim_next(TENANT, now=NOW)
        first = outcomes.record_outcome(TENANT, "busy", job_id=job.id, now=NOW)

        assert first.retry_job is not None
        assert first.retry_job.retry_count == 1
        assert first.retry_job.scheduled_for == NOW + timedelta(minutes=30)
        assert first.retry_job.original_job_id == job.id
        assert first.retry_job.last_call_outcome == "busy"
        assert first.campaign_completed is False

        # Not due before the interval has passed
        assert controller.claim_next(TENANT, now=NOW + timedelta(minutes=29)) is None

        t1 = NOW + timedelta(minutes=30)
        retry = controller.claim_next(TENANT, now=t1)
        assert retry.id == first.retry_job.id
        second = outcomes.record_outcome(TENANT, "no-answer", job_id=retry.id, now=t1)

        assert second.retry_job.retry_count == 2
        assert second.retry_job.scheduled_for == t1 + timedelta(minutes=30)
        assert second.retry_job.original_job_id == job.id

        t2 = t1 + timedelta(minutes=30)
        last = controller.claim_next(TENANT, now=t2)
        third = outcomes.record_outcome(TENANT, "busy", job_id=last.id, now=t2)

        assert third.retry_job is None
        assert third.campaign_completed is True

        stored = db.get(Campaign, campaign.id, populate_existing=True)
        assert stored.completed_calls == 3
        assert stored.failed_calls == 3
        assert stored.successful_calls == 0
        assert queue.count_jobs(campaign_id=campaign.id) == 0

    def test_retry_due_after_closing_waits_for_next_window(self, campaigns, controller, outcomes):
        # 16:45 EDT, fifteen minutes before the window closes
        afternoon = datetime(2024, 6, 3, 20, 45)
        campaigns.create(
            TENANT,
            make_campaign(
                contacts=1,
                max_retries=1,
                retry_interval_minutes=30,
                timezone="America/New_York",
                first_call_time="09:00",
                last_call_time="17:00",
            ),
            now=afternoon,
        )
        job = controller.claim_next(TENANT, now=afternoon)

        result = outcomes.record_outcome(TENANT, "busy", job_id=job.id, now=afternoon)

        # Enqueued for 17:15 EDT without any window check
        retry = result.retry_job
        assert retry.scheduled_for == datetime(2024, 6, 3, 21, 15)
        assert retry.status == "queued"

        # Due but outside the window at 17:15 EDT and overnight
        assert controller.claim_next(TENANT, now=datetime(2024, 6, 3, 21, 15)) is None
        assert controller.claim_next(TENANT, now=datetime(2024, 6, 4, 7, 0)) is None

        # 09:00 EDT the next day
        claimed = controller.claim_next(TENANT, now=datetime(2024, 6, 4, 13, 0))
        assert claimed.id == retry.id

    def test_retry_inherits_priority(self, campaigns, controller, outcomes):
        campaigns.create(TENANT, make_campaign(contacts=1, max_retries=1, priority=40), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)

        result = outcomes.record_outcome(TENANT, "no-answer", job_id=job.id, now=NOW)

        assert result.retry_job.priority == 40
        assert result.retry_job.phone_number == job.phone_number

    def test_failed_outcome_not_retried(self, campaigns, controller, outcomes):
        campaigns.create(TENANT, make_campaign(contacts=1, max_retries=3), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)

        result = outcomes.record_outcome(TENANT, "failed", job_id=job.id, now=NOW)

        assert result.retry_job is None

    def test_retries_disabled(self, campaigns, controller, outcomes):
        campaigns.create(TENANT, make_campaign(contacts=1, max_retries=0), now=NOW)
        job = controller.claim_next(TENANT, now=NOW)

        assert outcomes.record_outcome(TENANT, "busy", job_id=job.id, now=NOW).retry_job is None


class TestShouldRetry:
    """Policy checks without touching the queue"""

    def _job(self, **overrides):
        values = {
            "id": "job-1",
            "tenant_id": TENANT,
            "campaign_id": "c-1",
            "agent_id": "agent-1",
            "phone_number": "+15550001111",
            "scheduled_for": NOW,
            "created_at": NOW,
        }
        values.update(overrides)
        return CallJob(**values)

    def test_reasons(self, queue):
        scheduler = RetryScheduler(queue)
        campaign = Campaign(status="active", max_retries=2, retry_interval_minutes=5)

        assert scheduler.should_retry(self._job(), campaign, "busy") == (True, "retrying_busy")
        assert scheduler.should_retry(self._job(), campaign, "completed")[0] is False
        assert scheduler.should_retry(self._job(retry_count=2), campaign, "busy") == (False, "max_retries_reached")
        assert scheduler.should_retry(self._job(lane="direct"), campaign, "busy") == (False, "not_a_campaign_job")

        campaign.status = "completed"
        assert scheduler.should_retry(self._job(), campaign, "no-answer") == (False, "campaign_completed")
