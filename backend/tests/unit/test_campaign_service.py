"""
Unit Tests for the Campaign Service
Lifecycle transitions, cancellation, sparse updates and deletion
"""
from datetime import date

import pytest

from callqueue.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from callqueue.core.config import SchedulerConfig
from callqueue.domain.models.campaign import CampaignPatch
from callqueue.domain.services.admission_controller import AdmissionController
from callqueue.domain.services.campaign_service import CampaignService
from callqueue.domain.services.queue_service import CallQueueService

from helpers import NOW, OTHER_TENANT, TENANT, make_campaign, make_contacts


@pytest.fixture
def service(db, config):
    return CampaignService(db, config)


@pytest.fixture
def queue(db, config):
    return CallQueueService(db, config)


@pytest.fixture
def controller(db, config):
    return AdmissionController(db, config)


class TestCreate:
    def test_with_contacts_goes_active(self, service):
        campaign = service.create(TENANT, make_campaign(contacts=2), now=NOW)

        assert campaign.status == "active"
        assert campaign.started_at == NOW
        assert campaign.total_contacts == 2

    def test_without_contacts_stays_draft(self, service):
        campaign = service.create(TENANT, make_campaign(contacts=0), now=NOW)

        assert campaign.status == "draft"
        assert campaign.started_at is None
        assert campaign.total_contacts == 0

    def test_timezone_defaults_from_config(self, db):
        service = CampaignService(db, SchedulerConfig(default_timezone="Europe/Madrid"))

        campaign = service.create(TENANT, make_campaign(contacts=0, timezone=None), now=NOW)

        assert campaign.timezone == "Europe/Madrid"

    def test_short_window_rejected(self, service):
        with pytest.raises(ValidationError, match="at least 1 hour"):
            service.create(TENANT, make_campaign(first_call_time="09:00", last_call_time="09:30"), now=NOW)

    def test_requires_tenant(self, service):
        with pytest.raises(ValidationError):
            service.create("", make_campaign(), now=NOW)


class TestLifecycle:
    """Tests for start, pause, resume, complete"""

    def test_start_with_empty_queue_fails(self, service):
        draft = service.create(TENANT, make_campaign(contacts=0), now=NOW)

        with pytest.raises(ValidationError, match="no contacts in queue"):
            service.start(TENANT, draft.id, now=NOW)
        assert service.get(TENANT, draft.id).status == "draft"

    def test_start_after_adding_contacts(self, service):
        draft = service.create(TENANT, make_campaign(contacts=0), now=NOW)
        service.add_contacts(TENANT, draft.id, make_contacts(2), now=NOW)

        started = service.start(TENANT, draft.id, now=NOW)

        assert started.status == "active"
        assert started.started_at == NOW

    def test_start_active_campaign_is_invalid_transition(self, service):
        campaign = service.create(TENANT, make_campaign(), now=NOW)

        with pytest.raises(InvalidTransitionError):
            service.start(TENANT, campaign.id, now=NOW)

    def test_pause_and_resume(self, service):
        campaign = service.create(TENANT, make_campaign(), now=NOW)

        assert service.pause(TENANT, campaign.id).status == "paused"
        with pytest.raises(InvalidTransitionError):
            service.pause(TENANT, campaign.id)
        assert service.resume(TENANT, campaign.id).status == "active"

    def test_resume_draft_is_invalid(self, service):
        draft = service.create(TENANT, make_campaign(contacts=0), now=NOW)

        with pytest.raises(InvalidTransitionError):
            service.resume(TENANT, draft.id)

    def test_complete_requires_empty_queue(self, service):
        campaign = service.create(TENANT, make_campaign(contacts=1), now=NOW)

        with pytest.raises(ValidationError, match="queued or in-progress"):
            service.complete(TENANT, campaign.id, now=NOW)

    def test_complete_after_cancelling_jobs(self, service, queue):
        campaign = service.create(TENANT, make_campaign(contacts=1), now=NOW)
        jobs, _ = queue.list_campaign_jobs(TENANT, campaign.id)
        queue.cancel_job(TENANT, jobs[0].id)

        completed = service.complete(TENANT, campaign.id, now=NOW)

        assert completed.status == "completed"
        assert completed.completed_at == NOW

    def test_other_tenant_sees_not_found(self, service):
        campaign = service.create(TENANT, make_campaign(), now=NOW)

        with pytest.raises(NotFoundError):
            service.pause(OTHER_TENANT, campaign.id)
        with pytest.raises(NotFoundError):
            service.get(OTHER_TENANT, campaign.id)


class TestCancel:
    def test_cancel_drops_queued_but_keeps_processing(self, service, queue, controller):
        campaign = service.create(TENANT, make_campaign(contacts=4), now=NOW)
        claimed = controller.claim_next(TENANT, now=NOW)

        cancelled, removed = service.cancel(TENANT, campaign.id, now=NOW)

        assert cancelled.status == "cancelled"
        assert removed == 3
        remaining, total = queue.list_campaign_jobs(TENANT, campaign.id)
        assert total == 1
        assert remaining[0].id == claimed.id
        assert remaining[0].status == "processing"

    def test_cancel_twice_is_invalid(self, service):
        campaign = service.create(TENANT, make_campaign(), now=NOW)
        service.cancel(TENANT, campaign.id, now=NOW)

        with pytest.raises(InvalidTransitionError):
            service.cancel(TENANT, campaign.id, now=NOW)

    def test_no_contacts_added_after_cancel(self, service):
        campaign = service.create(TENANT, make_campaign(), now=NOW)
        service.cancel(TENANT, campaign.id, now=NOW)

        with pytest.raises(ValidationError):
            service.add_contacts(TENANT, campaign.id, make_contacts(1), now=NOW)


class TestUpdate:
    """Sparse updates only touch the fields that were sent"""

    def test_partial_update(self, service):
        campaign = service.create(TENANT, make_campaign(description="Summer batch"), now=NOW)

        updated = service.update(TENANT, campaign.id, CampaignPatch.model_validate({"name": "Renamed"}))

        assert updated.name == "Renamed"
        assert updated.description == "Summer batch"
        assert updated.max_retries == campaign.max_retries

    def test_explicit_null_clears_nullable_field(self, service):
        campaign = service.create(TENANT, make_campaign(description="Summer batch"), now=NOW)

        updated = service.update(TENANT, campaign.id, CampaignPatch.model_validate({"description": None}))

        assert updated.description is None

    def test_null_rejected_for_required_field(self, service):
        campaign = service.create(TENANT, make_campaign(), now=NOW)

        with pytest.raises(ValidationError, match="cannot be null"):
            service.update(TENANT, campaign.id, CampaignPatch.model_validate({"name": None}))

    def test_window_rechecked_against_stored_values(self, service):
        campaign = service.create(TENANT, make_campaign(), now=NOW)

        with pytest.raises(ValidationError, match="before"):
            service.update(TENANT, campaign.id, CampaignPatch(first_call_time="18:00"))

    def test_date_range_checked(self, service):
        campaign = service.create(TENANT, make_campaign(start_date=date(2024, 6, 1)), now=NOW)

        with pytest.raises(ValidationError, match="end_date"):
            service.update(TENANT, campaign.id, CampaignPatch(end_date=date(2024, 5, 1)))

    def test_priority_propagates_to_queued_jobs(self, service, queue):
        campaign = service.create(TENANT, make_campaign(contacts=2), now=NOW)

        service.update(TENANT, campaign.id, CampaignPatch(priority=300))

        jobs, _ = queue.list_campaign_jobs(TENANT, campaign.id)
        assert {job.priority for job in jobs} == {300}

    def test_terminal_campaign_cannot_be_modified(self, service):
        campaign = service.create(TENANT, make_campaign(), now=NOW)
        service.cancel(TENANT, campaign.id, now=NOW)

        with pytest.raises(ValidationError, match="cancelled"):
            service.update(TENANT, campaign.id, CampaignPatch(name="Too late"))


class TestDeleteAndList:
    def test_delete_draft(self, service):
        draft = service.create(TENANT, make_campaign(contacts=0), now=NOW)

        service.delete(TENANT, draft.id)

        with pytest.raises(NotFoundError):
            service.get(TENANT, draft.id)

    def test_delete_active_rejected(self, service):
        campaign = service.create(TENANT, make_campaign(), now=NOW)

        with pytest.raises(ValidationError, match="draft or cancelled"):
            service.delete(TENANT, campaign.id)

    def test_delete_cancelled_with_call_in_flight_rejected(self, service, controller):
        campaign = service.create(TENANT, make_campaign(contacts=2), now=NOW)
        controller.claim_next(TENANT, now=NOW)
        service.cancel(TENANT, campaign.id, now=NOW)

        with pytest.raises(ValidationError, match="in progress"):
            service.delete(TENANT, campaign.id)

    def test_list_and_summary(self, service):
        service.create(TENANT, make_campaign(contacts=1), now=NOW)
        service.create(TENANT, make_campaign(contacts=0, name="Draft"), now=NOW)
        service.create(OTHER_TENANT, make_campaign(contacts=1), now=NOW)

        items, total = service.list_campaigns(TENANT)
        drafts, draft_total = service.list_campaigns(TENANT, status="draft")
        summary = service.summary(TENANT)

        assert total == 2
        assert draft_total == 1
        assert drafts[0].name == "Draft"
        assert summary["active"] == 1
        assert summary["draft"] == 1
        assert summary["total"] == 2

    def test_statistics(self, service, controller):
        campaign = service.create(TENANT, make_campaign(contacts=3), now=NOW)
        controller.claim_next(TENANT, now=NOW)

        stats = service.get_statistics(TENANT, campaign.id)

        assert stats["total_contacts"] == 3
        assert stats["queued"] == 2
        assert stats["processing"] == 1
