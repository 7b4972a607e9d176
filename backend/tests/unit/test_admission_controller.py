"""
Unit Tests for the Admission Controller
Claim order, calling windows, concurrency caps and racing claimers
"""
import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import sessionmaker

from callqueue.domain.services.admission_controller import AdmissionController
from callqueue.domain.services.campaign_service import CampaignService
from callqueue.domain.services.queue_service import CallQueueService
from callqueue.domain.services.scheduling_rules import SchedulingRuleEngine
from callqueue.infrastructure.storage.database import create_db_engine, init_db
from callqueue.infrastructure.storage.models import TenantSettings

from helpers import NOW, OTHER_TENANT, TENANT, make_campaign


@pytest.fixture
def controller(db, config):
    return AdmissionController(db, config)


@pytest.fixture
def queue(db, config):
    return CallQueueService(db, config)


@pytest.fixture
def campaigns(db, config):
    return CampaignService(db, config)


def _direct(queue, number="+15559990000", tenant_id=TENANT):
    return queue.enqueue_direct_call(tenant_id=tenant_id, agent_id="agent-1", phone_number=number, now=NOW)


class TestClaimOrder:
    """Tests for which job claim_next hands out"""

    def test_empty_queue(self, controller):
        assert controller.claim_next(TENANT, now=NOW) is None

    def test_priority_order(self, db, config, campaigns):
        low = campaigns.create(TENANT, make_campaign(contacts=1, name="Low", priority=1), now=NOW)
        high = campaigns.create(TENANT, make_campaign(contacts=1, name="High", priority=50), now=NOW)
        controller = AdmissionController(db, config.model_copy(update={"default_tenant_concurrent_calls_limit": 5}))

        first = controller.claim_next(TENANT, now=NOW)
        second = controller.claim_next(TENANT, now=NOW)

        assert first.campaign_id == high.id
        assert second.campaign_id == low.id
        assert first.status == "processing"
        assert first.claim_token

    def test_direct_call_claimed_before_campaign(self, controller, queue, campaigns):
        campaigns.create(TENANT, make_campaign(contacts=2), now=NOW)
        direct = _direct(queue)

        assert controller.claim_next(TENANT, now=NOW).id == direct.id

    def test_direct_first_policy(self, db, config, queue, campaigns):
        campaigns.create(TENANT, make_campaign(contacts=1, priority=900), now=NOW)
        direct = _direct(queue)
        controller = AdmissionController(db, config.model_copy(update={"lane_policy": "direct_first"}))

        assert controller.claim_next(TENANT, now=NOW).id == direct.id

    def test_future_jobs_not_claimed(self, controller, campaigns):
        campaigns.create(TENANT, make_campaign(contacts=1), now=NOW + timedelta(minutes=30))

        assert controller.claim_next(TENANT, now=NOW) is None
        assert controller.claim_next(TENANT, now=NOW + timedelta(minutes=30)) is not None

    def test_other_tenants_jobs_are_invisible(self, controller, queue):
        _direct(queue, tenant_id=OTHER_TENANT)

        assert controller.claim_next(TENANT, now=NOW) is None


class TestCallingWindow:
    """Campaign jobs are only claimable inside the local window"""

    def test_new_york_window(self, controller, campaigns):
        # Created at 11:00 UTC = 07:00 EDT
        created = datetime(2024, 6, 3, 11, 0)
        campaigns.create(
            TENANT,
            make_campaign(contacts=1, timezone="America/New_York", first_call_time="09:00", last_call_time="17:00"),
            now=created,
        )

        # 08:59 EDT
        assert controller.claim_next(TENANT, now=datetime(2024, 6, 3, 12, 59)) is None
        # 09:01 EDT
        assert controller.claim_next(TENANT, now=datetime(2024, 6, 3, 13, 1)) is not None

    def test_closed_window_does_not_block_direct_calls(self, controller, queue, campaigns):
        campaigns.create(TENANT, make_campaign(contacts=1, priority=900), now=NOW)
        direct = _direct(queue)

        evening = NOW.replace(hour=20)
        assert controller.claim_next(TENANT, now=evening).id == direct.id
        assert controller.claim_next(TENANT, now=evening) is None

    def test_closed_window_backlog_read_once(self, db, config, campaigns):
        campaigns.create(TENANT, make_campaign(contacts=5), now=NOW)
        controller = AdmissionController(db, config.model_copy(update={"claim_batch_size": 2}))
        controller.queue.fetch_candidates = MagicMock(wraps=controller.queue.fetch_candidates)

        assert controller.claim_next(TENANT, now=NOW.replace(hour=20)) is None
        assert controller.queue.fetch_candidates.call_count == 1

    def test_closed_campaign_does_not_hide_open_one(self, db, config, campaigns):
        campaigns.create(TENANT, make_campaign(contacts=3, name="Daytime", priority=50), now=NOW)
        evening = campaigns.create(
            TENANT,
            make_campaign(contacts=1, name="Evening", first_call_time="18:00", last_call_time="22:00"),
            now=NOW,
        )
        controller = AdmissionController(db, config.model_copy(update={"claim_batch_size": 1}))

        claimed = controller.claim_next(TENANT, now=NOW.replace(hour=20))

        assert claimed.campaign_id == evening.id

    def test_paused_campaign_not_claimable(self, controller, campaigns):
        campaign = campaigns.create(TENANT, make_campaign(contacts=1), now=NOW)
        campaigns.pause(TENANT, campaign.id)

        assert controller.claim_next(TENANT, now=NOW) is None

        campaigns.resume(TENANT, campaign.id)
        assert controller.claim_next(TENANT, now=NOW) is not None

    def test_start_date_in_future(self, controller, campaigns):
        campaigns.create(
            TENANT,
            make_campaign(contacts=1, start_date=NOW.date() + timedelta(days=2)),
            now=NOW,
        )

        assert controller.claim_next(TENANT, now=NOW) is None
        assert controller.claim_next(TENANT, now=NOW + timedelta(days=2)) is not None


class TestCapacity:
    """Tenant, system and campaign caps use live in-flight counts"""

    def test_default_tenant_cap(self, controller, campaigns):
        campaigns.create(TENANT, make_campaign(contacts=5), now=NOW)

        claimed = [controller.claim_next(TENANT, now=NOW) for _ in range(4)]

        assert sum(1 for job in claimed if job is not None) == 2

    def test_tenant_settings_override(self, db, controller, campaigns):
        db.add(TenantSettings(tenant_id=TENANT, concurrent_calls_limit=3))
        db.commit()
        campaigns.create(TENANT, make_campaign(contacts=5), now=NOW)

        claimed = [controller.claim_next(TENANT, now=NOW) for _ in range(5)]

        assert sum(1 for job in claimed if job is not None) == 3

    def test_system_cap_spans_tenants(self, db, config, queue):
        config = config.model_copy(update={"system_concurrent_calls_limit": 3})
        controller = AdmissionController(db, config)
        for i in range(2):
            _direct(queue, f"+1555000100{i}", tenant_id=TENANT)
            _direct(queue, f"+1555000200{i}", tenant_id=OTHER_TENANT)

        claims = [
            controller.claim_next(TENANT, now=NOW),
            controller.claim_next(TENANT, now=NOW),
            controller.claim_next(OTHER_TENANT, now=NOW),
            controller.claim_next(OTHER_TENANT, now=NOW),
        ]

        assert claims[3] is None
        assert queue.count_processing() == 3

    def test_campaign_cap(self, db, config, queue, campaigns):
        config = config.model_copy(update={"default_tenant_concurrent_calls_limit": 10})
        controller = AdmissionController(db, config)
        capped = campaigns.create(TENANT, make_campaign(contacts=3, max_concurrent_calls=1, priority=10), now=NOW)
        other = campaigns.create(TENANT, make_campaign(contacts=1, name="Other"), now=NOW)

        first = controller.claim_next(TENANT, now=NOW)
        second = controller.claim_next(TENANT, now=NOW)

        assert first.campaign_id == capped.id
        # The capped campaign is skipped rather than blocking the tenant
        assert second.campaign_id == other.id
        assert controller.claim_next(TENANT, now=NOW) is None

    def test_release_frees_capacity(self, controller, campaigns):
        campaigns.create(TENANT, make_campaign(contacts=3), now=NOW)
        first = controller.claim_next(TENANT, now=NOW)
        controller.claim_next(TENANT, now=NOW)
        assert controller.claim_next(TENANT, now=NOW) is None

        controller.release(TENANT, first.id, first.claim_token, reason="no trunk")

        assert controller.claim_next(TENANT, now=NOW) is not None

    def test_reap_frees_capacity(self, controller, campaigns, config):
        campaigns.create(TENANT, make_campaign(contacts=3), now=NOW)
        controller.claim_next(TENANT, now=NOW)
        controller.claim_next(TENANT, now=NOW)

        later = NOW + timedelta(seconds=config.claim_lease_seconds + 5)
        assert controller.reap_expired_claims(later) == 2
        assert controller.claim_next(TENANT, now=later) is not None


class TestSchedulingRules:
    def test_capacity_reason(self, db, config, controller, campaigns):
        campaigns.create(TENANT, make_campaign(contacts=3), now=NOW)
        controller.claim_next(TENANT, now=NOW)
        controller.claim_next(TENANT, now=NOW)

        ok, reason = SchedulingRuleEngine(db, config=config).check_capacity(TENANT)

        assert ok is False
        assert reason == "tenant_limit_reached_2/2"


class TestConcurrentClaimers:
    """Racing claimers on a file database never exceed the caps"""

    @pytest.fixture
    def file_sessions(self, tmp_path):
        engine = create_db_engine(f"sqlite:///{tmp_path / 'queue.db'}")
        init_db(engine)
        yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
        engine.dispose()

    def _race(self, file_sessions, config, workers: int) -> list:
        results = []
        errors = []
        barrier = threading.Barrier(workers)

        def claim():
            session = file_sessions()
            try:
                barrier.wait()
                job = AdmissionController(session, config).claim_next(TENANT, now=NOW)
                results.append(job)
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=claim) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        return [job for job in results if job is not None]

    def test_tenant_cap_holds_under_contention(self, file_sessions, config):
        with file_sessions() as session:
            queue = CallQueueService(session, config)
            for i in range(10):
                _direct(queue, f"+1555100{i:04d}")

        claimed = self._race(file_sessions, config, workers=8)

        assert len(claimed) == config.default_tenant_concurrent_calls_limit
        with file_sessions() as session:
            assert CallQueueService(session, config).count_processing(TENANT) == 2

    def test_each_job_claimed_once(self, file_sessions, config):
        config = config.model_copy(update={"default_tenant_concurrent_calls_limit": 10})
        with file_sessions() as session:
            queue = CallQueueService(session, config)
            for i in range(4):
                _direct(queue, f"+1555200{i:04d}")

        claimed = self._race(file_sessions, config, workers=8)

        assert len(claimed) == 4
        assert len({job.id for job in claimed}) == 4
        assert len({job.claim_token for job in claimed}) == 4
