"""
Tests for the durable job queue: dedup, leases, retry policy, expiry and retention.
"""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from src.cli_session import SessionManager
from src.database import DatabaseManager, SubscriptionStore
from src.database.models import (
    Job, JOB_QUEUED, JOB_IN_FLIGHT, JOB_COMPLETED, JOB_FAILED,
    SUBSCRIPTION_ACTIVE, SUBSCRIPTION_FAILED, SUBSCRIPTION_UNSUBSCRIBED, utcnow,
)
from src.exceptions import NotFound, ScanFailure, TransientIOFailure, Unsupported
from src.jobs import JobQueue, QueueSettings, SCAN_QUEUE, UNSUBSCRIBE_QUEUE, unsubscribe_job_id


@pytest.fixture
def session_manager():
    db_manager = DatabaseManager("sqlite:///:memory:")
    db_manager.initialize_database()
    yield SessionManager(db_manager)
    db_manager.dispose()


@pytest.fixture
def queue(session_manager):
    settings = {
        SCAN_QUEUE: QueueSettings(max_attempts=1, backoff_seconds=0, timeout_seconds=300),
        UNSUBSCRIBE_QUEUE: QueueSettings(max_attempts=3, backoff_seconds=2, timeout_seconds=60),
    }
    return JobQueue(session_manager, settings=settings, completed_retention=3600, failed_retention=86400)


def set_job_fields(session_manager, job_id, **values):
    with session_manager.get_session() as session:
        session.execute(update(Job).where(Job.id == job_id).values(**values))
        session.commit()


def make_eligible(session_manager, job_id):
    set_job_fields(session_manager, job_id, next_eligible_at=utcnow() - timedelta(seconds=1))


def add_subscription(session_manager, fingerprint, status=None):
    with session_manager.get_session() as session:
        store = SubscriptionStore(session)
        subscription_id = store.upsert_subscription(
            user_id='alice', fingerprint=fingerprint, list_id=None,
            from_address=None, from_domain='example.com', display_name='example.com',
            unsubscribe_http_url='https://example.com/u', unsubscribe_mailto=None,
            one_click_supported=True, seen_at=datetime(2024, 1, 2),
        )
        if status:
            store.transition_subscription(subscription_id, status, datetime(2024, 1, 3))
        session.commit()
        return subscription_id


def subscription_status(session_manager, subscription_id):
    with session_manager.get_session() as session:
        return SubscriptionStore(session).get_subscription('alice', subscription_id).status


class TestEnqueue:

    def test_enqueue_scan(self, queue):
        job_id = queue.enqueue_scan('alice')

        assert job_id.startswith('scan:')
        job = queue.get_job(job_id)
        assert job.state == JOB_QUEUED
        assert job.max_attempts == 1
        assert job.timeout_seconds == 300

        claimed = queue.claim(SCAN_QUEUE)
        assert claimed.id == job_id
        assert claimed.payload == {'user_id': 'alice', 'job_id': job_id}
        assert claimed.attempts_made == 1

    def test_each_scan_gets_its_own_job(self, queue):
        assert queue.enqueue_scan('alice') != queue.enqueue_scan('alice')
        assert len(queue.list_jobs(queue=SCAN_QUEUE)) == 2

    def test_unsubscribe_ids_collapse(self, queue):
        count = queue.enqueue_unsubscribe('alice', [1, 2, 2])

        assert count == 3
        jobs = queue.list_jobs(queue=UNSUBSCRIBE_QUEUE)
        assert sorted(job.id for job in jobs) == ['unsub:alice:1', 'unsub:alice:2']

    def test_queued_job_is_not_duplicated(self, queue):
        queue.enqueue_unsubscribe('alice', [1])
        queue.enqueue_unsubscribe('alice', [1])

        assert len(queue.list_jobs()) == 1

    def test_in_flight_job_is_not_duplicated(self, queue):
        queue.enqueue_unsubscribe('alice', [1])
        claimed = queue.claim(UNSUBSCRIBE_QUEUE)

        queue.enqueue_unsubscribe('alice', [1])

        job = queue.get_job(claimed.id)
        assert job.state == JOB_IN_FLIGHT
        assert job.lease_token == claimed.lease_token

    def test_finished_job_is_rearmed(self, queue):
        queue.enqueue_unsubscribe('alice', [1])
        claimed = queue.claim(UNSUBSCRIBE_QUEUE)
        queue.fail(claimed, Unsupported('No unsubscribe method available'))

        queue.enqueue_unsubscribe('alice', [1])

        job = queue.get_job(unsubscribe_job_id('alice', 1))
        assert job.state == JOB_QUEUED
        assert job.attempts_made == 0
        assert job.last_error is None
        assert job.finished_at is None

    def test_failed_subscription_is_rearmed(self, queue, session_manager):
        failed = add_subscription(session_manager, 'domain:a.example', SUBSCRIPTION_FAILED)
        done = add_subscription(session_manager, 'domain:b.example', SUBSCRIPTION_UNSUBSCRIBED)

        queue.enqueue_unsubscribe('alice', [failed, done])

        assert subscription_status(session_manager, failed) == SUBSCRIPTION_ACTIVE
        assert subscription_status(session_manager, done) == SUBSCRIPTION_UNSUBSCRIBED


class TestClaim:

    def test_claim_empty_queue(self, queue):
        assert queue.claim(UNSUBSCRIBE_QUEUE) is None

    def test_claim_is_exclusive(self, queue):
        queue.enqueue_unsubscribe('alice', [1])

        first = queue.claim(UNSUBSCRIBE_QUEUE)
        second = queue.claim(UNSUBSCRIBE_QUEUE)

        assert first is not None
        assert second is None
        job = queue.get_job(first.id)
        assert job.deadline_at == job.updated_at + timedelta(seconds=60)

    def test_claim_respects_queue_name(self, queue):
        queue.enqueue_unsubscribe('alice', [1])

        assert queue.claim(SCAN_QUEUE) is None

    def test_complete(self, queue):
        queue.enqueue_unsubscribe('alice', [1])
        claimed = queue.claim(UNSUBSCRIBE_QUEUE)

        assert queue.complete(claimed)

        job = queue.get_job(claimed.id)
        assert job.state == JOB_COMPLETED
        assert job.lease_token is None
        assert job.finished_at is not None

    def test_finish_with_foreign_lease_is_ignored(self, queue):
        queue.enqueue_unsubscribe('alice', [1])
        claimed = queue.claim(UNSUBSCRIBE_QUEUE)
        impostor = replace(claimed, lease_token='not-the-lease')

        assert queue.complete(impostor) is False
        assert queue.fail(impostor, TransientIOFailure('boom')) is None
        assert queue.get_job(claimed.id).state == JOB_IN_FLIGHT


class TestRetryPolicy:

    def test_exponential_backoff_then_terminal(self, queue, session_manager):
        queue.enqueue_unsubscribe('alice', [1])
        job_id = unsubscribe_job_id('alice', 1)

        claimed = queue.claim(UNSUBSCRIBE_QUEUE)
        assert queue.fail(claimed, TransientIOFailure('Connection error')) == JOB_QUEUED
        job = queue.get_job(job_id)
        assert job.attempts_made == 1
        assert job.next_eligible_at - job.updated_at == timedelta(seconds=2)
        assert job.last_error == 'Connection error'
        # Not eligible until the backoff elapses
        assert queue.claim(UNSUBSCRIBE_QUEUE) is None

        make_eligible(session_manager, job_id)
        claimed = queue.claim(UNSUBSCRIBE_QUEUE)
        assert claimed.attempts_made == 2
        assert queue.fail(claimed, TransientIOFailure('Connection error')) == JOB_QUEUED
        job = queue.get_job(job_id)
        assert job.next_eligible_at - job.updated_at == timedelta(seconds=4)

        make_eligible(session_manager, job_id)
        claimed = queue.claim(UNSUBSCRIBE_QUEUE)
        assert queue.fail(claimed, TransientIOFailure('still down')) == JOB_FAILED
        job = queue.get_job(job_id)
        assert job.attempts_made == 3
        assert job.last_error == 'still down'
        assert job.finished_at is not None

    @pytest.mark.parametrize('error', [
        Unsupported('No unsubscribe method available'),
        NotFound('Subscription not found'),
    ])
    def test_non_retryable_errors_fail_immediately(self, queue, error):
        queue.enqueue_unsubscribe('alice', [1])
        claimed = queue.claim(UNSUBSCRIBE_QUEUE)

        assert queue.fail(claimed, error) == JOB_FAILED
        assert queue.get_job(claimed.id).attempts_made == 1

    def test_scan_jobs_are_not_retried(self, queue):
        queue.enqueue_scan('alice')
        claimed = queue.claim(SCAN_QUEUE)

        assert queue.fail(claimed, ScanFailure('Scan failed after 3 messages')) == JOB_FAILED

    def test_retry_delay(self):
        policy = QueueSettings(max_attempts=3, backoff_seconds=2, timeout_seconds=60)

        assert [policy.retry_delay(n).total_seconds() for n in (1, 2, 3)] == [2, 4, 8]


class TestMaintenance:

    def test_expired_lease_is_retried_and_hook_runs(self, queue, session_manager):
        calls = []
        queue.register_expiry_hook(UNSUBSCRIBE_QUEUE, lambda payload, error: calls.append((payload, error)))
        queue.enqueue_unsubscribe('alice', [7])
        claimed = queue.claim(UNSUBSCRIBE_QUEUE)
        set_job_fields(session_manager, claimed.id, deadline_at=utcnow() - timedelta(seconds=1))

        assert queue.expire_stale() == 1

        job = queue.get_job(claimed.id)
        assert job.state == JOB_QUEUED
        assert 'timed out' in job.last_error
        assert calls == [({'user_id': 'alice', 'subscription_id': 7}, job.last_error)]
        # The worker that lost the lease cannot finish the job any more
        assert queue.complete(claimed) is False

    def test_expired_scan_fails(self, queue, session_manager):
        queue.enqueue_scan('alice')
        claimed = queue.claim(SCAN_QUEUE)
        set_job_fields(session_manager, claimed.id, deadline_at=utcnow() - timedelta(seconds=1))

        queue.expire_stale()

        assert queue.get_job(claimed.id).state == JOB_FAILED

    def test_live_leases_are_left_alone(self, queue):
        queue.enqueue_unsubscribe('alice', [1])
        queue.claim(UNSUBSCRIBE_QUEUE)

        assert queue.expire_stale() == 0

    def test_failing_hook_does_not_stop_expiry(self, queue, session_manager):
        def broken_hook(payload, error):
            raise RuntimeError('store down')

        queue.register_expiry_hook(UNSUBSCRIBE_QUEUE, broken_hook)
        queue.enqueue_unsubscribe('alice', [1, 2])
        for _ in range(2):
            claimed = queue.claim(UNSUBSCRIBE_QUEUE)
            set_job_fields(session_manager, claimed.id, deadline_at=utcnow() - timedelta(seconds=1))

        assert queue.expire_stale() == 2

    def test_prune_respects_retention(self, queue, session_manager):
        queue.enqueue_unsubscribe('alice', [1, 2, 3])
        now = utcnow()
        set_job_fields(session_manager, 'unsub:alice:1', state=JOB_COMPLETED,
                       finished_at=now - timedelta(hours=2))
        set_job_fields(session_manager, 'unsub:alice:2', state=JOB_FAILED,
                       finished_at=now - timedelta(hours=2))
        set_job_fields(session_manager, 'unsub:alice:3', state=JOB_FAILED,
                       finished_at=now - timedelta(hours=25))

        assert queue.prune() == 2

        assert [job.id for job in queue.list_jobs()] == ['unsub:alice:2']


class TestInspection:

    def test_list_jobs_filters(self, queue):
        queue.enqueue_scan('alice')
        queue.enqueue_unsubscribe('alice', [1, 2])
        queue.claim(UNSUBSCRIBE_QUEUE)

        assert len(queue.list_jobs()) == 3
        assert len(queue.list_jobs(queue=UNSUBSCRIBE_QUEUE)) == 2
        assert len(queue.list_jobs(queue=UNSUBSCRIBE_QUEUE, state=JOB_IN_FLIGHT)) == 1
        assert queue.get_job('missing') is None
