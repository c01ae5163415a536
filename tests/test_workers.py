"""
Tests for job handlers, WorkerPool and WorkerRuntime.
"""

import time
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import update

from src.cli_session import SessionManager
from src.database import DatabaseManager, SubscriptionStore
from src.database.models import (
    Job, Subscription, JOB_COMPLETED, JOB_FAILED, JOB_QUEUED,
    SUBSCRIPTION_UNSUBSCRIBED, RUN_FAILED, RUN_RUNNING, RUN_SUCCEEDED, utcnow,
)
from src.exceptions import CredentialError, TransientIOFailure
from src.jobs import (
    JobQueue, QueueSettings, ScanJobHandler, UnsubscribeJobHandler, WorkerPool, WorkerRuntime,
    SCAN_QUEUE, UNSUBSCRIBE_QUEUE,
)
from fake_mailbox_client import FakeMailboxClient

PROMO_HEADERS = {
    'From': '"Promo Team" <deals@example.com>',
    'List-ID': '<promo.example.com>',
    'List-Unsubscribe': '<https://example.com/u/123>',
    'List-Unsubscribe-Post': 'List-Unsubscribe=One-Click',
}

SETTINGS = {
    SCAN_QUEUE: QueueSettings(max_attempts=1, backoff_seconds=0, timeout_seconds=300),
    UNSUBSCRIBE_QUEUE: QueueSettings(max_attempts=3, backoff_seconds=2, timeout_seconds=60),
}


@pytest.fixture
def session_manager():
    db_manager = DatabaseManager("sqlite:///:memory:")
    db_manager.initialize_database()
    yield SessionManager(db_manager)
    db_manager.dispose()


@pytest.fixture
def queue(session_manager):
    return JobQueue(session_manager, settings=SETTINGS, completed_retention=3600, failed_retention=86400)


@pytest.fixture
def mailbox():
    mailbox = FakeMailboxClient()
    mailbox.add_message('m1', PROMO_HEADERS)
    return mailbox


def only_subscription(session_manager):
    with session_manager.get_session() as session:
        sub = session.query(Subscription).one()
        return sub.id, sub.status


class TestWorkerPool:

    def test_run_once_with_nothing_queued(self, queue):
        pool = WorkerPool(queue, UNSUBSCRIBE_QUEUE, Mock())

        assert pool.run_once() is False

    def test_successful_handler_completes_job(self, queue):
        handler = Mock(return_value=None)
        queue.enqueue_unsubscribe('alice', [1])
        pool = WorkerPool(queue, UNSUBSCRIBE_QUEUE, handler)

        assert pool.run_once() is True

        handler.assert_called_once_with({'user_id': 'alice', 'subscription_id': 1})
        assert queue.get_job('unsub:alice:1').state == JOB_COMPLETED

    def test_failing_handler_schedules_retry(self, queue):
        handler = Mock(side_effect=TransientIOFailure('Connection error'))
        queue.enqueue_unsubscribe('alice', [1])
        pool = WorkerPool(queue, UNSUBSCRIBE_QUEUE, handler)

        pool.run_once()

        job = queue.get_job('unsub:alice:1')
        assert job.state == JOB_QUEUED
        assert job.attempts_made == 1
        assert job.last_error == 'Connection error'


class TestHandlers:

    def test_scan_then_unsubscribe(self, session_manager, queue, mailbox):
        """A scan job detects the list and an unsubscribe job removes it."""
        scan_pool = WorkerPool(queue, SCAN_QUEUE, ScanJobHandler(
            session_manager, lambda user_id: mailbox, max_messages=10, query='in:anywhere', page_size=10
        ))
        unsubscribe_pool = WorkerPool(queue, UNSUBSCRIBE_QUEUE, UnsubscribeJobHandler(
            session_manager, lambda user_id: mailbox, timeout=5, user_agent='TestAgent/1.0'
        ))

        scan_job = queue.enqueue_scan('alice')
        assert scan_pool.run_once()
        assert queue.get_job(scan_job).state == JOB_COMPLETED

        subscription_id, _ = only_subscription(session_manager)
        queue.enqueue_unsubscribe('alice', [subscription_id])
        with patch('requests.post') as mock_post:
            mock_post.return_value = Mock(status_code=200)
            assert unsubscribe_pool.run_once()

        assert only_subscription(session_manager) == (subscription_id, SUBSCRIPTION_UNSUBSCRIBED)
        assert queue.get_job(f'unsub:alice:{subscription_id}').state == JOB_COMPLETED

    def test_unknown_subscription_fails_job_terminally(self, session_manager, queue, mailbox):
        pool = WorkerPool(queue, UNSUBSCRIBE_QUEUE, UnsubscribeJobHandler(
            session_manager, lambda user_id: mailbox, timeout=5, user_agent='TestAgent/1.0'
        ))
        queue.enqueue_unsubscribe('alice', [404])

        pool.run_once()

        job = queue.get_job('unsub:alice:404')
        assert job.state == JOB_FAILED
        assert 'Subscription not found' in job.last_error

    def test_scan_failure_fails_job(self, session_manager, queue, mailbox):
        mailbox.fail_on['m1'] = TransientIOFailure('Gmail messages.get failed')
        pool = WorkerPool(queue, SCAN_QUEUE, ScanJobHandler(
            session_manager, lambda user_id: mailbox, max_messages=10, query='in:anywhere', page_size=10
        ))
        job_id = queue.enqueue_scan('alice')

        pool.run_once()

        assert queue.get_job(job_id).state == JOB_FAILED
        with session_manager.get_session() as session:
            run = SubscriptionStore(session).list_scan_runs('alice')[0]
            assert run.status == RUN_FAILED

    def test_expiry_hooks_close_orphaned_rows(self, session_manager, mailbox):
        with session_manager.get_session() as session:
            store = SubscriptionStore(session)
            store.create_scan_run('alice', job_id='scan:1')
            subscription_id = store.upsert_subscription(
                user_id='alice', fingerprint='listid:promo.example.com', list_id='promo.example.com',
                from_address=None, from_domain=None, display_name='promo',
                unsubscribe_http_url='https://example.com/u', unsubscribe_mailto=None,
                one_click_supported=True, seen_at=utcnow(),
            )
            session.commit()
            store.create_attempt('alice', subscription_id)

        ScanJobHandler(session_manager, lambda user_id: mailbox).on_expired(
            {'user_id': 'alice', 'job_id': 'scan:1'}, 'Job timed out after 300 seconds')
        UnsubscribeJobHandler(session_manager, lambda user_id: mailbox).on_expired(
            {'user_id': 'alice', 'subscription_id': subscription_id}, 'Job timed out after 60 seconds')

        with session_manager.get_session() as session:
            store = SubscriptionStore(session)
            run = store.list_scan_runs('alice')[0]
            attempt = store.list_attempts(subscription_id)[0]
            assert run.status == RUN_FAILED
            assert run.error == 'Job timed out after 300 seconds'
            assert attempt.status == RUN_FAILED

    def test_scan_expiry_leaves_concurrent_scan_alone(self, session_manager, mailbox):
        """Two scans of one user: expiring one must not fail the other."""
        with session_manager.get_session() as session:
            store = SubscriptionStore(session)
            expired_run = store.create_scan_run('alice', job_id='scan:expired').id
            live_run = store.create_scan_run('alice', job_id='scan:live').id

        ScanJobHandler(session_manager, lambda user_id: mailbox).on_expired(
            {'user_id': 'alice', 'job_id': 'scan:expired'}, 'Job timed out after 300 seconds')

        with session_manager.get_session() as session:
            store = SubscriptionStore(session)
            assert store.finish_scan_run(live_run, 7)
            runs = {run.id: run for run in store.list_scan_runs('alice')}
            assert runs[expired_run].status == RUN_FAILED
            assert runs[live_run].status == RUN_SUCCEEDED
            assert runs[live_run].messages_scanned == 7

    def test_expiry_without_job_id_touches_nothing(self, session_manager, mailbox):
        with session_manager.get_session() as session:
            SubscriptionStore(session).create_scan_run('alice')

        ScanJobHandler(session_manager, lambda user_id: mailbox).on_expired(
            {'user_id': 'alice'}, 'Job timed out after 300 seconds')

        with session_manager.get_session() as session:
            assert SubscriptionStore(session).list_scan_runs('alice')[0].status == RUN_RUNNING

    def test_credential_failure_is_recorded_on_scan_run(self, session_manager, queue):
        def rejected_tokens(user_id):
            raise CredentialError('Google token refresh was rejected', {'user_id': user_id})

        pool = WorkerPool(queue, SCAN_QUEUE, ScanJobHandler(
            session_manager, rejected_tokens, max_messages=10, query='in:anywhere', page_size=10
        ))
        job_id = queue.enqueue_scan('alice')

        pool.run_once()

        job = queue.get_job(job_id)
        assert job.state == JOB_FAILED
        assert 'token refresh was rejected' in job.last_error
        with session_manager.get_session() as session:
            runs = SubscriptionStore(session).list_scan_runs('alice')
            assert len(runs) == 1
            assert runs[0].job_id == job_id
            assert runs[0].status == RUN_FAILED
            assert runs[0].messages_scanned == 0
            assert 'token refresh was rejected' in runs[0].error


class TestWorkerRuntime:

    @pytest.fixture
    def file_session_manager(self, tmp_path):
        db_manager = DatabaseManager(f"sqlite:///{tmp_path / 'jobs.db'}")
        db_manager.initialize_database()
        yield SessionManager(db_manager)
        db_manager.dispose()

    def wait_for_state(self, queue, job_id, state, timeout=10.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            job = queue.get_job(job_id)
            if job is not None and job.state == state:
                return job
            time.sleep(0.05)
        pytest.fail(f"Job {job_id} never reached {state}")

    def test_runtime_processes_jobs_in_background(self, monkeypatch, file_session_manager, mailbox):
        monkeypatch.setenv('WORKER_POLL_INTERVAL', '0.05')
        monkeypatch.setenv('SCAN_CONCURRENCY', '1')
        monkeypatch.setenv('UNSUBSCRIBE_CONCURRENCY', '2')

        runtime = WorkerRuntime.build(file_session_manager, lambda user_id: mailbox)
        assert [pool.concurrency for pool in runtime.pools] == [1, 2]

        runtime.start()
        try:
            job_id = runtime.queue.enqueue_scan('alice')
            self.wait_for_state(runtime.queue, job_id, JOB_COMPLETED)

            subscription_id, _ = only_subscription(file_session_manager)
            with patch('requests.post') as mock_post:
                mock_post.return_value = Mock(status_code=200)
                runtime.queue.enqueue_unsubscribe('alice', [subscription_id])
                self.wait_for_state(runtime.queue, f'unsub:alice:{subscription_id}', JOB_COMPLETED)
        finally:
            runtime.stop(timeout=5)

        assert only_subscription(file_session_manager)[1] == SUBSCRIPTION_UNSUBSCRIBED

    def test_maintenance_expires_stale_jobs(self, session_manager, mailbox):
        runtime = WorkerRuntime.build(
            session_manager, lambda user_id: mailbox,
            queue=JobQueue(session_manager, settings=SETTINGS),
        )
        runtime.queue.enqueue_unsubscribe('alice', [1])
        claimed = runtime.queue.claim(UNSUBSCRIBE_QUEUE)
        with session_manager.get_session() as session:
            session.execute(update(Job).where(Job.id == claimed.id)
                            .values(deadline_at=utcnow() - timedelta(seconds=1)))
            session.commit()

        runtime.run_maintenance()

        assert runtime.queue.get_job(claimed.id).state == JOB_QUEUED
