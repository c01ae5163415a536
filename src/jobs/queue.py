"""
Durable job queue backed by the ``jobs`` table.

Jobs move queued -> in_flight -> completed | queued (retry) | failed.
Every transition is a conditional UPDATE on the current state (and, for
in-flight jobs, the lease token) so several worker processes can share
one database without double-claiming or double-finishing a job.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from src.cli_session import SessionManager
from src.config import Config
from src.database.models import Job, JOB_QUEUED, JOB_IN_FLIGHT, JOB_COMPLETED, JOB_FAILED, utcnow
from src.database.store import SubscriptionStore
from src.exceptions import is_retryable
from src.structured_logging import PipelineLogger

logger = logging.getLogger(__name__)

SCAN_QUEUE = 'scan'
UNSUBSCRIBE_QUEUE = 'unsubscribe'

ExpiryHook = Callable[[Dict[str, Any], str], None]


@dataclass(frozen=True)
class QueueSettings:
    """Retry and timeout policy for one queue."""

    max_attempts: int
    backoff_seconds: int
    timeout_seconds: int

    def retry_delay(self, attempts_made: int) -> timedelta:
        """Exponential backoff: base, 2 * base, 4 * base, ..."""
        return timedelta(seconds=self.backoff_seconds * 2 ** max(attempts_made - 1, 0))


def default_queue_settings() -> Dict[str, QueueSettings]:
    return {
        SCAN_QUEUE: QueueSettings(
            max_attempts=1,
            backoff_seconds=0,
            timeout_seconds=Config.scan_job_timeout(),
        ),
        UNSUBSCRIBE_QUEUE: QueueSettings(
            max_attempts=Config.unsubscribe_max_attempts(),
            backoff_seconds=Config.unsubscribe_backoff_seconds(),
            timeout_seconds=Config.unsubscribe_job_timeout(),
        ),
    }


@dataclass(frozen=True)
class ClaimedJob:
    """A job leased to one worker."""

    id: str
    queue: str
    payload: Dict[str, Any]
    lease_token: str
    attempts_made: int


def unsubscribe_job_id(user_id: str, subscription_id: int) -> str:
    return f"unsub:{user_id}:{subscription_id}"


class JobQueue:
    """Enqueue, claim and finish jobs for the scan and unsubscribe queues."""

    CLAIM_BATCH = 5

    def __init__(
        self,
        session_manager: SessionManager,
        settings: Optional[Dict[str, QueueSettings]] = None,
        completed_retention: Optional[int] = None,
        failed_retention: Optional[int] = None
    ):
        self.session_manager = session_manager
        self.settings = settings or default_queue_settings()
        self.completed_retention = (completed_retention if completed_retention is not None
                                    else Config.completed_job_retention())
        self.failed_retention = (failed_retention if failed_retention is not None
                                 else Config.failed_job_retention())
        self.expiry_hooks: Dict[str, ExpiryHook] = {}
        self.log = PipelineLogger("queue")

    def register_expiry_hook(self, queue: str, hook: ExpiryHook):
        """Hook called with (payload, error) after a lease on ``queue`` expires."""
        self.expiry_hooks[queue] = hook

    # --- enqueue -------------------------------------------------------

    def enqueue_scan(self, user_id: str) -> str:
        """Queue a scan of the user's mailbox; returns the job id."""
        job_id = f"scan:{uuid.uuid4()}"
        # The scan run records job_id so an expired lease fails only its own run
        self._add(SCAN_QUEUE, job_id, {'user_id': user_id, 'job_id': job_id})
        self.log.info("Scan job queued", {'job_id': job_id, 'user_id': user_id})
        return job_id

    def enqueue_unsubscribe(self, user_id: str, subscription_ids: List[int]) -> int:
        """
        Queue one unsubscribe job per subscription.

        Ids whose job is still queued or in flight collapse into that job.
        FAILED subscriptions are re-armed to ACTIVE so the new request can
        retry them.

        Returns:
            Number of ids submitted
        """
        with self.session_manager.get_session() as session:
            rearmed = SubscriptionStore(session).reactivate_failed(user_id, list(subscription_ids))
            session.commit()
        if rearmed:
            self.log.info("Re-armed failed subscriptions", {'user_id': user_id, 'count': rearmed})

        added = 0
        for subscription_id in dict.fromkeys(subscription_ids):
            payload = {'user_id': user_id, 'subscription_id': subscription_id}
            if self._add(UNSUBSCRIBE_QUEUE, unsubscribe_job_id(user_id, subscription_id), payload):
                added += 1

        self.log.info("Unsubscribe jobs queued", {
            'user_id': user_id, 'submitted': len(subscription_ids), 'new_or_rearmed': added
        })
        return len(subscription_ids)

    def _add(self, queue: str, job_id: str, payload: Dict[str, Any]) -> bool:
        """Insert or re-arm a job. False when it collapsed into a live job."""
        policy = self.settings[queue]
        now = utcnow()

        with self.session_manager.get_session() as session:
            existing = session.get(Job, job_id)

            if existing is None:
                session.add(Job(
                    id=job_id,
                    queue=queue,
                    payload=json.dumps(payload),
                    state=JOB_QUEUED,
                    attempts_made=0,
                    max_attempts=policy.max_attempts,
                    backoff_seconds=policy.backoff_seconds,
                    timeout_seconds=policy.timeout_seconds,
                    next_eligible_at=now,
                    created_at=now,
                    updated_at=now,
                ))
                try:
                    session.commit()
                except IntegrityError:
                    # Someone else inserted the same id first
                    session.rollback()
                    return False
                return True

            if existing.state in (JOB_QUEUED, JOB_IN_FLIGHT):
                logger.debug(f"Job {job_id} already {existing.state}; collapsing")
                return False

            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == existing.state)
                .values(
                    state=JOB_QUEUED,
                    payload=json.dumps(payload),
                    attempts_made=0,
                    max_attempts=policy.max_attempts,
                    backoff_seconds=policy.backoff_seconds,
                    timeout_seconds=policy.timeout_seconds,
                    next_eligible_at=now,
                    lease_token=None,
                    deadline_at=None,
                    last_error=None,
                    finished_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    # --- claim and finish ----------------------------------------------

    def claim(self, queue: str) -> Optional[ClaimedJob]:
        """Lease the oldest eligible job on ``queue``, or None."""
        now = utcnow()

        with self.session_manager.get_session() as session:
            candidates = session.execute(
                select(Job.id, Job.timeout_seconds, Job.payload, Job.attempts_made)
                .where(Job.queue == queue, Job.state == JOB_QUEUED, Job.next_eligible_at <= now)
                .order_by(Job.next_eligible_at, Job.created_at)
                .limit(self.CLAIM_BATCH)
            ).all()

            for job_id, timeout_seconds, payload, attempts_made in candidates:
                token = uuid.uuid4().hex
                result = session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.state == JOB_QUEUED)
                    .values(
                        state=JOB_IN_FLIGHT,
                        lease_token=token,
                        deadline_at=now + timedelta(seconds=timeout_seconds),
                        attempts_made=Job.attempts_made + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount == 1:
                    return ClaimedJob(
                        id=job_id,
                        queue=queue,
                        payload=json.loads(payload),
                        lease_token=token,
                        attempts_made=attempts_made + 1,
                    )

        return None

    def complete(self, job: ClaimedJob) -> bool:
        """Mark a leased job completed. False when the lease was lost."""
        now = utcnow()
        with self.session_manager.get_session() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job.id, Job.state == JOB_IN_FLIGHT, Job.lease_token == job.lease_token)
                .values(state=JOB_COMPLETED, lease_token=None, deadline_at=None,
                        finished_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()

        if result.rowcount != 1:
            self.log.warning("Ignoring completion for a lost lease", {'job_id': job.id})
            return False
        return True

    def fail(self, job: ClaimedJob, error: BaseException) -> Optional[str]:
        """
        Record a failed attempt.

        Returns:
            The job's new state (queued for a retry, or failed), or None
            when the lease was lost and the result was ignored
        """
        message = str(error) or type(error).__name__
        with self.session_manager.get_session() as session:
            row = session.get(Job, job.id)
            if row is None or row.state != JOB_IN_FLIGHT or row.lease_token != job.lease_token:
                self.log.warning("Ignoring failure for a lost lease", {'job_id': job.id})
                return None

            values = self._failure_values(row, message, is_retryable(error))
            result = session.execute(
                update(Job)
                .where(Job.id == job.id, Job.state == JOB_IN_FLIGHT, Job.lease_token == job.lease_token)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()

        if result.rowcount != 1:
            self.log.warning("Ignoring failure for a lost lease", {'job_id': job.id})
            return None

        self.log.info("Job attempt failed", {
            'job_id': job.id, 'attempt': job.attempts_made,
            'next_state': values['state'], 'error': message,
        })
        return values['state']

    def _failure_values(self, row: Job, message: str, retryable: bool) -> Dict[str, Any]:
        now = utcnow()
        values = {
            'lease_token': None,
            'deadline_at': None,
            'last_error': message,
            'updated_at': now,
        }
        if retryable and row.attempts_made < row.max_attempts:
            policy = QueueSettings(row.max_attempts, row.backoff_seconds, row.timeout_seconds)
            values.update(state=JOB_QUEUED,
                          next_eligible_at=now + policy.retry_delay(row.attempts_made))
        else:
            values.update(state=JOB_FAILED, finished_at=now)
        return values

    # --- maintenance ---------------------------------------------------

    def expire_stale(self) -> int:
        """
        Treat in-flight jobs past their deadline as failed attempts.

        The queue's expiry hook runs for every expired lease so that
        orphaned RUNNING rows can be closed out.
        """
        now = utcnow()
        expired = []

        with self.session_manager.get_session() as session:
            rows = session.execute(
                select(Job).where(Job.state == JOB_IN_FLIGHT, Job.deadline_at < now)
            ).scalars().all()

            for row in rows:
                message = f"Job timed out after {row.timeout_seconds} seconds"
                values = self._failure_values(row, message, retryable=True)
                result = session.execute(
                    update(Job)
                    .where(Job.id == row.id, Job.state == JOB_IN_FLIGHT,
                           Job.lease_token == row.lease_token)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount == 1:
                    expired.append((row.queue, row.id, json.loads(row.payload), message))

        for queue, job_id, payload, message in expired:
            self.log.warning("Job lease expired", {'job_id': job_id, 'queue': queue})
            hook = self.expiry_hooks.get(queue)
            if hook is None:
                continue
            try:
                hook(payload, message)
            except Exception as e:
                self.log.log_exception(e, {'job_id': job_id, 'hook': queue})

        return len(expired)

    def prune(self) -> int:
        """Delete finished jobs older than their retention window."""
        now = utcnow()
        with self.session_manager.get_session() as session:
            completed = session.execute(
                delete(Job).where(
                    Job.state == JOB_COMPLETED,
                    Job.finished_at < now - timedelta(seconds=self.completed_retention),
                ).execution_options(synchronize_session=False)
            ).rowcount
            failed = session.execute(
                delete(Job).where(
                    Job.state == JOB_FAILED,
                    Job.finished_at < now - timedelta(seconds=self.failed_retention),
                ).execution_options(synchronize_session=False)
            ).rowcount
            session.commit()

        if completed or failed:
            logger.info(f"Pruned {completed} completed and {failed} failed jobs")
        return completed + failed

    # --- inspection ----------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.session_manager.get_session() as session:
            job = session.get(Job, job_id)
            if job is not None:
                session.expunge(job)
            return job

    def list_jobs(self, queue: Optional[str] = None, state: Optional[str] = None,
                  limit: int = 50) -> List[Job]:
        with self.session_manager.get_session() as session:
            query = select(Job)
            if queue:
                query = query.where(Job.queue == queue)
            if state:
                query = query.where(Job.state == state)
            jobs = session.execute(
                query.order_by(Job.created_at.desc()).limit(limit)
            ).scalars().all()
            session.expunge_all()
            return list(jobs)
