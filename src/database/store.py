"""
Repository over the subscription tables.

Subscription and EmailMessage writes are atomic upserts on their unique
keys (``INSERT ... ON CONFLICT``), so two scans of the same mailbox
running side by side still collapse to one row. Status transitions are
conditional updates guarded on the current status.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .models import (
    Subscription, EmailMessage, ScanRun, UnsubscribeAttempt, utcnow,
    SUBSCRIPTION_ACTIVE, SUBSCRIPTION_FAILED, RUN_RUNNING, RUN_SUCCEEDED, RUN_FAILED,
)

logger = logging.getLogger(__name__)


def _dialect_insert(session: Session):
    """Return the dialect-specific ``insert`` that supports ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == 'postgresql':
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == 'sqlite':
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert is not supported for dialect {dialect}")
    return insert


class SubscriptionStore:
    """CRUD and upsert operations keyed by stable identifiers."""

    def __init__(self, session: Session):
        self.session = session

    # --- subscriptions -------------------------------------------------

    def upsert_subscription(
        self,
        user_id: str,
        fingerprint: str,
        list_id: Optional[str],
        from_address: Optional[str],
        from_domain: Optional[str],
        display_name: Optional[str],
        unsubscribe_http_url: Optional[str],
        unsubscribe_mailto: Optional[str],
        one_click_supported: bool,
        seen_at: datetime
    ) -> int:
        """
        Create or refresh the subscription for (user_id, fingerprint).

        On create every field is set and message_count starts at 1. On
        update the latest observation overwrites the metadata and targets,
        and message_count is incremented. Status is never touched here.

        Returns:
            The subscription id
        """
        insert = _dialect_insert(self.session)
        table = Subscription.__table__
        now = utcnow()

        values = {
            'user_id': user_id,
            'fingerprint': fingerprint,
            'list_id': list_id,
            'from_address': from_address,
            'from_domain': from_domain,
            'display_name': display_name,
            'unsubscribe_http_url': unsubscribe_http_url,
            'unsubscribe_mailto': unsubscribe_mailto,
            'one_click_supported': one_click_supported,
            'status': SUBSCRIPTION_ACTIVE,
            'last_seen_at': seen_at,
            'message_count': 1,
            'created_at': now,
            'updated_at': now,
        }
        refreshed = {
            'list_id': list_id,
            'one_click_supported': one_click_supported,
            'last_seen_at': seen_at,
            'message_count': table.c.message_count + 1,
            'updated_at': now,
        }
        # Missing values in the latest observation keep what is stored
        optional = {
            'from_address': from_address,
            'from_domain': from_domain,
            'display_name': display_name,
            'unsubscribe_http_url': unsubscribe_http_url,
            'unsubscribe_mailto': unsubscribe_mailto,
        }
        refreshed.update({k: v for k, v in optional.items() if v is not None})

        stmt = insert(table).values(**values).on_conflict_do_update(
            index_elements=['user_id', 'fingerprint'],
            set_=refreshed,
        )
        self.session.execute(stmt)

        return self.session.execute(
            select(Subscription.id).where(
                Subscription.user_id == user_id,
                Subscription.fingerprint == fingerprint,
            )
        ).scalar_one()

    def get_subscription(self, user_id: str, subscription_id: int) -> Optional[Subscription]:
        return self.session.query(Subscription).filter_by(
            id=subscription_id, user_id=user_id
        ).first()

    def list_subscriptions(self, user_id: str, status: Optional[str] = None) -> List[Subscription]:
        query = self.session.query(Subscription).filter(Subscription.user_id == user_id)
        if status:
            query = query.filter(Subscription.status == status)
        return query.order_by(Subscription.last_seen_at.desc()).all()

    def transition_subscription(
        self,
        subscription_id: int,
        new_status: str,
        attempted_at: datetime,
        expected_status: str = SUBSCRIPTION_ACTIVE
    ) -> bool:
        """
        Move a subscription out of ``expected_status``.

        Returns:
            False when another writer already changed the status
        """
        result = self.session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.status == expected_status)
            .values(status=new_status, last_unsubscribe_attempt_at=attempted_at, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def reactivate_failed(self, user_id: str, subscription_ids: List[int]) -> int:
        """Re-arm FAILED subscriptions for a fresh unsubscribe request."""
        if not subscription_ids:
            return 0
        result = self.session.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.id.in_(subscription_ids),
                Subscription.status == SUBSCRIPTION_FAILED,
            )
            .values(status=SUBSCRIPTION_ACTIVE, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # --- messages ------------------------------------------------------

    def upsert_email_message(
        self,
        user_id: str,
        provider_message_id: str,
        subscription_id: Optional[int],
        from_raw: Optional[str],
        subject: Optional[str],
        internal_date_ms: Optional[int],
        received_at: Optional[datetime]
    ):
        """Create the message row, or only rebind its subscription link."""
        insert = _dialect_insert(self.session)
        stmt = insert(EmailMessage.__table__).values(
            user_id=user_id,
            provider_message_id=provider_message_id,
            subscription_id=subscription_id,
            from_raw=from_raw,
            subject=subject,
            internal_date_ms=internal_date_ms,
            received_at=received_at,
            created_at=utcnow(),
        ).on_conflict_do_update(
            index_elements=['user_id', 'provider_message_id'],
            set_={'subscription_id': subscription_id},
        )
        self.session.execute(stmt)

    def get_email_message(self, user_id: str, provider_message_id: str) -> Optional[EmailMessage]:
        return self.session.query(EmailMessage).filter_by(
            user_id=user_id, provider_message_id=provider_message_id
        ).first()

    # --- scan runs -----------------------------------------------------

    def create_scan_run(self, user_id: str, job_id: Optional[str] = None) -> ScanRun:
        scan_run = ScanRun(user_id=user_id, job_id=job_id, status=RUN_RUNNING, messages_scanned=0)
        self.session.add(scan_run)
        self.session.commit()
        return scan_run

    def finish_scan_run(self, scan_run_id: int, messages_scanned: int, error: Optional[str] = None) -> bool:
        """Finalize a RUNNING scan run exactly once."""
        result = self.session.execute(
            update(ScanRun)
            .where(ScanRun.id == scan_run_id, ScanRun.status == RUN_RUNNING)
            .values(
                status=RUN_FAILED if error else RUN_SUCCEEDED,
                messages_scanned=messages_scanned,
                error=error,
                finished_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def abandon_job_scan_runs(self, job_id: str, error: str) -> int:
        """Fail the RUNNING scan run owned by a job whose worker never finished."""
        result = self.session.execute(
            update(ScanRun)
            .where(ScanRun.job_id == job_id, ScanRun.status == RUN_RUNNING)
            .values(status=RUN_FAILED, error=error, finished_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount

    def list_scan_runs(self, user_id: str, limit: int = 20) -> List[ScanRun]:
        return self.session.query(ScanRun).filter(
            ScanRun.user_id == user_id
        ).order_by(ScanRun.id.desc()).limit(limit).all()

    # --- unsubscribe attempts ------------------------------------------

    def create_attempt(self, user_id: str, subscription_id: int) -> UnsubscribeAttempt:
        attempt = UnsubscribeAttempt(
            user_id=user_id,
            subscription_id=subscription_id,
            status=RUN_RUNNING,
        )
        self.session.add(attempt)
        self.session.commit()
        return attempt

    def finish_attempt(
        self,
        attempt_id: int,
        succeeded: bool,
        finished_at: datetime,
        method: Optional[str] = None,
        error: Optional[str] = None
    ) -> bool:
        """Finalize a RUNNING attempt. The caller commits."""
        result = self.session.execute(
            update(UnsubscribeAttempt)
            .where(UnsubscribeAttempt.id == attempt_id, UnsubscribeAttempt.status == RUN_RUNNING)
            .values(
                status=RUN_SUCCEEDED if succeeded else RUN_FAILED,
                method=method,
                error=error,
                finished_at=finished_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def abandon_running_attempts(self, user_id: str, subscription_id: int, error: str) -> int:
        """Fail attempts orphaned by a worker that never finished."""
        result = self.session.execute(
            update(UnsubscribeAttempt)
            .where(
                UnsubscribeAttempt.user_id == user_id,
                UnsubscribeAttempt.subscription_id == subscription_id,
                UnsubscribeAttempt.status == RUN_RUNNING,
            )
            .values(status=RUN_FAILED, error=error, finished_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount

    def list_attempts(self, subscription_id: int) -> List[UnsubscribeAttempt]:
        return self.session.query(UnsubscribeAttempt).filter(
            UnsubscribeAttempt.subscription_id == subscription_id
        ).order_by(UnsubscribeAttempt.id).all()
