"""
Mailbox scanner that turns list headers into Subscription rows.
"""

import logging
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..database.models import utcnow
from ..database.store import SubscriptionStore
from ..exceptions import ScanFailure
from ..structured_logging import PipelineLogger
from .fingerprint import compute_fingerprint, is_fallback_fingerprint
from .header_parser import (
    SCAN_HEADERS, parse_from, parse_list_unsubscribe, parse_one_click, normalize_list_id
)
from .mailbox import MailboxClient

logger = logging.getLogger(__name__)

DEFAULT_QUERY = 'in:anywhere newer_than:30d'
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_MESSAGES = 300


def parse_header_date(value: Optional[str]):
    """Date header as naive UTC, or None when missing or unparseable."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class MailboxScanner:
    """Scans a user's mailbox and upserts subscriptions and messages."""

    def __init__(self, session: Session, mailbox: Optional[MailboxClient] = None,
                 query: str = DEFAULT_QUERY, page_size: int = DEFAULT_PAGE_SIZE,
                 mailbox_factory: Optional[Callable[[str], MailboxClient]] = None):
        if mailbox is None and mailbox_factory is None:
            raise ValueError("MailboxScanner needs a mailbox or a mailbox_factory")
        self.session = session
        self.mailbox = mailbox
        self.mailbox_factory = mailbox_factory
        self.store = SubscriptionStore(session)
        self.query = query
        self.page_size = page_size
        self.messages_scanned = 0
        self.log = PipelineLogger("scanner")

    def scan(self, user_id: str, max_messages: int = DEFAULT_MAX_MESSAGES,
             job_id: Optional[str] = None) -> Dict[str, int]:
        """
        Scan recent mail for list headers.

        Args:
            user_id: Owner of the mailbox
            max_messages: Upper bound on messages processed in this run
            job_id: Queue job that owns the run, if any

        Returns:
            Dict with 'messages_scanned'

        Raises:
            ScanFailure: building the mailbox client, listing, or processing
                a message failed; the scan run is recorded as FAILED with
                the partial count first
        """
        scan_run_id = self.store.create_scan_run(user_id, job_id=job_id).id
        self.messages_scanned = 0

        with self.log.scoped_context({'user_id': user_id, 'scan_run_id': scan_run_id}):
            try:
                if self.mailbox is None:
                    # May refresh OAuth tokens
                    self.mailbox = self.mailbox_factory(user_id)
                self._scan_pages(user_id, max_messages)
            except Exception as e:
                processed = self.messages_scanned
                self.session.rollback()
                self.store.finish_scan_run(scan_run_id, processed, error=str(e) or type(e).__name__)
                self.log.log_exception(e, {'messages_scanned': processed})
                raise ScanFailure(
                    f"Scan failed after {processed} messages: {e}",
                    messages_scanned=processed,
                    cause=e,
                    context={'user_id': user_id, 'scan_run_id': scan_run_id},
                ) from e

            processed = self.messages_scanned
            self.store.finish_scan_run(scan_run_id, processed)
            self.log.info("Scan completed", {'messages_scanned': processed})

        return {'messages_scanned': processed}

    def _scan_pages(self, user_id: str, max_messages: int):
        """Walk the query pages until the budget or the results run out."""
        page_token = None

        while self.messages_scanned < max_messages:
            page = self.mailbox.list_message_ids(
                self.query,
                page_token=page_token,
                max_results=min(self.page_size, max_messages - self.messages_scanned),
            )
            if not page.ids:
                break

            for message_id in page.ids:
                if self.messages_scanned >= max_messages:
                    break
                if not message_id:
                    continue
                self._process_message(user_id, message_id)
                self.messages_scanned += 1

            page_token = page.next_page_token
            if not page_token:
                break

    def _process_message(self, user_id: str, message_id: str):
        """Parse one message's headers and write its rows."""
        meta = self.mailbox.get_message_headers(message_id, SCAN_HEADERS)

        from_header = meta.get('From')
        subject = meta.get('Subject') or ''
        list_id = normalize_list_id(meta.get('List-ID'))
        targets = parse_list_unsubscribe(meta.get('List-Unsubscribe'))
        one_click = parse_one_click(meta.get('List-Unsubscribe-Post'))
        sender = parse_from(from_header)
        seen_at = parse_header_date(meta.get('Date')) or utcnow()

        subscription_id = None
        if targets.has_target() or list_id:
            fingerprint = compute_fingerprint(list_id, sender.email, sender.domain)
            if is_fallback_fingerprint(fingerprint):
                logger.warning(f"Message {message_id} has no stable sender identity; "
                               f"stored under {fingerprint}")

            subscription_id = self.store.upsert_subscription(
                user_id=user_id,
                fingerprint=fingerprint,
                list_id=list_id,
                from_address=sender.email,
                from_domain=sender.domain,
                display_name=sender.name or sender.domain or sender.email,
                unsubscribe_http_url=targets.http_url,
                unsubscribe_mailto=targets.mailto,
                one_click_supported=one_click,
                seen_at=seen_at,
            )
            logger.debug(f"Message {message_id} matched subscription {subscription_id} ({fingerprint})")

        self.store.upsert_email_message(
            user_id=user_id,
            provider_message_id=message_id,
            subscription_id=subscription_id,
            from_raw=from_header,
            subject=subject,
            internal_date_ms=meta.internal_timestamp,
            received_at=seen_at,
        )
        self.session.commit()
