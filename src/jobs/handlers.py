"""
Job handlers for the scan and unsubscribe queues.

Each handler opens its own session per job and is also the queue's
expiry hook, closing out rows left RUNNING by an attempt that timed out.
"""

from typing import Any, Callable, Dict, Optional

from src.cli_session import SessionManager
from src.config import Config
from src.database.store import SubscriptionStore
from src.email_processor.mailbox import MailboxClient
from src.email_processor.scanner import MailboxScanner
from src.unsubscribe_executor import UnsubscribeExecutor

MailboxFactory = Callable[[str], MailboxClient]


class ScanJobHandler:
    """Runs MailboxScanner.scan for a ``{'user_id', 'job_id'}`` payload."""

    def __init__(
        self,
        session_manager: SessionManager,
        mailbox_factory: MailboxFactory,
        max_messages: Optional[int] = None,
        query: Optional[str] = None,
        page_size: Optional[int] = None
    ):
        self.session_manager = session_manager
        self.mailbox_factory = mailbox_factory
        self.max_messages = max_messages or Config.scan_max_messages()
        self.query = query or Config.scan_query()
        self.page_size = page_size or Config.scan_page_size()

    def __call__(self, payload: Dict[str, Any]) -> Dict[str, int]:
        with self.session_manager.get_session() as session:
            scanner = MailboxScanner(
                session, query=self.query, page_size=self.page_size,
                mailbox_factory=self.mailbox_factory,
            )
            return scanner.scan(payload['user_id'], max_messages=self.max_messages,
                                job_id=payload.get('job_id'))

    def on_expired(self, payload: Dict[str, Any], error: str):
        job_id = payload.get('job_id')
        if not job_id:
            return
        with self.session_manager.get_session() as session:
            SubscriptionStore(session).abandon_job_scan_runs(job_id, error)


class UnsubscribeJobHandler:
    """Runs UnsubscribeExecutor.execute for a ``{'user_id', 'subscription_id'}`` payload."""

    def __init__(
        self,
        session_manager: SessionManager,
        mailbox_factory: MailboxFactory,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None
    ):
        self.session_manager = session_manager
        self.mailbox_factory = mailbox_factory
        self.timeout = timeout
        self.user_agent = user_agent

    def __call__(self, payload: Dict[str, Any]) -> Optional[str]:
        with self.session_manager.get_session() as session:
            executor = UnsubscribeExecutor(
                session, self.mailbox_factory, timeout=self.timeout, user_agent=self.user_agent
            )
            return executor.execute(payload['user_id'], payload['subscription_id'])

    def on_expired(self, payload: Dict[str, Any], error: str):
        with self.session_manager.get_session() as session:
            SubscriptionStore(session).abandon_running_attempts(
                payload['user_id'], payload['subscription_id'], error
            )
