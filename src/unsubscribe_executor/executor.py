"""
Unsubscribe executor.

Picks the best available method for one subscription, records an
UnsubscribeAttempt around it and moves the subscription to UNSUBSCRIBED
or FAILED. Method priority is one-click POST, then mailto, then plain GET.
"""

from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from src.config import Config
from src.database.models import Subscription, SUBSCRIPTION_ACTIVE, SUBSCRIPTION_FAILED, \
    SUBSCRIPTION_UNSUBSCRIBED, utcnow
from src.database.store import SubscriptionStore
from src.email_processor.mailbox import MailboxClient
from src.exceptions import NotFound, Unsupported
from src.structured_logging import PipelineLogger
from .base_executor import BaseUnsubscribeMethod
from .email_reply_executor import MailtoMethod
from .http_executor import HttpGetMethod
from .http_post_executor import OneClickPostMethod


class UnsubscribeExecutor:
    """Runs a single unsubscribe for a stored subscription."""

    def __init__(
        self,
        session: Session,
        mailbox_factory: Callable[[str], MailboxClient],
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None
    ):
        self.session = session
        self.store = SubscriptionStore(session)
        self.timeout = timeout if timeout is not None else Config.request_timeout()
        self.user_agent = user_agent or Config.user_agent()
        self.methods: List[BaseUnsubscribeMethod] = [
            OneClickPostMethod(self.timeout, self.user_agent),
            MailtoMethod(mailbox_factory, self.timeout, self.user_agent),
            HttpGetMethod(self.timeout, self.user_agent),
        ]
        self.log = PipelineLogger("executor")

    def select_method(self, subscription: Subscription) -> BaseUnsubscribeMethod:
        """
        First method in priority order that applies.

        Raises:
            Unsupported: the subscription has no usable target
        """
        for method in self.methods:
            if method.applies_to(subscription):
                return method
        raise Unsupported('No unsubscribe method available',
                          {'subscription_id': subscription.id})

    def execute(self, user_id: str, subscription_id: int) -> Optional[str]:
        """
        Unsubscribe once.

        Returns:
            The method name used, or None when the subscription was not
            ACTIVE and nothing was done

        Raises:
            NotFound: no such subscription for this user
            PipelineError: the attempt failed; it is already recorded
        """
        subscription = self.store.get_subscription(user_id, subscription_id)
        if subscription is None:
            raise NotFound('Subscription not found',
                           {'user_id': user_id, 'subscription_id': subscription_id})

        if subscription.status != SUBSCRIPTION_ACTIVE:
            self.log.info("Subscription not active, skipping", {
                'subscription_id': subscription_id, 'status': subscription.status
            })
            return None

        attempt_id = self.store.create_attempt(user_id, subscription_id).id

        with self.log.scoped_context({'user_id': user_id,
                                      'subscription_id': subscription_id,
                                      'attempt_id': attempt_id}):
            try:
                method = self.select_method(subscription)
                with self.log.time_operation(f"unsubscribe_{method.method_name.lower()}"):
                    method.perform(subscription)
            except Exception as e:
                finished_at = utcnow()
                self.session.rollback()
                self.store.finish_attempt(attempt_id, False, finished_at, error=str(e))
                self.store.transition_subscription(subscription_id, SUBSCRIPTION_FAILED, finished_at)
                self.session.commit()
                self.log.log_exception(e)
                raise

            finished_at = utcnow()
            recorded = self.store.finish_attempt(attempt_id, True, finished_at, method=method.method_name)
            moved = self.store.transition_subscription(
                subscription_id, SUBSCRIPTION_UNSUBSCRIBED, finished_at
            )
            self.session.commit()
            if not recorded:
                self.log.warning("Attempt was closed out before it finished; success not recorded on it",
                                 {'method': method.method_name})
            if not moved:
                self.log.warning("Subscription changed status during the attempt")
            return method.method_name
