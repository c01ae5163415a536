"""
Mailto unsubscribe.

Builds a minimal plain-text message from the mailto target and sends it
through the user's own mailbox, so no SMTP credentials are involved.
"""

from email.mime.text import MIMEText
from typing import Callable, Dict, Optional
from urllib.parse import urlparse, parse_qs, unquote

from src.database.models import Subscription, METHOD_MAILTO
from src.email_processor.mailbox import MailboxClient
from src.exceptions import Unsupported
from .base_executor import BaseUnsubscribeMethod

DEFAULT_SUBJECT = 'unsubscribe'
DEFAULT_BODY = 'unsubscribe'


def parse_mailto(mailto_url: str) -> Dict[str, Optional[str]]:
    """
    Parse mailto URL to extract recipient, subject, and body.

    Args:
        mailto_url: mailto: URL string

    Returns:
        Dict with 'to', 'subject', and 'body' keys; blank values are None
    """
    parsed = urlparse(mailto_url.strip())
    to_addr = unquote(parsed.path).strip()

    query_params = {
        key.lower(): values for key, values in parse_qs(parsed.query).items()
    }
    subject = query_params.get('subject', [None])[0]
    body = query_params.get('body', [None])[0]

    return {
        'to': to_addr,
        'subject': subject or None,
        'body': body or None
    }


def compose_message(to_addr: str, subject: Optional[str] = None,
                    body: Optional[str] = None) -> MIMEText:
    """Compose the unsubscribe email, defaulting subject and body."""
    msg = MIMEText(body or DEFAULT_BODY, 'plain', 'utf-8')
    msg['To'] = to_addr
    msg['Subject'] = subject or DEFAULT_SUBJECT
    return msg


class MailtoMethod(BaseUnsubscribeMethod):
    """Execute unsubscribe requests by sending an email."""

    def __init__(
        self,
        mailbox_factory: Callable[[str], MailboxClient],
        timeout: float = 30,
        user_agent: str = 'SubscriptionPipeline/1.0'
    ):
        """
        Args:
            mailbox_factory: Returns the mailbox client for a user id
        """
        super().__init__(timeout, user_agent)
        self.mailbox_factory = mailbox_factory

    @property
    def method_name(self) -> str:
        return METHOD_MAILTO

    def applies_to(self, subscription: Subscription) -> bool:
        return bool(subscription.unsubscribe_mailto)

    def perform(self, subscription: Subscription) -> None:
        mailto_info = parse_mailto(subscription.unsubscribe_mailto)
        if not mailto_info['to']:
            raise Unsupported(
                'mailto target has no address',
                {'mailto': subscription.unsubscribe_mailto}
            )

        mailbox = self.mailbox_factory(subscription.user_id)
        msg = compose_message(
            to_addr=mailto_info['to'],
            subject=mailto_info['subject'],
            body=mailto_info['body']
        )
        mailbox.send_raw_message(msg.as_bytes())
