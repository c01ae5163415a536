"""
Email processing modules.
"""

from .scanner import MailboxScanner
from .mailbox import MailboxClient, GmailMailboxClient, GmailClientFactory, MessagePage, MessageHeaders

__all__ = [
    'MailboxScanner',
    'MailboxClient',
    'GmailMailboxClient',
    'GmailClientFactory',
    'MessagePage',
    'MessageHeaders',
]
