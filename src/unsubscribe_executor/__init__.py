"""
Unsubscribe execution: method strategies and the executor that drives them.
"""

from .base_executor import BaseUnsubscribeMethod
from .http_post_executor import OneClickPostMethod
from .http_executor import HttpGetMethod
from .email_reply_executor import MailtoMethod, parse_mailto, compose_message
from .executor import UnsubscribeExecutor

__all__ = [
    'BaseUnsubscribeMethod',
    'OneClickPostMethod',
    'HttpGetMethod',
    'MailtoMethod',
    'parse_mailto',
    'compose_message',
    'UnsubscribeExecutor',
]
