"""
RFC 8058 one-click unsubscribe.

Sends a form-encoded POST with body ``List-Unsubscribe=One-Click`` to the
URL declared in List-Unsubscribe, for senders that advertised one-click
support in List-Unsubscribe-Post.
"""

from src.database.models import Subscription, METHOD_HTTP_ONECLICK
from .base_executor import BaseUnsubscribeMethod

ONE_CLICK_BODY = 'List-Unsubscribe=One-Click'


class OneClickPostMethod(BaseUnsubscribeMethod):
    """Execute one-click unsubscribe via HTTP POST."""

    @property
    def method_name(self) -> str:
        return METHOD_HTTP_ONECLICK

    def applies_to(self, subscription: Subscription) -> bool:
        return bool(subscription.one_click_supported and subscription.unsubscribe_http_url)

    def perform(self, subscription: Subscription) -> None:
        url = subscription.unsubscribe_http_url
        response = self._request(
            'post',
            url,
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            data=ONE_CLICK_BODY,
        )
        self._check_response(response, url, 'HTTP unsubscribe')
