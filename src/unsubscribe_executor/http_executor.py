"""
HTTP GET unsubscribe, used when the sender did not advertise one-click.
"""

from src.database.models import Subscription, METHOD_HTTP
from .base_executor import BaseUnsubscribeMethod


class HttpGetMethod(BaseUnsubscribeMethod):
    """Execute unsubscribe requests via HTTP GET method."""

    @property
    def method_name(self) -> str:
        return METHOD_HTTP

    def applies_to(self, subscription: Subscription) -> bool:
        return bool(subscription.unsubscribe_http_url)

    def perform(self, subscription: Subscription) -> None:
        url = subscription.unsubscribe_http_url
        response = self._request('get', url)
        self._check_response(response, url, 'HTTP unsubscribe link')
