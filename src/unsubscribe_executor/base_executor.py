"""
Base Unsubscribe Method

Common pieces shared by the HTTP one-click, mailto and HTTP GET methods:
- Method naming and applicability against a stored subscription
- Request defaults (User-Agent, timeout)
- Mapping of requests errors and non-2xx responses onto the error taxonomy

The executor walks the methods in priority order and runs the first one
that applies; attempt tracking lives in the executor, not here.
"""

from abc import ABC, abstractmethod

import requests

from src.database.models import Subscription
from src.exceptions import TransientIOFailure, UnsubscribeHttpError


class BaseUnsubscribeMethod(ABC):
    """
    Abstract base class for all unsubscribe methods.

    Subclasses decide whether they apply to a subscription and perform
    the action, raising on any failure.
    """

    def __init__(
        self,
        timeout: float = 30,
        user_agent: str = 'SubscriptionPipeline/1.0'
    ):
        """
        Initialize base method.

        Args:
            timeout: Request timeout in seconds
            user_agent: User-Agent header for HTTP requests
        """
        self.timeout = timeout
        self.user_agent = user_agent

    @property
    @abstractmethod
    def method_name(self) -> str:
        """Return the method name (HTTP_ONECLICK, MAILTO, HTTP)."""
        pass

    @abstractmethod
    def applies_to(self, subscription: Subscription) -> bool:
        """Whether the subscription carries what this method needs."""
        pass

    @abstractmethod
    def perform(self, subscription: Subscription) -> None:
        """
        Perform the unsubscribe action.

        Raises:
            PipelineError subclass on failure
        """
        pass

    def _headers(self):
        return {'User-Agent': self.user_agent}

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Issue an HTTP request, translating transport errors."""
        headers = self._headers()
        headers.update(kwargs.pop('headers', {}))
        try:
            return getattr(requests, method)(
                url,
                headers=headers,
                timeout=self.timeout,
                allow_redirects=True,
                **kwargs
            )
        except requests.exceptions.Timeout as e:
            raise TransientIOFailure(
                f'Request timed out after {self.timeout} seconds', {'url': url}
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise TransientIOFailure(f'Connection error: {e}', {'url': url}) from e
        except requests.exceptions.RequestException as e:
            raise TransientIOFailure(f'Request failed: {e}', {'url': url}) from e

    @staticmethod
    def _check_response(response: requests.Response, url: str, label: str):
        """Only 2xx counts as success."""
        if not 200 <= response.status_code < 300:
            raise UnsubscribeHttpError(
                f'{label} failed ({response.status_code})',
                status_code=response.status_code,
                url=url,
            )
