"""
Mailbox access used by the scanner and the mailto unsubscribe method.

``MailboxClient`` is the boundary the pipeline depends on. The Gmail
implementation wraps google-api-python-client, retries rate limits and
transient server errors, and reports rotated OAuth tokens to an
explicit observer instead of persisting them itself.
"""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..exceptions import CredentialError, NotFound, TransientIOFailure
from .header_parser import header_lookup

logger = logging.getLogger(__name__)

GMAIL_SCOPES = [
    'https://www.googleapis.com/auth/gmail.readonly',
    'https://www.googleapis.com/auth/gmail.send',
]
TOKEN_URI = 'https://oauth2.googleapis.com/token'
RETRYABLE_STATUSES = (429, 500, 503)
AUTH_STATUSES = (401, 403)

TokenObserver = Callable[[str, Credentials], None]


@dataclass(frozen=True)
class MessagePage:
    """One page of message ids from a mailbox query."""

    ids: List[str] = field(default_factory=list)
    next_page_token: Optional[str] = None


@dataclass(frozen=True)
class MessageHeaders:
    """Metadata-only projection of a message."""

    message_id: str
    headers: Dict[str, str] = field(default_factory=dict)
    internal_timestamp: Optional[int] = None  # milliseconds since epoch

    def get(self, name: str) -> Optional[str]:
        return header_lookup(self.headers, name)


class MailboxClient(ABC):
    """Interface to the user's mailbox."""

    @abstractmethod
    def list_message_ids(self, query: str, page_token: Optional[str] = None,
                         max_results: int = 100) -> MessagePage:
        """List message ids matching ``query``, one page at a time."""

    @abstractmethod
    def get_message_headers(self, message_id: str, header_names: List[str]) -> MessageHeaders:
        """Fetch only the named headers of a message."""

    @abstractmethod
    def send_raw_message(self, raw_mime: bytes) -> None:
        """Send an RFC 5322 message from the user's account."""


def _is_retryable_http_error(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in RETRYABLE_STATUSES


def _is_rate_limited(exc: HttpError) -> bool:
    """Gmail reports per-user rate limits as 403 rateLimitExceeded."""
    details = f"{exc.reason} {exc.error_details}".lower()
    return 'ratelimitexceeded' in details


@retry(
    retry=retry_if_exception(_is_retryable_http_error),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    stop=stop_after_attempt(4),
    reraise=True,
)
def _execute(request):
    return request.execute()


class GmailMailboxClient(MailboxClient):
    """MailboxClient backed by the Gmail v1 API."""

    def __init__(self, service, user_id: Optional[str] = None,
                 credentials: Optional[Credentials] = None,
                 token_observer: Optional[TokenObserver] = None):
        self.service = service
        self.user_id = user_id
        self.credentials = credentials
        self.token_observer = token_observer
        self._last_token = credentials.token if credentials is not None else None

    def _call(self, request, operation: str):
        try:
            response = _execute(request)
        except HttpError as e:
            status = e.resp.status
            if status == 404:
                raise NotFound(f"Gmail {operation} returned 404", {'user_id': self.user_id}) from e
            if status in AUTH_STATUSES and not _is_rate_limited(e):
                raise CredentialError(
                    f"Gmail {operation} was not authorized",
                    {'status': status, 'user_id': self.user_id}
                ) from e
            raise TransientIOFailure(
                f"Gmail {operation} failed",
                {'status': status, 'user_id': self.user_id}
            ) from e
        except RefreshError as e:
            raise CredentialError(
                f"Gmail {operation} could not refresh the access token",
                {'user_id': self.user_id}
            ) from e
        finally:
            self._notify_if_rotated()
        return response

    def _notify_if_rotated(self):
        """Report a refreshed access token to the observer exactly once."""
        if self.credentials is None or self.token_observer is None:
            return
        if self.credentials.token and self.credentials.token != self._last_token:
            self._last_token = self.credentials.token
            self.token_observer(self.user_id, self.credentials)

    def list_message_ids(self, query: str, page_token: Optional[str] = None,
                         max_results: int = 100) -> MessagePage:
        kwargs = {'userId': 'me', 'q': query, 'maxResults': max_results}
        if page_token:
            kwargs['pageToken'] = page_token

        response = self._call(self.service.users().messages().list(**kwargs), 'messages.list')
        ids = [m['id'] for m in response.get('messages', []) if m.get('id')]
        return MessagePage(ids=ids, next_page_token=response.get('nextPageToken'))

    def get_message_headers(self, message_id: str, header_names: List[str]) -> MessageHeaders:
        request = self.service.users().messages().get(
            userId='me',
            id=message_id,
            format='metadata',
            metadataHeaders=header_names,
        )
        response = self._call(request, 'messages.get')

        headers: Dict[str, str] = {}
        for header in response.get('payload', {}).get('headers', []):
            name = header.get('name')
            # First occurrence wins, matching header_lookup on the raw list
            if name and name not in headers:
                headers[name] = header.get('value', '')

        internal_date = response.get('internalDate')
        return MessageHeaders(
            message_id=message_id,
            headers=headers,
            internal_timestamp=int(internal_date) if internal_date else None,
        )

    def send_raw_message(self, raw_mime: bytes) -> None:
        raw = base64.urlsafe_b64encode(raw_mime).decode('ascii').rstrip('=')
        request = self.service.users().messages().send(userId='me', body={'raw': raw})
        self._call(request, 'messages.send')


class GmailClientFactory:
    """Builds a GmailMailboxClient for a user from the credential store."""

    def __init__(self, credential_store, client_id: str, client_secret: str,
                 token_observer: Optional[TokenObserver] = None):
        self.credential_store = credential_store
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_observer = token_observer or credential_store.save_credentials

    def build_credentials(self, user_id: str) -> Credentials:
        tokens = self.credential_store.get_tokens(user_id)
        if not tokens or not tokens.get('access_token'):
            raise NotFound("No Google account tokens found for user", {'user_id': user_id})

        credentials = Credentials(
            token=tokens['access_token'],
            refresh_token=tokens.get('refresh_token'),
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=GMAIL_SCOPES,
        )
        expires_at = tokens.get('expires_at')
        if expires_at:
            # google-auth compares expiry as naive UTC
            credentials.expiry = datetime.fromtimestamp(expires_at, timezone.utc).replace(tzinfo=None)
        return credentials

    def __call__(self, user_id: str) -> GmailMailboxClient:
        credentials = self.build_credentials(user_id)
        client = GmailMailboxClient(
            service=None,
            user_id=user_id,
            credentials=credentials,
            token_observer=self.token_observer,
        )
        if credentials.expired and credentials.refresh_token:
            try:
                credentials.refresh(Request())
            except RefreshError as e:
                raise CredentialError("Google token refresh was rejected", {'user_id': user_id}) from e
            except TransportError as e:
                raise TransientIOFailure("Google token refresh failed", {'user_id': user_id}) from e
            client._notify_if_rotated()
        client.service = build('gmail', 'v1', credentials=credentials, cache_discovery=False)
        logger.debug(f"Built Gmail client for user {user_id}")
        return client
