"""
Per-user OAuth token storage.

Token acquisition happens outside this package; the store only keeps
what it is given and records rotated tokens reported by the mailbox
client through ``save_credentials``.
"""

import json
import logging
import os
import threading
from datetime import timezone
from pathlib import Path
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class CredentialStore:
    """Manages stored OAuth tokens keyed by user id."""

    def __init__(self, store_path: Optional[Path] = None):
        """
        Initialize credential store.

        Args:
            store_path: Path to the JSON file storing tokens.
                       If None, tokens are only kept in memory.
        """
        self.store_path = store_path
        self._tokens: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._load_tokens()

    def _load_tokens(self):
        """Load tokens from disk if the file exists."""
        if self.store_path and self.store_path.exists():
            try:
                with open(self.store_path, 'r') as f:
                    data = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Ignoring unreadable credential store {self.store_path}: {e}")
                return
            if isinstance(data, dict):
                self._tokens = data

    def _save_tokens(self):
        """Save tokens to disk."""
        if not self.store_path:
            return

        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.store_path, 'w') as f:
            json.dump(self._tokens, f, indent=2)

        # Owner read/write only
        os.chmod(self.store_path, 0o600)

    def get_tokens(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Get the stored tokens for a user.

        Returns:
            Dict with access_token, refresh_token and expires_at, or None
        """
        with self._lock:
            tokens = self._tokens.get(user_id)
            return dict(tokens) if tokens else None

    def set_tokens(self, user_id: str, access_token: Optional[str],
                   refresh_token: Optional[str] = None, expires_at: Optional[int] = None):
        """
        Store tokens for a user.

        A missing refresh token or expiry keeps the previously stored value,
        since providers usually omit the refresh token on rotation.
        """
        with self._lock:
            current = self._tokens.get(user_id, {})
            self._tokens[user_id] = {
                'access_token': access_token or current.get('access_token'),
                'refresh_token': refresh_token or current.get('refresh_token'),
                'expires_at': expires_at if expires_at is not None else current.get('expires_at'),
            }
            self._save_tokens()

    def save_credentials(self, user_id: str, credentials) -> None:
        """Token observer: persist rotated google-auth credentials."""
        expires_at = None
        expiry = getattr(credentials, 'expiry', None)
        if expiry is not None:
            # google-auth reports expiry as naive UTC
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            expires_at = int(expiry.timestamp())
        self.set_tokens(
            user_id,
            access_token=credentials.token,
            refresh_token=getattr(credentials, 'refresh_token', None),
            expires_at=expires_at,
        )
        logger.info(f"Stored rotated OAuth tokens for user {user_id}")

    def remove_tokens(self, user_id: str) -> bool:
        """
        Remove stored tokens for a user.

        Returns:
            True if tokens were removed, False if none were stored
        """
        with self._lock:
            if user_id in self._tokens:
                del self._tokens[user_id]
                self._save_tokens()
                return True
            return False

    def list_users(self) -> List[str]:
        with self._lock:
            return sorted(self._tokens.keys())
