"""
Stable identity for subscriptions.

The fingerprint is the dedup key of the (user_id, fingerprint) unique
index, so it has to come out identical on every scan.
"""

import uuid
from typing import Optional

LIST_ID_PREFIX = 'listid:'
FROM_PREFIX = 'from:'
DOMAIN_PREFIX = 'domain:'
FALLBACK_PREFIX = 'unknown:'


def compute_fingerprint(
    list_id: Optional[str],
    from_email: Optional[str],
    from_domain: Optional[str]
) -> str:
    """
    Compute the fingerprint in priority order: List-ID, sender address,
    sender domain.

    When none of them is known a random token is returned. Such rows can
    never be matched again by a later scan.
    """
    if list_id:
        return f"{LIST_ID_PREFIX}{list_id}"
    if from_email:
        return f"{FROM_PREFIX}{from_email}"
    if from_domain:
        return f"{DOMAIN_PREFIX}{from_domain}"
    # TODO: decide whether unidentifiable senders should be skipped instead of stored
    return f"{FALLBACK_PREFIX}{uuid.uuid4().hex[:16]}"


def is_fallback_fingerprint(fingerprint: str) -> bool:
    return fingerprint.startswith(FALLBACK_PREFIX)
