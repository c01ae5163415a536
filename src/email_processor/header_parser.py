"""
Parsing of the mailing-list headers defined by RFC 2369, RFC 2919 and RFC 8058.

All functions are pure. Malformed or missing input degrades to empty
fields instead of raising, so one odd message never blocks a scan.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Union

ANGLE_BRACKET_PATTERN = re.compile(r'<([^>]+)>')
HTTP_PATTERN = re.compile(r'^https?://', re.IGNORECASE)
MAILTO_PATTERN = re.compile(r'^mailto:', re.IGNORECASE)
EMAIL_PATTERN = re.compile(r'[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}', re.IGNORECASE)
DISPLAY_ADDRESS_PATTERN = re.compile(r'^(.*)<([^>]+)>\s*$', re.DOTALL)
ONE_CLICK_TOKEN = 'list-unsubscribe=one-click'

# Headers requested from the mailbox for every scanned message
SCAN_HEADERS = [
    'From',
    'Subject',
    'Date',
    'List-ID',
    'List-Unsubscribe',
    'List-Unsubscribe-Post',
]


@dataclass(frozen=True)
class ListUnsubscribeTargets:
    """Unsubscribe targets declared in a List-Unsubscribe header."""

    http_url: Optional[str] = None
    mailto: Optional[str] = None

    def has_target(self) -> bool:
        return bool(self.http_url or self.mailto)


@dataclass(frozen=True)
class FromAddress:
    """Sender parsed from a From header."""

    name: Optional[str] = None
    email: Optional[str] = None
    domain: Optional[str] = None


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in '"\'':
        value = value[1:-1].strip()
    return value


def parse_list_unsubscribe(raw: Optional[str]) -> ListUnsubscribeTargets:
    """
    Extract HTTP and mailto targets from a List-Unsubscribe value.

    Angle-bracketed values and comma-separated tokens are both collected;
    the first http(s) candidate and the first mailto candidate win.

    Examples:
        >>> parse_list_unsubscribe('<mailto:u@x.com>, <https://x.com/u>')
        ListUnsubscribeTargets(http_url='https://x.com/u', mailto='mailto:u@x.com')
    """
    if not raw:
        return ListUnsubscribeTargets()

    candidates: List[str] = []
    for value in ANGLE_BRACKET_PATTERN.findall(raw):
        candidates.append(value.strip())
    for value in raw.split(','):
        candidates.append(value.strip())

    # Keep discovery order, drop duplicates and empties
    unique = list(dict.fromkeys(c for c in candidates if c))

    http_url = next((c for c in unique if HTTP_PATTERN.match(c)), None)
    mailto = next((c for c in unique if MAILTO_PATTERN.match(c)), None)
    return ListUnsubscribeTargets(http_url=http_url, mailto=mailto)


def parse_one_click(value: Optional[str]) -> bool:
    """True when List-Unsubscribe-Post advertises RFC 8058 one-click."""
    if not value:
        return False
    return ONE_CLICK_TOKEN in value.lower()


def parse_from(raw: Optional[str]) -> FromAddress:
    """
    Parse ``"Display Name" <addr@host>`` or a bare ``addr@host``.

    The address is lower-cased and the domain is everything after the
    first ``@``. Input without an email-shaped token yields empty fields.
    """
    if not raw:
        return FromAddress()

    match = DISPLAY_ADDRESS_PATTERN.match(raw.strip())
    if match:
        address_part = match.group(2)
        name = _strip_quotes(match.group(1)) or None
    else:
        address_part = raw
        name = None

    email_match = EMAIL_PATTERN.search(_strip_quotes(address_part))
    if not email_match:
        return FromAddress()

    email = email_match.group(0).lower()
    domain = email.split('@', 1)[1]
    return FromAddress(name=name, email=email, domain=domain)


def normalize_list_id(raw: Optional[str]) -> Optional[str]:
    """
    Reduce a List-ID header to its identifier.

    Examples:
        >>> normalize_list_id('My List <list.example.com>')
        'list.example.com'
        >>> normalize_list_id('') is None
        True
    """
    if not raw:
        return None
    match = ANGLE_BRACKET_PATTERN.search(raw)
    value = (match.group(1) if match else raw).strip()
    return value or None


HeaderSource = Union[Mapping[str, str], Iterable[Dict[str, str]]]


def header_lookup(headers: HeaderSource, name: str) -> Optional[str]:
    """
    Case-insensitive header access.

    Accepts a plain mapping or the ``[{'name': ..., 'value': ...}]`` list
    returned by the Gmail API. The first matching header wins.
    """
    wanted = name.lower()
    if isinstance(headers, Mapping):
        for key, value in headers.items():
            if key.lower() == wanted:
                return value
        return None

    for header in headers or []:
        if (header.get('name') or '').lower() == wanted:
            return header.get('value')
    return None
