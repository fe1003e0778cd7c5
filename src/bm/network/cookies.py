"""Parsing of ``Set-Cookie`` response headers."""

import logging
from http.cookies import CookieError, Morsel, SimpleCookie
from typing import List, Optional

logger = logging.getLogger(__name__)

_EXPIRES = "expires="


def split_set_cookie(header_value: str) -> List[str]:
    """Split a folded ``Set-Cookie`` value into individual cookies.

    HTTP clients join repeated headers with commas, but ``Expires`` dates contain a
    comma themselves ("Wed, 21 Oct 2015 07:28:00 GMT"), so commas inside an
    ``Expires`` attribute are not separators.
    """
    parts = []
    start = 0
    expires_at = None
    lower = header_value.lower()
    for i, char in enumerate(header_value):
        if lower.startswith(_EXPIRES, i):
            expires_at = i + len(_EXPIRES)
        elif char == ";":
            expires_at = None
        elif char == ",":
            # The weekday comma of the date, e.g. "Wed," or "Wednesday,"
            if expires_at is not None and i - expires_at <= len("Wednesday"):
                expires_at = None
                continue
            part = header_value[start:i].strip()
            if part:
                parts.append(part)
            start = i + 1
    last = header_value[start:].strip()
    if last:
        parts.append(last)
    return parts


def parse_set_cookie_header(header_value: Optional[str]) -> List[Morsel]:
    """Parse a (possibly folded) ``Set-Cookie`` header. Malformed cookies are skipped."""
    if not header_value or not header_value.strip():
        return []
    cookies = []
    for part in split_set_cookie(header_value):
        jar = SimpleCookie()
        try:
            jar.load(part)
        except CookieError:
            logger.debug(f"Ignoring malformed cookie: {part}")
            continue
        cookies.extend(jar.values())
    return cookies
