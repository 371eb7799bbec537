"""URL → domain classification (pure functions, never raise)."""

from __future__ import annotations

import re
from urllib.parse import urlparse

EXCLUDED_SCHEMES = (
    "chrome:",
    "chrome-extension:",
    "moz-extension:",
    "edge:",
    "about:",
    "file:",
    "data:",
    "view-source:",
    "devtools:",
)
EXCLUDED_DOMAINS = frozenset({"localhost", "127.0.0.1", "0.0.0.0"})  # noqa: S104

_FALLBACK_RE = re.compile(r"(?:[a-z][a-z0-9+.-]*://)?(?:www\.)?([^/?#\s]+)", re.IGNORECASE)
_DOMAIN_RE = re.compile(
    r"^[a-z0-9][a-z0-9-]{0,61}[a-z0-9]?(?:\.[a-z0-9][a-z0-9-]{0,61}[a-z0-9]?)*$",
    re.IGNORECASE,
)


def _strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


def extract_domain(url: str | None) -> str:
    """Return the lower-cased hostname of ``url`` without a leading ``www.``.

    Falls back to a regex when the URL does not parse or carries no
    hostname (e.g. ``example.com/path``).
    """
    if not url:
        return ""
    url = str(url).strip()
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    if host:
        return _strip_www(host.lower())

    match = _FALLBACK_RE.match(url)
    if not match:
        return url.lower()
    host = match.group(1).lower()
    # userinfo and port are not part of the identity key
    host = host.rsplit("@", 1)[-1].split(":", 1)[0]
    return _strip_www(host)


def normalize_domain(domain: str) -> str:
    """Normalize user input (a bare domain or a pasted URL) to a domain key."""
    domain = str(domain or "").strip().lower()
    if "/" in domain or ":" in domain:
        return extract_domain(domain)
    return _strip_www(domain)


def is_valid_domain(domain: str) -> bool:
    """Syntactic check: dot-separated labels, at least one dot."""
    return bool(domain) and "." in domain and _DOMAIN_RE.match(domain) is not None


def should_track(url: str | None) -> bool:
    """Whether time spent on ``url`` is attributed to a domain at all."""
    if not url:
        return False
    if url.strip().lower().startswith(EXCLUDED_SCHEMES):
        return False
    domain = extract_domain(url)
    if domain in EXCLUDED_DOMAINS:
        return False
    return is_valid_domain(domain)
