"""PII scrubbing for fetched page text, audited URLs and stored extraction output."""

from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_CARD_RE = re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")
_PHONE_RE = re.compile(r"(?<!\d)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?!\d)")

# Query keys whose values are credentials or personal data.
_SENSITIVE_QUERY_PARAMS = {
    "access_token",
    "api_key",
    "apikey",
    "auth",
    "code",
    "dob",
    "email",
    "jsessionid",
    "key",
    "password",
    "phone",
    "phpsessid",
    "session",
    "sessionid",
    "sid",
    "sig",
    "signature",
    "token",
}
_REDACTED = "[REDACTED]"


def redact_pii(text: str) -> str:
    """
    Replace emails, payment card numbers and North American phone numbers.

    Cards are scrubbed before phones so a 16-digit run is never half-matched
    as a phone number.
    """
    if not text:
        return text
    text = _EMAIL_RE.sub("[EMAIL_REDACTED]", text)
    text = _CARD_RE.sub("[CARD_REDACTED]", text)
    text = _PHONE_RE.sub("[PHONE_REDACTED]", text)
    return text


def truncate(text: str, max_chars: int) -> str:
    """Cut `text` to `max_chars`, marking the cut with an ellipsis."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + "…"


def scrub_url(url: str) -> str:
    """
    Strip credentials and personal data from a URL before it is stored.

    Userinfo and fragments are removed, sensitive query values are replaced,
    and the remaining query values go through redact_pii. Host, path and
    parameter order are kept.
    """
    parsed = urlsplit(url)
    if not parsed.query and not parsed.fragment and "@" not in parsed.netloc:
        return url

    netloc = parsed.netloc.rsplit("@", 1)[-1]
    pairs = []
    for key, value in parse_qsl(parsed.query, keep_blank_values=True):
        if key.lower() in _SENSITIVE_QUERY_PARAMS:
            pairs.append((key, _REDACTED))
        else:
            pairs.append((key, redact_pii(value)))
    query = urlencode(pairs, safe="[]")
    return urlunsplit((parsed.scheme, netloc, parsed.path, query, ""))
