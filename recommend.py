# csp-ledger/recommend.py
from __future__ import annotations

from urllib.parse import urlsplit

from violations import Fingerprint, ViolationRecord


DEFAULT_RECOMMEND_THRESHOLD = 10

NONCE_HASH_HINT = "Inline script blocked: Consider using nonce or hash for specific scripts"


def is_https_url(value: str) -> bool:
    """True for an absolute https:// URL with a host (``inline``/``eval``/``data:`` etc. are not)."""
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme == "https" and bool(parts.hostname)


def recommend(
    fingerprint: Fingerprint,
    count: int,
    record: ViolationRecord,
    threshold: int = DEFAULT_RECOMMEND_THRESHOLD,
) -> list[str]:
    """
    Suggestions for one aggregate. Always a fresh list; same inputs, same output.

    Nothing is suggested until ``count > threshold``.
    """
    if count <= threshold:
        return []

    blocked_uri, directive = fingerprint
    out = [
        f"Recurring violation: '{blocked_uri}' blocked by {directive} {count} times; "
        f"review whether it should be allowed"
    ]
    if is_https_url(blocked_uri):
        out.append(f"Consider adding '{blocked_uri}' to the {directive} directive")
    if record.script_sample:
        out.append(NONCE_HASH_HINT)
    return out
