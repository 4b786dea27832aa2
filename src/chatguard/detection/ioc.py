"""Indicator-of-compromise extraction from free text.

Pure, synchronous and side-effect free.  Every collection in the returned
:class:`IOCSet` is deduplicated in first-occurrence order and keeps the
original case.
"""

from __future__ import annotations

import re

from chatguard.detection.models import IOCSet

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_URL_RE = re.compile(
    r"https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
    r"[-a-zA-Z0-9()@:%_+.~#?&/=]*",
    re.IGNORECASE,
)
_IPV4_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
_DOMAIN_RE = re.compile(r"\b(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}\b")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

# MD5, SHA-1, SHA-256
_HASH_RES = (
    re.compile(r"\b[a-fA-F0-9]{32}\b"),
    re.compile(r"\b[a-fA-F0-9]{40}\b"),
    re.compile(r"\b[a-fA-F0-9]{64}\b"),
)

HASH_TYPES_BY_LENGTH = {32: "md5", 40: "sha1", 64: "sha256"}


def _valid_ipv4(value: str) -> bool:
    return all(int(octet) <= 255 for octet in value.split("."))


def extract_iocs(text: str | None) -> IOCSet:
    """Extract URLs, IPv4 addresses, domains, emails and file hashes.

    Args:
        text: Free text, typically a chat message.  ``None`` and the empty
            string yield an empty set.

    Returns:
        The extracted indicators.  Domains include the hosts of extracted
        URLs and emails, matching how they appear in the text.
    """
    if not text:
        return IOCSet()

    urls = _URL_RE.findall(text)
    ips = [ip for ip in _IPV4_RE.findall(text) if _valid_ipv4(ip)]
    domains = _DOMAIN_RE.findall(text)
    emails = _EMAIL_RE.findall(text)
    hashes = [h for pattern in _HASH_RES for h in pattern.findall(text)]

    return IOCSet(urls=urls, ips=ips, domains=domains, emails=emails, hashes=hashes)


def hash_type(value: str) -> str | None:
    """Return ``"md5"``, ``"sha1"`` or ``"sha256"`` by digest length."""
    return HASH_TYPES_BY_LENGTH.get(len(value))
