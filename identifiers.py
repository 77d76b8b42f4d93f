"""
Identifier normalization for bulk enrichment.
Turns raw website / Instagram cells into canonical dedup keys and flags hosts
that are not usable business domains.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional
from urllib.parse import urlsplit


WEBSITE = "website"
SOCIAL_PROFILE = "social_profile"
IDENTIFIER_KINDS = (WEBSITE, SOCIAL_PROFILE)

STATUS_OK = "ok"
STATUS_EMPTY = "empty"
STATUS_INVALID = "invalid"
STATUS_EXCLUDED = "excluded"

# Generic social / networking / messaging platforms. A company page hosted on
# one of these is not the company's own domain.
BLOCKED_HOSTS = [
    "x.com",
    "twitter.com",
    "linkedin.com",
    "whatsapp.com",
    "facebook.com",
    "fb.com",
    "instagram.com",
    "tiktok.com",
    "youtube.com",
    "snapchat.com",
    "discord.com",
    "discord.gg",
    "telegram.org",
    "t.me",
    "slack.com",
    "reddit.com",
    "pinterest.com",
    "threads.net",
    "twitch.tv",
]

PROFILE_HOST_RE = re.compile(
    r"^(?:[a-z][a-z0-9+.-]*://)?(?:www\.|m\.)?instagram\.com/@?([^/?#\s]+)",
    re.IGNORECASE,
)
RESERVED_PROFILE_PATHS = {"p", "reel", "reels", "tv", "stories", "explore", "accounts"}
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


@dataclass(frozen=True)
class Identifier:
    value: str
    kind: str
    url: str = field(default="", compare=False)

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.value}"

    @classmethod
    def from_key(cls, key: str) -> "Identifier":
        kind, _, value = str(key or "").partition(":")
        if kind not in IDENTIFIER_KINDS or not value:
            raise ValueError(f"Malformed identifier key: {key!r}")
        if kind == WEBSITE:
            return cls(value=value, kind=kind, url=f"https://{value}")
        return cls(value=value, kind=kind, url=f"https://instagram.com/{value}")


@dataclass(frozen=True)
class NormalizedInput:
    status: str
    identifier: Optional[Identifier] = None
    blocked_host: str = ""

    @property
    def usable(self) -> bool:
        return self.status == STATUS_OK and self.identifier is not None


def normalize_website(raw: Optional[str]) -> Optional[Identifier]:
    """
    Canonicalize a website / URL / e-mail cell into its host.

    Adds a default scheme, drops userinfo, port, path and query, lower-cases the
    host and strips a leading `www.`. Returns None for values that cannot be a
    domain (no dot, whitespace inside the host).
    """
    text = str(raw or "").strip()
    if not text or "." not in text:
        return None
    candidate = text if _SCHEME_RE.match(text) else f"https://{text}"
    try:
        parsed = urlsplit(candidate)
    except ValueError:
        return None
    scheme = (parsed.scheme or "https").lower()
    if scheme not in {"http", "https"}:
        scheme = "https"
    host = (parsed.netloc or "").split("@")[-1].split(":", 1)[0].strip().lower().strip(".")
    if host.startswith("www."):
        host = host[4:]
    if not host or "." not in host or any(ch.isspace() for ch in host):
        return None
    return Identifier(value=host, kind=WEBSITE, url=f"{scheme}://{host}")


def normalize_social_profile(raw: Optional[str]) -> Optional[Identifier]:
    """Extract the Instagram handle (case preserved) from a profile URL."""
    text = str(raw or "").strip()
    if not text:
        return None
    match = PROFILE_HOST_RE.match(text)
    if not match:
        return None
    handle = match.group(1).lstrip("@").strip()
    if not handle or handle.lower() in RESERVED_PROFILE_PATHS:
        return None
    return Identifier(value=handle, kind=SOCIAL_PROFILE, url=f"https://instagram.com/{handle}")


def build_blocked_hosts(extra: Optional[Iterable[str]] = None) -> list[str]:
    hosts = list(BLOCKED_HOSTS)
    for value in extra or []:
        cleaned = str(value or "").strip().lower()
        if cleaned.startswith("www."):
            cleaned = cleaned[4:]
        if cleaned and cleaned not in hosts:
            hosts.append(cleaned)
    return hosts


def is_blocked_host(host: str, blocked_hosts: Optional[Iterable[str]] = None) -> Optional[str]:
    """Return the blocklist entry matching `host` (exact or subdomain), else None."""
    if not host:
        return None
    host = host.lower()
    for suffix in BLOCKED_HOSTS if blocked_hosts is None else blocked_hosts:
        if host == suffix or host.endswith(f".{suffix}"):
            return suffix
    return None


def classify_input(
    raw: Optional[str],
    kind: str,
    blocked_hosts: Optional[Iterable[str]] = None,
) -> NormalizedInput:
    if not str(raw or "").strip():
        return NormalizedInput(status=STATUS_EMPTY)
    if kind == WEBSITE:
        identifier = normalize_website(raw)
        if identifier is None:
            return NormalizedInput(status=STATUS_INVALID)
        blocked = is_blocked_host(identifier.value, blocked_hosts)
        if blocked:
            return NormalizedInput(status=STATUS_EXCLUDED, blocked_host=blocked)
        return NormalizedInput(status=STATUS_OK, identifier=identifier)
    if kind == SOCIAL_PROFILE:
        identifier = normalize_social_profile(raw)
        if identifier is None:
            return NormalizedInput(status=STATUS_INVALID)
        return NormalizedInput(status=STATUS_OK, identifier=identifier)
    raise ValueError(f"Unknown identifier kind: {kind!r}")
