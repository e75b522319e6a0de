"""
URL identity helpers.

Every page is keyed by a hash derived from its normalized URL. The key doubles
as a folder name on disk, so it embeds a readable domain/path prefix.

    "https://www.example.com/pricing/"  -> "example-com_-pricing_1a2b3c4d"
    "https://example.com/#/settings"    -> "example-com_home--settings_9f8e7d6c"
"""
from __future__ import annotations

import hashlib
import re
from datetime import datetime
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

_DEFAULT_PORTS = {"http": 80, "https": 443}
_UNSAFE = re.compile(r"[^a-zA-Z0-9]")


def normalize_url(url: str) -> str:
    """
    Canonicalize a URL for comparison.

    - scheme and host are lower-cased, default ports dropped
    - a trailing slash is removed from non-root paths
    - query string and fragment are kept (SPAs route on the fragment)

    Strings that are not absolute URLs are returned unchanged.
    """
    if not url:
        return url
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url

    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    netloc = host
    if parts.username or parts.password:
        credentials = parts.username or ""
        if parts.password:
            credentials = f"{credentials}:{parts.password}"
        netloc = f"{credentials}@{host}"
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    return urlunsplit((scheme, netloc, path, parts.query, parts.fragment))


def url_hash(url: str) -> str:
    """Stable, human-debuggable page key for ``url``."""
    normalized = normalize_url(url)
    digest = hashlib.md5(normalized.encode("utf-8")).hexdigest()[:8]

    parts = urlsplit(normalized)
    if not parts.scheme or not parts.netloc:
        safe_name = _UNSAFE.sub("-", normalized)[:30]
        return f"{safe_name}_{digest}"

    domain = re.sub(r"^www\.", "", parts.hostname or "").replace(".", "-")
    path = parts.path or "/"
    path_part = "home" if path == "/" else _UNSAFE.sub("-", path)[:20]
    fragment_part = _UNSAFE.sub("-", f"#{parts.fragment}")[:15] if parts.fragment else ""
    return f"{domain}_{path_part}{fragment_part}_{digest}"


def session_id_for(start_url: str, now: Optional[datetime] = None) -> str:
    """Folder-safe session id: ``<domain>_<YYYY-MM-DDTHH-MM-SS>``."""
    stamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    parts = urlsplit(start_url or "")
    if parts.hostname:
        domain = re.sub(r"^www\.", "", parts.hostname).replace(".", "-")
    else:
        domain = _UNSAFE.sub("-", start_url or "session")[:20]
    return f"{domain}_{stamp}"
