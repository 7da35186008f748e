"""URL canonicalisation and content-addressed cache keys."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from urllib.parse import urlsplit, urlunsplit

from fetchgate.errors import ErrorCode, FetchGateError

# Request headers that change the representation a server returns. Every
# other header is ignored when computing a snapshot key.
VARY_HEADERS: tuple[str, ...] = ("accept", "accept-language")


def canonicalize_url(raw: str) -> str:
    """Normalise a user-supplied URL.

    Surrounding whitespace is trimmed, a missing scheme defaults to https,
    scheme and host are lowercased, an empty path becomes ``/`` and the
    fragment is dropped. The query string is kept verbatim.
    """
    url = raw.strip()
    if not url:
        raise FetchGateError(
            code=ErrorCode.INVALID_INPUT,
            message="url must not be empty",
            suggestion="Provide an absolute http(s) URL.",
        )
    if "://" not in url:
        url = f"https://{url}"

    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except ValueError as exc:
        raise FetchGateError(
            code=ErrorCode.INVALID_INPUT,
            message=f"Invalid URL {raw!r}: {exc}",
            suggestion="Provide an absolute http(s) URL.",
        ) from exc

    netloc = ""
    if hostname:
        netloc = f"[{hostname}]" if ":" in hostname else hostname
        if port is not None:
            netloc = f"{netloc}:{port}"
    path = parts.path or ("/" if netloc else "")
    return urlunsplit((parts.scheme.lower(), netloc, path, parts.query, ""))


def host_of(url: str) -> str:
    """Return the lowercased host of *url*, or ``""`` when it has none."""
    return (urlsplit(url).hostname or "").lower()


def origin_of(url: str) -> str:
    """Return ``scheme://host[:port]`` for *url*."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), "", "", ""))


def canonical_vary_headers(headers: Mapping[str, str] | None) -> str:
    """Serialise the representation-affecting headers deterministically."""
    if not headers:
        return ""
    lowered = {name.lower(): value.strip() for name, value in headers.items()}
    return "\n".join(
        f"{name}:{lowered[name]}" for name in sorted(VARY_HEADERS) if lowered.get(name)
    )


def snapshot_key(url: str, headers: Mapping[str, str] | None, mode: str) -> str:
    """SHA-256 hex over (canonical URL, vary headers, mode)."""
    material = "\n".join((url, canonical_vary_headers(headers), mode))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def domain_matches(host: str, domain: str) -> bool:
    """True when *host* is *domain* or one of its subdomains."""
    host = host.lower().rstrip(".")
    domain = domain.lower().strip().lstrip(".").rstrip(".")
    return bool(domain) and (host == domain or host.endswith(f".{domain}"))
