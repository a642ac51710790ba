from __future__ import annotations

from datetime import datetime
from urllib.parse import parse_qs, unquote, urljoin, urlsplit, urlunsplit

SEARCH_ENGINE_BASE = "https://duckduckgo.com"
SNIPPET_MAX_CHARS = 320


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlsplit(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def extract_domain(url: str) -> str:
    """Host without a leading ``www.``, for display."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return url
    if host.startswith("www."):
        host = host[4:]
    return host or url


def is_search_engine_url(url: str) -> bool:
    host = extract_domain(url)
    return host == "duckduckgo.com" or host.endswith(".duckduckgo.com")


def decode_result_href(href: str | None, *, base: str = SEARCH_ENGINE_BASE) -> str:
    """Absolute target URL for a result link, unwrapping ``/l/?uddg=`` redirects."""
    if not href:
        return ""
    href = href.strip()
    if href.startswith("//"):
        href = f"https:{href}"
    absolute = href if href.startswith(("http://", "https://")) else urljoin(base + "/", href)

    try:
        parsed = urlsplit(absolute)
    except ValueError:
        return ""

    host = (parsed.hostname or "").lower()
    if "duckduckgo.com" in host and parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target and target[0]:
            return unquote(target[0])
    return absolute if is_valid_url(absolute) else ""


def normalize_url(url: str) -> str:
    """Dedup key: lower-cased scheme and host, no fragment, no trailing slash."""
    try:
        parsed = urlsplit(url.strip())
    except ValueError:
        return url.strip().lower()
    scheme = (parsed.scheme or "https").lower()
    netloc = parsed.netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]
    path = parsed.path or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    return urlunsplit((scheme, netloc, path, parsed.query, ""))


def truncate_snippet(snippet: str) -> str:
    if len(snippet) <= SNIPPET_MAX_CHARS:
        return snippet
    return f"{snippet[:SNIPPET_MAX_CHARS - 3]}…"


def format_readable_date(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.strftime("%b %d, %Y, %I:%M %p")
