import re
from typing import Iterable, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from app.features.scan.schemas.scan import wildcard_to_regex

BINARY_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".ico", ".zip", ".tar", ".gz",
    ".mp3", ".mp4", ".webm", ".woff", ".woff2", ".ttf", ".eot",
)

_NUMERIC = re.compile(r"^\d+$")


def normalize_url(url: str) -> str:
    """
    Canonical form used for every URL identity comparison.

    - fragment removed
    - query parameters sorted by key (values of a repeated key keep their order)
    - trailing slash removed except for the bare root path
    - hostname lowercased (scheme too)

    Input that is not an absolute URL is returned unchanged.
    """
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return url
    if not parsed.scheme or not parsed.netloc:
        return url

    scheme = parsed.scheme.lower()
    netloc = _lower_host(parsed.netloc)

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    params = parse_qsl(parsed.query, keep_blank_values=True)
    query = urlencode(sorted(params, key=lambda kv: kv[0]))

    return urlunparse((scheme, netloc, path, parsed.params, query, ""))


def _lower_host(netloc: str) -> str:
    # Keep userinfo untouched, lowercase only the host[:port] part
    userinfo, sep, hostport = netloc.rpartition("@")
    return f"{userinfo}{sep}{hostport.lower()}"


def get_origin(url: str) -> Optional[Tuple[str, str, Optional[int]]]:
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return None
    if not parsed.scheme or not parsed.hostname:
        return None
    scheme = parsed.scheme.lower()
    if port is None:
        port = {"http": 80, "https": 443}.get(scheme)
    return scheme, parsed.hostname.lower(), port


def is_same_origin(url: str, other: str) -> bool:
    origin = get_origin(url)
    return origin is not None and origin == get_origin(other)


def is_valid_scan_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def resolve_url(base_url: str, href: Optional[str]) -> Optional[str]:
    """Absolute http(s) URL for `href` relative to `base_url`, or None."""
    if not href:
        return None
    try:
        resolved = urljoin(base_url, href.strip())
    except ValueError:
        return None
    if not is_valid_scan_url(resolved):
        return None
    return resolved


def matches_exclude_pattern(url: str, patterns: Iterable[str]) -> bool:
    for pattern in patterns:
        if re.search(wildcard_to_regex(pattern), url):
            return True
    return False


def should_skip_url(url: str, exclude_patterns: Iterable[str]) -> bool:
    lower = url.lower().split("?", 1)[0].split("#", 1)[0]
    if lower.endswith(BINARY_EXTENSIONS):
        return True
    return matches_exclude_pattern(url, exclude_patterns)


def get_url_pattern(url: str) -> Optional[str]:
    """
    Template key for URLs with variable parts, e.g. `/news/42` -> `/news/:id`
    and `/news?id=7` -> `/news?id`. Static URLs return None and are never
    pattern-limited.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return None

    has_variable = False
    segments = []
    for segment in parsed.path.split("/"):
        if _NUMERIC.match(segment):
            has_variable = True
            segments.append(":id")
        else:
            segments.append(segment)

    params = parse_qsl(parsed.query, keep_blank_values=True)
    if any(_NUMERIC.match(value) for _, value in params):
        has_variable = True

    if not has_variable:
        return None

    path_pattern = "/".join(segments)
    param_names = "&".join(sorted({name for name, _ in params}))
    host = (parsed.hostname or "").lower()
    if param_names:
        return f"{host}{path_pattern}?{param_names}"
    return f"{host}{path_pattern}"


def url_path(url: str) -> str:
    try:
        return urlparse(url).path or "/"
    except ValueError:
        return url
