"""URL normalisation and filtering helpers shared by the crawler and sitemaps."""

import re
from typing import Optional
from urllib.parse import parse_qsl, unquote, urlencode, urlparse, urlunparse

TRACKING_PARAM_PREFIXES = ('utm_',)
TRACKING_PARAMS = {
    'gclid', 'fbclid', 'igshid', 'mc_cid', 'mc_eid', 'ref', 'ref_src', 'mkt_tok',
}

BLOCKED_EXTENSIONS = (
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.jpg', '.jpeg', '.png', '.gif', '.webp', '.svg', '.bmp', '.tif', '.tiff',
)
BLOCKED_EXTENSION_PATTERN = re.compile(
    r'\.(pdf|docx?|xlsx?|pptx?|jpe?g|png|gif|webp|svg|bmp|tiff?)(?:$|[?#])',
    re.IGNORECASE
)


def _with_scheme(value: str) -> str:
    value = value.strip()
    if value.startswith('http://') or value.startswith('https://'):
        return value
    return f"https://{value}"


def normalize_domain_to_start_url(domain_input: str) -> str:
    """Turn ``example.com`` or any URL on the site into ``https://example.com/``.

    Raises:
        ValueError: if no host can be derived from the input
    """
    parsed = urlparse(_with_scheme(domain_input))
    if not parsed.hostname:
        raise ValueError(f"Invalid domain: {domain_input!r}")
    return urlunparse((parsed.scheme, parsed.netloc.lower(), '/', '', '', ''))


def extract_domain(host_or_url: str) -> str:
    """Hostname of a bare host or URL; the input itself when unparsable."""
    try:
        hostname = urlparse(_with_scheme(host_or_url)).hostname
    except ValueError:
        return host_or_url
    return hostname or host_or_url


def normalize_url_for_dedup(raw_url: str) -> Optional[str]:
    """Canonical form of ``raw_url`` used for deduplication and totals.

    Strips the fragment and tracking parameters, sorts the remaining query
    parameters and removes a trailing slash (except for the root path).
    Returns ``None`` for unparsable or non-HTTP URLs.
    """
    try:
        parsed = urlparse(raw_url.strip())
    except ValueError:
        return None
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None

    kept = []
    for key, value in parse_qsl(parsed.query, keep_blank_values=True):
        lower = key.lower()
        if lower in TRACKING_PARAMS or lower.startswith(TRACKING_PARAM_PREFIXES):
            continue
        kept.append((key, value))
    kept.sort()

    path = parsed.path or '/'
    if len(path) > 1 and path.endswith('/'):
        path = path[:-1]

    return urlunparse((parsed.scheme, parsed.netloc.lower(), path, parsed.params,
                       urlencode(kept), ''))


def is_same_host(url: str, domain: str) -> bool:
    try:
        return urlparse(url).hostname == domain
    except ValueError:
        return False


def should_skip_crawl_url(raw_url: str) -> bool:
    """True for links to binary documents and images."""
    if BLOCKED_EXTENSION_PATTERN.search(raw_url):
        return True
    try:
        path = unquote(urlparse(raw_url).path).lower()
    except ValueError:
        return False
    return path.endswith(BLOCKED_EXTENSIONS)
