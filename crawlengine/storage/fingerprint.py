"""
URL fingerprinting used as the deduplication key.
"""

import hashlib
import logging
import re
from typing import Iterable, List, Optional
from urllib.parse import urlsplit, parse_qsl

FINGERPRINT_PREFIX = 'fp:'
FINGERPRINT_HEX_LENGTH = 16

DEFAULT_EXCLUDED_PARAMS = (
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
    'fbclid', 'gclid', 'ref', 'source', '_ga', '_gl'
)

_REPEATED_SLASHES = re.compile(r'/+')

logger = logging.getLogger(__name__)


def canonicalize_url(url: str, exclude_params: Optional[Iterable[str]] = None) -> str:
    """
    Build the canonical form of a URL.

    Scheme and host are lower-cased, repeated slashes in the path collapse,
    the fragment is dropped, excluded query parameters are removed and the
    remaining ones are sorted by key.

    Args:
        url: URL to canonicalize
        exclude_params: Query parameters to drop (default: common tracking parameters)

    Returns:
        Canonical URL string, or the stripped input if it cannot be parsed
    """
    excluded = set(exclude_params) if exclude_params else set(DEFAULT_EXCLUDED_PARAMS)
    raw = url.strip()

    try:
        parsed = urlsplit(raw)
        host = (parsed.hostname or '').lower()
        if ':' in host:
            host = f"[{host}]"
        port = parsed.port
    except ValueError:
        logger.debug(f"Could not parse URL for fingerprinting: {url}")
        return raw

    if port is not None:
        host = f"{host}:{port}"

    path = parsed.path
    if not path:
        path = '/'
    else:
        path = _REPEATED_SLASHES.sub('/', path)
        if not path.startswith('/'):
            path = '/' + path

    params = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
              if k not in excluded]
    params.sort(key=lambda pair: pair[0])

    canonical = f"{parsed.scheme.lower()}://{host}{path}"
    if params:
        canonical += '?' + '&'.join(f"{k}={v}" for k, v in params)
    return canonical


def generate(url: str, exclude_params: Optional[Iterable[str]] = None) -> str:
    """Generate the ``fp:<16 hex>`` fingerprint of a URL."""
    canonical = canonicalize_url(url, exclude_params)
    digest = hashlib.sha256(canonical.encode('utf-8')).hexdigest()
    return f"{FINGERPRINT_PREFIX}{digest[:FINGERPRINT_HEX_LENGTH]}"


def generate_for_spider(url: str, spider_name: str,
                        exclude_params: Optional[Iterable[str]] = None) -> str:
    """Generate a fingerprint namespaced by spider name."""
    return f"{spider_name}:{generate(url, exclude_params)}"


def generate_batch(urls: Iterable[str],
                   exclude_params: Optional[Iterable[str]] = None) -> List[str]:
    excluded = list(exclude_params) if exclude_params else None
    return [generate(url, excluded) for url in urls]


def is_valid_fingerprint(fingerprint: str) -> bool:
    return (fingerprint.startswith(FINGERPRINT_PREFIX) and
            len(fingerprint) == len(FINGERPRINT_PREFIX) + FINGERPRINT_HEX_LENGTH)
