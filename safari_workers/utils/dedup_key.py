"""
Dedup Key Utilities

Content-addressed keys for media artifacts. A source image or video is
identified by its source URL or CDN storage key; two work items that point
at the same content must produce the same key.

Storage public IDs use the DJB2 hash so they stay short and stable across
re-runs.
"""

from urllib.parse import urlparse, urlunparse, parse_qs, urlencode
from typing import Optional

TRACKING_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign',
    'utm_term', 'utm_content', 'ref', 'source'
}


def hash_string(s: str) -> str:
    """
    DJB2 hash algorithm.

    Args:
        s: String to hash

    Returns:
        Base36 encoded hash string
    """
    if not isinstance(s, str):
        s = str(s) if s else ''

    hash_value = 5381
    for char in s:
        hash_value = ((hash_value << 5) + hash_value) + ord(char)
        hash_value = hash_value & 0xFFFFFFFF  # Keep as 32-bit unsigned

    return _base36_encode(hash_value)


def _base36_encode(num: int) -> str:
    """Convert number to base36 string."""
    chars = '0123456789abcdefghijklmnopqrstuvwxyz'
    if num == 0:
        return '0'
    result = ''
    while num:
        result = chars[num % 36] + result
        num //= 36
    return result


def is_url(source_key: str) -> bool:
    return source_key.lower().startswith(('http://', 'https://'))


def normalize_source_key(source_key: str) -> Optional[str]:
    """
    Normalize a source URL or storage key into a dedup key.

    URLs: scheme and host are lowercased, tracking parameters, fragments and
    trailing slashes are dropped. Paths keep their case because CDN object
    keys are case-sensitive.

    Storage keys: surrounding whitespace and leading slashes are stripped.
    """
    if not source_key:
        return None

    source_key = source_key.strip()
    if not is_url(source_key):
        return source_key.lstrip('/') or None

    try:
        parsed = urlparse(source_key)

        query_params = parse_qs(parsed.query)
        filtered_params = {
            k: v for k, v in sorted(query_params.items())
            if k.lower() not in TRACKING_PARAMS
        }

        cleaned = parsed._replace(
            scheme=parsed.scheme.lower(),
            netloc=parsed.netloc.lower(),
            query=urlencode(filtered_params, doseq=True),
            path=parsed.path.rstrip('/'),
            fragment=''
        )
        return urlunparse(cleaned)
    except ValueError:
        return source_key.rstrip('/')


def media_public_id(dedup_key: str, folder: str = '') -> str:
    """
    Storage public ID for a dedup key (format: "<folder>/m_<hash>").
    """
    public_id = f"m_{hash_string(dedup_key)}"
    return f"{folder.strip('/')}/{public_id}" if folder else public_id
