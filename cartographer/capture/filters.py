"""
Traffic Filters - Decide which captured exchanges are API traffic.
"""

from urllib.parse import urlsplit

from ..core.models import Exchange


STATIC_EXTENSIONS = (
    '.js', '.mjs', '.css', '.map', '.png', '.jpg', '.jpeg', '.gif', '.svg',
    '.woff', '.woff2', '.ttf', '.eot', '.ico', '.webp', '.avif', '.mp4', '.mp3',
    '.webm', '.html', '.htm',
)

TRACKERS = (
    'google-analytics', 'googletagmanager', 'facebook', 'hotjar', 'mixpanel',
    'segment', 'doubleclick', 'sentry.io', 'newrelic', 'clarity.ms',
)

API_PATH_MARKERS = ('/api/', '/v1/', '/v2/', '/v3/', '/graphql', '/rest/', '/data/')

API_CONTENT_TYPES = ('application/json', 'application/xml', '+json', 'application/problem')


def is_relevant_api_call(exchange: Exchange) -> bool:
    """
    Determine if an exchange is relevant API traffic.

    Args:
        exchange: Exchange to check

    Returns:
        True if relevant
    """
    # Must have a response
    if exchange.status_code == 0:
        return False

    parts = urlsplit(exchange.url.lower())
    host = parts.netloc
    path = parts.path

    # Skip static assets
    if path.endswith(STATIC_EXTENSIONS):
        return False

    # Skip tracking
    if any(tracker in host for tracker in TRACKERS):
        return False

    if any(marker in path + "/" for marker in API_PATH_MARKERS):
        return True

    content_type = (exchange.response_header('content-type') or '').lower()
    if any(kind in content_type for kind in API_CONTENT_TYPES):
        return True

    # Blocked calls rarely carry an API content type but still belong to the endpoint
    return exchange.status_code in (401, 403, 429, 503) and exchange.method.upper() != "GET"


def filter_api_calls(exchanges: list[Exchange]) -> list[Exchange]:
    """Keep only relevant API exchanges, preserving order."""
    return [exchange for exchange in exchanges if is_relevant_api_call(exchange)]
