"""
Anti-Bot Classifier - Detects bot protection and rate limiting on an endpoint.
Recognises CDN/WAF fingerprints, JavaScript challenge pages and rate-limit
headers, and turns what it saw into a backoff recommendation.
"""

import math
import re
from datetime import datetime
from email.utils import parsedate_to_datetime

from ..core.config import Settings, settings as default_settings
from ..core.models import (
    AntiBotSignal,
    BackoffPolicy,
    BackoffStrategy,
    EndpointCluster,
    Exchange,
)


CHALLENGE_STATUSES = {403, 429, 503}

# Header name (or prefix) -> vendor
CDN_HEADER_MARKERS = {
    "cf-ray": "cloudflare",
    "cf-mitigated": "cloudflare",
    "cf-chl-bypass": "cloudflare",
    "akamai-grn": "akamai",
    "x-akamai-": "akamai",
    "x-datadome": "datadome",
    "x-dd-b": "datadome",
    "x-px-": "perimeterx",
    "x-iinfo": "imperva",
    "x-sucuri-id": "sucuri",
    "x-amz-cf-id": "cloudfront",
}

# Server header value -> vendor
SERVER_MARKERS = {
    'cloudflare': re.compile(r'cloudflare', re.IGNORECASE),
    'akamai': re.compile(r'AkamaiGHost|AkamaiNetStorage', re.IGNORECASE),
    'datadome': re.compile(r'DataDome', re.IGNORECASE),
    'sucuri': re.compile(r'Sucuri', re.IGNORECASE),
    'cloudfront': re.compile(r'CloudFront', re.IGNORECASE),
}

# Cookie name prefix -> vendor
COOKIE_MARKERS = {
    "__cf_bm": "cloudflare",
    "cf_clearance": "cloudflare",
    "_abck": "akamai",
    "bm_sz": "akamai",
    "ak_bmsc": "akamai",
    "datadome": "datadome",
    "_px": "perimeterx",
    "incap_ses_": "imperva",
    "visid_incap_": "imperva",
}

JS_CHALLENGE_RE = re.compile(
    r'cf-browser-verification|challenge-platform|_cf_chl_opt|jschl|Just a moment\.\.\.|'
    r'Checking your browser|px-captcha|captcha-delivery|geo\.captcha-delivery|'
    r'_Incapsula_Resource|Attention Required!',
    re.IGNORECASE
)

RATE_LIMIT_HEADERS = (
    "retry-after",
    "x-ratelimit-limit", "x-ratelimit-remaining", "x-ratelimit-reset",
    "x-rate-limit-limit", "x-rate-limit-remaining", "x-rate-limit-reset",
    "ratelimit-limit", "ratelimit-remaining", "ratelimit-reset", "ratelimit-policy",
)

# Reset values above this are epoch timestamps rather than delta seconds
EPOCH_THRESHOLD = 10_000_000


class AntiBotClassifier:
    """
    Classifies bot-protection behaviour of one endpoint cluster.
    Stateless: the same cluster always yields the same signal.
    """

    def __init__(self, config: Settings | None = None):
        self.config = config or default_settings

    def classify(self, cluster: EndpointCluster) -> AntiBotSignal | None:
        """
        Collect anti-bot indicators of a cluster.

        Args:
            cluster: Frozen endpoint cluster

        Returns:
            Signal with backoff recommendation, or None if nothing was observed
        """
        exchanges = list(cluster.exchanges)

        markers: set[str] = set()
        challenge_codes: set[int] = set()
        js_challenge = False

        for exchange in exchanges:
            vendors = self._cdn_markers(exchange)
            markers |= vendors
            challenge_page = self._is_js_challenge(exchange)
            js_challenge = js_challenge or challenge_page

            if exchange.status_code == 429:
                challenge_codes.add(429)
            elif exchange.status_code in CHALLENGE_STATUSES and (vendors or challenge_page):
                challenge_codes.add(exchange.status_code)

        rate_limit_headers = self._rate_limit_headers(exchanges)

        if not (markers or challenge_codes or rate_limit_headers or js_challenge):
            return None

        return AntiBotSignal(
            challenge_status_codes=sorted(challenge_codes),
            cdn_markers=sorted(markers),
            rate_limit_headers=rate_limit_headers,
            js_challenge=js_challenge,
            challenged=bool(challenge_codes) or js_challenge,
            backoff=self.recommend_backoff(exchanges),
        )

    # =========================================================================
    # Indicators
    # =========================================================================

    def _cdn_markers(self, exchange: Exchange) -> set[str]:
        vendors: set[str] = set()
        for name, value in exchange.response_headers.items():
            lowered = name.lower()
            for marker, vendor in CDN_HEADER_MARKERS.items():
                if lowered == marker or (marker.endswith("-") and lowered.startswith(marker)):
                    vendors.add(vendor)
            if lowered == "server":
                for vendor, pattern in SERVER_MARKERS.items():
                    if pattern.search(value):
                        vendors.add(vendor)

        for cookie in exchange.set_cookie_names | set(exchange.cookies):
            for prefix, vendor in COOKIE_MARKERS.items():
                if cookie.startswith(prefix):
                    vendors.add(vendor)
        return vendors

    def _is_js_challenge(self, exchange: Exchange) -> bool:
        if exchange.status_code not in CHALLENGE_STATUSES or not exchange.response_body:
            return False
        return bool(JS_CHALLENGE_RE.search(exchange.response_body[:20000]))

    def _rate_limit_headers(self, exchanges: list[Exchange]) -> dict[str, str]:
        """Latest value of every rate-limit header seen in the cluster."""
        found: dict[str, str] = {}
        for exchange in exchanges:
            for header in RATE_LIMIT_HEADERS:
                value = exchange.response_header(header)
                if value is not None:
                    found[header] = value
        return dict(sorted(found.items()))

    # =========================================================================
    # Backoff
    # =========================================================================

    def recommend_backoff(self, exchanges: list[Exchange]) -> BackoffPolicy:
        """
        Derive a retry policy from Retry-After, rate-limit headers or timing.

        Args:
            exchanges: Exchanges ordered by timestamp

        Returns:
            Backoff policy (exponential from the configured start if nothing is known)
        """
        retry_after = [
            delay for delay in (self._retry_after(e) for e in exchanges)
            if delay is not None and delay > 0
        ]
        if retry_after:
            return self._from_retry_after(retry_after)

        window_delay = self._from_rate_limit_headers(exchanges)
        if window_delay is not None:
            return self._policy(BackoffStrategy.FIXED, window_delay, 1.0, "rate_limit_headers")

        recovery = self._recovery_gap(exchanges)
        if recovery is not None:
            return self._policy(BackoffStrategy.FIXED, recovery, 1.0, "observed_timing")

        return self._policy(
            BackoffStrategy.EXPONENTIAL,
            self.config.backoff_initial_seconds,
            self.config.backoff_multiplier,
            "default",
        )

    def _from_retry_after(self, delays: list[float]) -> BackoffPolicy:
        if len(set(delays)) == 1:
            return self._policy(BackoffStrategy.FIXED, delays[0], 1.0, "retry_after")

        growing = all(b > a for a, b in zip(delays, delays[1:]))
        if growing:
            ratios = [b / a for a, b in zip(delays, delays[1:])]
            multiplier = math.exp(sum(math.log(r) for r in ratios) / len(ratios))
            return self._policy(
                BackoffStrategy.EXPONENTIAL,
                delays[0],
                round(multiplier, 3),
                "retry_after",
            )

        return self._policy(BackoffStrategy.FIXED, max(delays), 1.0, "retry_after")

    def _retry_after(self, exchange: Exchange) -> float | None:
        value = exchange.response_header("retry-after")
        if not value:
            return None
        value = value.strip()
        if value.isdigit():
            return float(value)
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        now = self._response_time(exchange)
        if when.tzinfo is None or now.tzinfo is None:
            when, now = when.replace(tzinfo=None), now.replace(tzinfo=None)
        return max(0.0, (when - now).total_seconds())

    def _response_time(self, exchange: Exchange) -> datetime:
        date = exchange.response_header("date")
        if date:
            try:
                return parsedate_to_datetime(date)
            except (TypeError, ValueError):
                pass
        return exchange.timestamp

    def _from_rate_limit_headers(self, exchanges: list[Exchange]) -> float | None:
        """Spread the allowed requests evenly over the advertised window."""
        for exchange in reversed(exchanges):
            limit = _leading_int(
                exchange.response_header("x-ratelimit-limit")
                or exchange.response_header("x-rate-limit-limit")
                or exchange.response_header("ratelimit-limit")
            )
            if not limit:
                continue

            window: float | None = None
            policy = exchange.response_header("ratelimit-policy")
            if policy:
                match = re.search(r'w=(\d+)', policy)
                if match:
                    window = float(match.group(1))

            if window is None:
                reset = _leading_int(
                    exchange.response_header("x-ratelimit-reset")
                    or exchange.response_header("x-rate-limit-reset")
                    or exchange.response_header("ratelimit-reset")
                )
                if reset is not None and reset >= EPOCH_THRESHOLD:
                    window = reset - self._response_time(exchange).timestamp()
                elif reset is not None:
                    window = float(reset)

            if window and window > 0:
                return window / limit
        return None

    def _recovery_gap(self, exchanges: list[Exchange]) -> float | None:
        """Shortest observed wait between a 429 and the next successful call."""
        gaps: list[float] = []
        for i, exchange in enumerate(exchanges):
            if exchange.status_code != 429:
                continue
            for later in exchanges[i + 1:]:
                if later.is_success:
                    gap = (later.timestamp - exchange.timestamp).total_seconds()
                    if gap > 0:
                        gaps.append(gap)
                    break
        return min(gaps) if gaps else None

    def _policy(
        self,
        strategy: BackoffStrategy,
        initial: float,
        multiplier: float,
        source: str
    ) -> BackoffPolicy:
        ceiling = self.config.backoff_max_seconds
        return BackoffPolicy(
            strategy=strategy,
            initial_delay_seconds=round(min(initial, ceiling), 3),
            multiplier=multiplier,
            max_delay_seconds=ceiling,
            source=source,
        )


def _leading_int(value: str | None) -> int | None:
    if not value:
        return None
    match = re.match(r'\s*(\d+)', value)
    return int(match.group(1)) if match else None
