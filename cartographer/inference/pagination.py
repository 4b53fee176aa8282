"""
Pagination Classifier - Detects how an endpoint pages through results.
Looks for values chained from one response into the next request, monotonic
page/offset parameters, and well-known parameter names.
"""

import re
from collections import defaultdict
from typing import Any, Iterator
from urllib.parse import parse_qsl, urljoin, urlsplit

from ..core.config import Settings, settings as default_settings
from ..core.models import (
    EndpointCluster,
    Exchange,
    PAGINATION_PRIORITY,
    PaginationKind,
    PaginationPattern,
)


CURSOR_PARAMS = {
    "cursor", "after", "before", "page_token", "pagetoken", "next_token",
    "nexttoken", "continuation", "continuation_token", "continuationtoken",
    "starting_after", "ending_before", "since_id", "max_id", "marker",
    "scroll_id", "scrollid", "next",
}
OFFSET_PARAMS = {"offset", "skip", "start", "from", "start_index", "startindex"}
LIMIT_PARAMS = {
    "limit", "size", "per_page", "perpage", "page_size", "pagesize", "count",
    "take", "rows", "max_results", "maxresults", "first",
}
PAGE_PARAMS = {
    "page", "p", "pg", "page_number", "pagenumber", "pageno", "page_no",
    "page_index", "pageindex",
}

# Response body keys that carry the token for the next request
NEXT_TOKEN_KEYS = {
    "next", "next_cursor", "nextcursor", "cursor", "next_page_token",
    "nextpagetoken", "next_token", "nexttoken", "after", "end_cursor",
    "endcursor", "continuation", "continuation_token", "continuationtoken",
    "scroll_id", "scrollid", "next_max_id", "marker", "next_marker",
    "nextmarker",
}
# Response body keys that carry a full URL to the next page
NEXT_URL_KEYS = {
    "next", "nextlink", "next_link", "next_url", "nexturl", "@odata.nextlink",
    "next_page_url", "nextpageurl", "href",
}
CURSOR_HEADERS = ("x-next-cursor", "x-continuation-token", "x-continuation", "x-next-token")
NEXT_PAGE_HEADERS = ("x-next-page", "x-next-offset")
VENDOR_HEADER_PREFIXES = ("x-pagination", "x-total-pages", "x-total-count", "x-page")

LINK_NEXT_RE = re.compile(r'<([^>]+)>\s*;[^,]*rel="?next"?', re.IGNORECASE)
INTEGER_RE = re.compile(r'^-?\d+$')

MAX_BODY_DEPTH = 4


class PaginationClassifier:
    """
    Classifies the pagination style of one endpoint cluster.
    Stateless: the same cluster always yields the same pattern.
    """

    def __init__(self, config: Settings | None = None):
        self.config = config or default_settings

    def classify(self, cluster: EndpointCluster) -> PaginationPattern | None:
        """
        Pick the dominant pagination pattern of a cluster.

        Args:
            cluster: Frozen endpoint cluster

        Returns:
            Dominant pattern, or None if nothing suggests pagination
        """
        exchanges = list(cluster.exchanges)
        if not exchanges:
            return None

        candidates: list[PaginationPattern] = []
        candidates.extend(self._chained_tokens(exchanges))
        candidates.extend(self._link_headers(exchanges))
        candidates.extend(self._next_urls(exchanges))
        candidates.extend(self._monotonic(exchanges))
        candidates.extend(self._name_guesses(exchanges))

        if not candidates:
            return None

        best = max(
            candidates,
            key=lambda c: (
                c.confidence,
                c.frequency,
                -PAGINATION_PRIORITY.index(c.kind),
            )
        )

        threshold = self.config.pattern_confidence_threshold
        if best.confidence < threshold:
            best = best.model_copy(update={"low_confidence": True})
        return best

    # =========================================================================
    # Chained Values
    # =========================================================================

    def _chained_tokens(self, exchanges: list[Exchange]) -> list[PaginationPattern]:
        """Tokens from response N that come back as a parameter in a later request."""
        found: list[PaginationPattern] = []
        varying = _varying_params(exchanges)

        for i, exchange in enumerate(exchanges):
            tokens = dict(self._body_tokens(exchange))
            for header in CURSOR_HEADERS + NEXT_PAGE_HEADERS:
                value = exchange.response_header(header)
                if value:
                    tokens[header] = value

            for source, token in tokens.items():
                for later in exchanges[i + 1:]:
                    param = self._param_with_value(later, token, varying)
                    if param is None:
                        continue
                    kind = self._kind_for_chain(source, param, token)
                    found.append(self._pattern(
                        kind,
                        [param],
                        exchanges,
                        1.0,
                        header=source if source.startswith("x-") else None,
                        evidence=[f"{source} from response carried into '{param}' of a later request"],
                    ))
                    break

        return found

    def _kind_for_chain(self, source: str, param: str, token: str) -> PaginationKind:
        name = param.lower()
        if source in NEXT_PAGE_HEADERS:
            return PaginationKind.VENDOR_SPECIFIC
        if INTEGER_RE.match(token):
            if name in PAGE_PARAMS:
                return PaginationKind.PAGE_NUMBER
            if name in OFFSET_PARAMS:
                return PaginationKind.OFFSET_LIMIT
        return PaginationKind.CURSOR

    def _body_tokens(self, exchange: Exchange) -> Iterator[tuple[str, str]]:
        try:
            body = exchange.response_json()
        except ValueError:
            return
        for key, value in _walk(body, MAX_BODY_DEPTH):
            if key.lower() not in NEXT_TOKEN_KEYS:
                continue
            if isinstance(value, bool) or not isinstance(value, (str, int)):
                continue
            token = str(value)
            if token and not _looks_like_url(token):
                yield key, token

    def _param_with_value(self, exchange: Exchange, token: str, varying: set[str]) -> str | None:
        """
        Name of the request parameter carrying a token.

        Page sizes never carry a token. When several parameters hold the same
        value, one whose value changes across the cluster wins.
        """
        matches = [
            name for name, value in _query(exchange.url)
            if value == token and name.lower() not in LIMIT_PARAMS
        ]
        if not matches:
            try:
                body = exchange.request_json()
            except ValueError:
                return None
            if isinstance(body, dict):
                matches = [
                    name for name, value in body.items()
                    if not isinstance(value, bool)
                    and isinstance(value, (str, int))
                    and str(value) == token
                    and name.lower() not in LIMIT_PARAMS
                ]
        if not matches:
            return None
        return min(matches, key=lambda name: (name not in varying, name))

    # =========================================================================
    # Next Links
    # =========================================================================

    def _link_headers(self, exchanges: list[Exchange]) -> list[PaginationPattern]:
        found: list[PaginationPattern] = []
        for i, exchange in enumerate(exchanges):
            link = exchange.response_header("link")
            if not link:
                continue
            match = LINK_NEXT_RE.search(link)
            if not match:
                continue
            next_url = urljoin(exchange.url, match.group(1))
            params = _changed_params(exchange.url, next_url)
            followed = any(_same_request(later.url, next_url) for later in exchanges[i + 1:])
            found.append(self._pattern(
                PaginationKind.LINK_HEADER,
                params,
                exchanges,
                1.0 if followed else 0.75,
                header="link",
                evidence=["Link rel=next " + ("followed" if followed else "advertised")],
            ))
        return found

    def _next_urls(self, exchanges: list[Exchange]) -> list[PaginationPattern]:
        """Vendor-specific next links embedded in response bodies or headers."""
        found: list[PaginationPattern] = []
        for i, exchange in enumerate(exchanges):
            try:
                body = exchange.response_json()
            except ValueError:
                body = None

            for key, value in _walk(body, MAX_BODY_DEPTH):
                if key.lower() not in NEXT_URL_KEYS or not isinstance(value, str):
                    continue
                if not _looks_like_url(value):
                    continue
                next_url = urljoin(exchange.url, value)
                followed = any(_same_request(later.url, next_url) for later in exchanges[i + 1:])
                found.append(self._pattern(
                    PaginationKind.VENDOR_SPECIFIC,
                    _changed_params(exchange.url, next_url),
                    exchanges,
                    1.0 if followed else 0.6,
                    evidence=[f"'{key}' URL in response body " + ("followed" if followed else "advertised")],
                ))

            # Followed next-page headers are picked up as chains at 1.0
            for header in NEXT_PAGE_HEADERS:
                if exchange.response_header(header):
                    found.append(self._pattern(
                        PaginationKind.VENDOR_SPECIFIC,
                        [],
                        exchanges,
                        0.6,
                        header=header,
                        evidence=[f"{header} advertised"],
                    ))

            for header in exchange.response_headers:
                if header.lower().startswith(VENDOR_HEADER_PREFIXES):
                    found.append(self._pattern(
                        PaginationKind.VENDOR_SPECIFIC,
                        [],
                        exchanges,
                        0.5,
                        header=header.lower(),
                        evidence=[f"vendor pagination header {header.lower()}"],
                    ))
        return found

    # =========================================================================
    # Monotonic Parameters
    # =========================================================================

    def _monotonic(self, exchanges: list[Exchange]) -> list[PaginationPattern]:
        """Integer parameters that advance by a constant step between calls."""
        sequences: dict[str, list[int]] = defaultdict(list)
        limits: dict[str, set[int]] = defaultdict(set)

        for exchange in exchanges:
            for name, value in _query(exchange.url):
                if not INTEGER_RE.match(value):
                    continue
                if name.lower() in LIMIT_PARAMS:
                    limits[name].add(int(value))
                    continue
                sequence = sequences[name]
                if not sequence or sequence[-1] != int(value):
                    sequence.append(int(value))

        limit_values = set().union(*limits.values()) if limits else set()
        found: list[PaginationPattern] = []

        for name, sequence in sequences.items():
            if len(sequence) < 2:
                continue
            steps = {b - a for a, b in zip(sequence, sequence[1:])}
            if len(steps) != 1:
                continue
            step = steps.pop()
            if step <= 0:
                continue

            lowered = name.lower()
            if lowered in OFFSET_PARAMS or (step > 1 and step in limit_values):
                kind = PaginationKind.OFFSET_LIMIT
                bound = [name] + sorted(limits)
            elif lowered in PAGE_PARAMS or step == 1:
                kind = PaginationKind.PAGE_NUMBER
                bound = [name] + sorted(limits)
            else:
                continue

            confidence = 0.9 if len(sequence) >= 3 else 0.75
            found.append(self._pattern(
                kind,
                bound,
                exchanges,
                confidence,
                evidence=[f"'{name}' advanced by {step} across {len(sequence)} calls"],
            ))
        return found

    def _name_guesses(self, exchanges: list[Exchange]) -> list[PaginationPattern]:
        """Low-confidence guesses from well-known parameter names alone."""
        names = {name for exchange in exchanges for name, _ in _query(exchange.url)}
        limits = sorted(n for n in names if n.lower() in LIMIT_PARAMS)

        found: list[PaginationPattern] = []
        for name in sorted(names):
            lowered = name.lower()
            if lowered in CURSOR_PARAMS:
                kind = PaginationKind.CURSOR
            elif lowered in OFFSET_PARAMS:
                kind = PaginationKind.OFFSET_LIMIT
            elif lowered in PAGE_PARAMS:
                kind = PaginationKind.PAGE_NUMBER
            else:
                continue
            found.append(self._pattern(
                kind,
                [name] + limits,
                exchanges,
                0.5,
                evidence=[f"parameter name '{name}' without observed chaining"],
            ))
        return found

    # =========================================================================
    # Helpers
    # =========================================================================

    def _pattern(
        self,
        kind: PaginationKind,
        parameters: list[str],
        exchanges: list[Exchange],
        confidence: float,
        header: str | None = None,
        evidence: list[str] | None = None
    ) -> PaginationPattern:
        return PaginationPattern(
            kind=kind,
            parameters=parameters,
            header=header,
            confidence=confidence,
            frequency=_frequency(parameters[:1], header, exchanges),
            evidence=evidence or [],
        )


def _query(url: str) -> list[tuple[str, str]]:
    return parse_qsl(urlsplit(url).query, keep_blank_values=True)


def _looks_like_url(value: str) -> bool:
    return value.startswith(("http://", "https://")) or (value.startswith("/") and "?" in value)


def _same_request(url: str, other: str) -> bool:
    a, b = urlsplit(url), urlsplit(other)
    return a.path.rstrip("/") == b.path.rstrip("/") and sorted(parse_qsl(a.query)) == sorted(parse_qsl(b.query))


def _changed_params(url: str, next_url: str) -> list[str]:
    current = dict(_query(url))
    upcoming = dict(_query(next_url))
    return sorted(name for name, value in upcoming.items() if current.get(name) != value)


def _frequency(parameters: list[str], header: str | None, exchanges: list[Exchange]) -> float:
    if not exchanges:
        return 0.0
    hits = 0
    for exchange in exchanges:
        names = {name for name, _ in _query(exchange.url)}
        if any(p in names for p in parameters) or (header and exchange.response_header(header)):
            hits += 1
    return hits / len(exchanges)


def _walk(value: Any, depth: int) -> Iterator[tuple[str, Any]]:
    """Yield (key, value) pairs of nested objects down to `depth` levels."""
    if depth < 0:
        return
    if isinstance(value, dict):
        for k, v in value.items():
            yield str(k), v
            yield from _walk(v, depth - 1)
    elif isinstance(value, list):
        # Pagination metadata lives next to the items, not inside them
        return


def _varying_params(exchanges: list[Exchange]) -> set[str]:
    """Query parameters that take more than one value across the exchanges."""
    values: dict[str, set[str]] = defaultdict(set)
    for exchange in exchanges:
        for name, value in _query(exchange.url):
            values[name].add(value)
    return {name for name, seen in values.items() if len(seen) > 1}
