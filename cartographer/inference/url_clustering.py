"""
URL Clustering - Groups exchanges into endpoint templates.
Identifies path parameters by how identifier-like segments vary across paths.
"""

import logging
import math
import re
from collections import defaultdict
from typing import Any, Iterable
from urllib.parse import parse_qsl, unquote, urlsplit

from ..core.config import Settings, settings as default_settings
from ..core.errors import MalformedExchange
from ..core.models import (
    DiscoveryWarning,
    EndpointCluster,
    EndpointTemplate,
    Exchange,
    ParameterLocation,
    ParameterObservation,
    UnclassifiedExchange,
    WarningKind,
)


logger = logging.getLogger(__name__)

UUID_RE = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE
)
HEX_RE = re.compile(r'^[0-9a-f]{16,}$', re.IGNORECASE)
TOKEN_RE = re.compile(r'^[A-Za-z0-9_\-]{8,}$')
INTEGER_RE = re.compile(r'^-?\d+$')
NUMBER_RE = re.compile(r'^-?\d+\.\d+([eE][-+]?\d+)?$')

NULL_LITERALS = {"", "null", "none", "undefined", "nil"}

# Header values that must never be remembered
SENSITIVE_HEADERS = {
    "authorization", "proxy-authorization", "cookie", "set-cookie",
    "x-api-key", "api-key", "apikey", "x-auth-token", "x-access-token",
    "x-csrf-token", "x-xsrf-token",
}

# Context marker for an identifier-like neighbour segment
WILDCARD = "*"

ContextKey = tuple[int, int, tuple[str, ...]]


def is_identifier_like(segment: str) -> bool:
    """
    Whether a path segment looks like an identifier rather than a resource name.

    Args:
        segment: Decoded path segment

    Returns:
        True for numeric ids, UUIDs, long hex strings and opaque tokens
    """
    if segment.isdigit():
        return True

    if UUID_RE.match(segment):
        return True

    # MongoDB ObjectId, hashes
    if HEX_RE.match(segment):
        return True

    # Opaque tokens mix letters and digits and look random
    if TOKEN_RE.match(segment):
        has_digit = any(c.isdigit() for c in segment)
        has_alpha = any(c.isalpha() for c in segment)
        if has_digit and has_alpha and shannon_entropy(segment) > 3.0:
            return True

    return False


def shannon_entropy(text: str) -> float:
    """
    Calculate Shannon entropy of text.
    Higher entropy = more random/dynamic.
    """
    if not text:
        return 0.0

    freq: dict[str, int] = {}
    for char in text:
        freq[char] = freq.get(char, 0) + 1

    length = len(text)
    entropy = 0.0
    for count in freq.values():
        prob = count / length
        entropy -= prob * math.log2(prob)

    return entropy


def infer_value_type(value: str) -> str | None:
    """Primitive type of a literal parameter value, None for null-like values."""
    if value.strip().lower() in NULL_LITERALS:
        return None
    if INTEGER_RE.match(value):
        return "integer"
    if NUMBER_RE.match(value):
        return "number"
    if value.lower() in ("true", "false"):
        return "boolean"
    return "string"


def join_types(left: str | None, right: str | None) -> str | None:
    """Least general primitive type covering both inputs."""
    if left is None:
        return right
    if right is None or left == right:
        return left
    if {left, right} == {"integer", "number"}:
        return "number"
    return "string"


def merge_observation(
    target: ParameterObservation,
    other: ParameterObservation,
    cap: int
) -> None:
    """
    Fold one observation into another.
    Keeps the smallest `cap` values so the result does not depend on merge order.
    """
    target.inferred_type = join_types(target.inferred_type, other.inferred_type)
    target.values = sorted(set(target.values) | set(other.values))[:cap]
    target.nullable = target.nullable or other.nullable
    target.count += other.count


def _singular(word: str) -> str:
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith("s") and not word.endswith("ss") and len(word) > 1:
        return word[:-1]
    return word


class EndpointModelBuilder:
    """
    Clusters exchanges into endpoint templates.

    Exchanges must be fed in arrival order. A template may be merged into a
    more general one when a later exchange reveals that one of its literal
    segments is really a parameter; all exchanges seen so far are re-keyed.
    """

    def __init__(self, config: Settings | None = None):
        """
        Initialize builder.

        Args:
            config: Settings override (uses global settings if not provided)
        """
        self.config = config or default_settings
        self.templates: dict[tuple[str, str], EndpointTemplate] = {}
        self.unclassified: list[UnclassifiedExchange] = []
        self.warnings: list[DiscoveryWarning] = []

        self._exchanges: dict[tuple[str, str], list[tuple[int, Exchange]]] = defaultdict(list)
        self._position_values: dict[ContextKey, set[str]] = defaultdict(set)
        self._sequence = 0

    # =========================================================================
    # Ingestion
    # =========================================================================

    def add(self, exchange: Exchange) -> EndpointTemplate | None:
        """
        Add one exchange and return the template it now belongs to.

        Args:
            exchange: Captured exchange

        Returns:
            The template, or None if the exchange was recorded as unclassified
        """
        try:
            origin, segments, query = self._parse(exchange)
        except MalformedExchange as e:
            self._record_unclassified(exchange, str(e))
            return None

        self._sequence += 1

        newly_parameterized = self._index_segments(segments)

        path = self._normalize(segments)
        key = (path, exchange.method.upper())
        template = self.templates.get(key)
        if template is None:
            template = EndpointTemplate(method=key[1], path=path)
            self.templates[key] = template
            logger.debug("New endpoint template %s", template.endpoint_key)

        self._observe(template, exchange, origin, segments, query)
        self._exchanges[key].append((self._sequence, exchange))

        if newly_parameterized:
            key = self._rekey(key)

        return self.templates[key]

    def add_all(self, exchanges: Iterable[Exchange]) -> int:
        """
        Add exchanges in order.

        Returns:
            Number of exchanges that were clustered
        """
        clustered = 0
        for exchange in exchanges:
            if self.add(exchange) is not None:
                clustered += 1
        return clustered

    def reset(self) -> None:
        """Discard all session state."""
        self.templates.clear()
        self.unclassified.clear()
        self.warnings.clear()
        self._exchanges.clear()
        self._position_values.clear()
        self._sequence = 0

    def _parse(self, exchange: Exchange) -> tuple[str, list[str], str]:
        """Split an exchange URL into origin, decoded path segments and query."""
        if not exchange.method or not exchange.method.strip():
            raise MalformedExchange("missing HTTP method", exchange.id)

        try:
            parts = urlsplit(exchange.url)
            # Accessing port validates it
            parts.port
        except ValueError as e:
            raise MalformedExchange(f"unparseable URL {exchange.url!r}: {e}", exchange.id)

        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise MalformedExchange(f"not an absolute http(s) URL: {exchange.url!r}", exchange.id)

        segments = [unquote(s) for s in parts.path.split('/') if s]
        return f"{parts.scheme}://{parts.netloc.lower()}", segments, parts.query

    def _record_unclassified(self, exchange: Exchange, reason: str) -> None:
        logger.warning("Unclassified exchange %s: %s", exchange.id, reason)
        self.unclassified.append(UnclassifiedExchange(exchange=exchange, reason=reason))
        self.warnings.append(DiscoveryWarning(
            kind=WarningKind.MALFORMED_EXCHANGE,
            message=reason,
            exchange_id=exchange.id,
        ))

    # =========================================================================
    # Path Normalization
    # =========================================================================

    def _context(self, segments: list[str], position: int) -> ContextKey:
        """Surrounding literal segments of a position, identifiers wildcarded."""
        surrounding = tuple(
            WILDCARD if (j == position or is_identifier_like(s)) else s
            for j, s in enumerate(segments)
        )
        return (len(segments), position, surrounding)

    def _index_segments(self, segments: list[str]) -> bool:
        """
        Record identifier-like values per position.

        Returns:
            True if some position became parameterized by this path
        """
        changed = False
        for i, segment in enumerate(segments):
            if not is_identifier_like(segment):
                continue
            values = self._position_values[self._context(segments, i)]
            if segment not in values:
                values.add(segment)
                if len(values) == 2:
                    changed = True
        return changed

    def _is_parameter(self, segments: list[str], position: int) -> bool:
        if not is_identifier_like(segments[position]):
            return False
        return len(self._position_values.get(self._context(segments, position), ())) >= 2

    def _normalize(self, segments: list[str]) -> str:
        """
        Convert decoded segments to a path pattern.

        Args:
            segments: Decoded path segments

        Returns:
            Pattern such as "/users/{id}" or "/users/{user_id}/posts/{post_id}"
        """
        params = [i for i in range(len(segments)) if self._is_parameter(segments, i)]
        names = self._parameter_names(segments, params)

        pattern = [
            "{" + names[i] + "}" if i in names else segment
            for i, segment in enumerate(segments)
        ]
        return '/' + '/'.join(pattern)

    def _parameter_names(self, segments: list[str], params: list[int]) -> dict[int, str]:
        if len(params) == 1:
            return {params[0]: "id"}

        names: dict[int, str] = {}
        used: set[str] = set()
        for i in params:
            previous = next(
                (segments[j] for j in range(i - 1, -1, -1) if j not in params),
                None
            )
            base = "param"
            if previous:
                base = re.sub(r'\W+', '_', _singular(previous)).strip('_').lower() + "_id"
            name = base
            suffix = 2
            while name in used:
                name = f"{base}{suffix}"
                suffix += 1
            used.add(name)
            names[i] = name
        return names

    def _rekey(self, current: tuple[str, str]) -> tuple[str, str]:
        """
        Merge templates whose pattern became more general.

        Args:
            current: Key of the template that triggered the re-key

        Returns:
            The (possibly new) key of that template
        """
        for key in sorted(self.templates):
            template = self.templates.get(key)
            if template is None:
                continue

            # All raw paths of a template normalize identically
            representative = min(template.raw_paths)
            new_path = self._normalize([s for s in representative.split('/') if s])
            if new_path == template.path:
                continue

            new_key = (new_path, template.method)
            del self.templates[key]
            moved = self._exchanges.pop(key, [])

            target = self.templates.get(new_key)
            if target is None:
                template.path = new_path
                self.templates[new_key] = template
            else:
                self._merge_templates(target, template)

            self._exchanges[new_key] = sorted(
                self._exchanges[new_key] + moved,
                key=lambda item: item[0]
            )
            logger.info("Merged template %s %s into %s", template.method, key[0], new_path)

            if key == current:
                current = new_key

        return current

    def _merge_templates(self, target: EndpointTemplate, source: EndpointTemplate) -> None:
        cap = self.config.max_observed_values
        for attr in ("query_params", "header_params"):
            target_params = getattr(target, attr)
            for name, observation in getattr(source, attr).items():
                if name in target_params:
                    merge_observation(target_params[name], observation, cap)
                else:
                    target_params[name] = observation
        target.exchange_count += source.exchange_count
        target.origins |= source.origins
        target.raw_paths |= source.raw_paths

    # =========================================================================
    # Parameter Observation
    # =========================================================================

    def _observe(
        self,
        template: EndpointTemplate,
        exchange: Exchange,
        origin: str,
        segments: list[str],
        query: str
    ) -> None:
        template.exchange_count += 1
        template.origins.add(origin)
        template.raw_paths.add('/' + '/'.join(segments))

        query_values: dict[str, list[str]] = defaultdict(list)
        for name, value in parse_qsl(query, keep_blank_values=True):
            query_values[name].append(value)
        for name, values in query_values.items():
            self._record(template.query_params, name, ParameterLocation.QUERY, values)

        for name, value in exchange.request_headers.items():
            name = name.lower()
            # HTTP/2 pseudo-headers from HAR exports
            if name.startswith(':'):
                continue
            values = [] if name in SENSITIVE_HEADERS else [value]
            self._record(template.header_params, name, ParameterLocation.HEADER, values)

    def _record(
        self,
        params: dict[str, ParameterObservation],
        name: str,
        location: ParameterLocation,
        values: list[str]
    ) -> None:
        observation = ParameterObservation(name=name, location=location, count=1)
        for value in values:
            value_type = infer_value_type(value)
            if value_type is None:
                observation.nullable = True
            observation.inferred_type = join_types(observation.inferred_type, value_type)
        observation.values = sorted(set(values))[:self.config.max_observed_values]

        if name in params:
            merge_observation(params[name], observation, self.config.max_observed_values)
        else:
            params[name] = observation

    def _path_params(self, template: EndpointTemplate, exchanges: list[Exchange]) -> dict[str, ParameterObservation]:
        """Derive path parameter observations from the raw paths of a cluster."""
        pattern = [s for s in template.path.split('/') if s]
        params: dict[str, ParameterObservation] = {}
        for exchange in exchanges:
            segments = [unquote(s) for s in urlsplit(exchange.url).path.split('/') if s]
            for placeholder, value in zip(pattern, segments):
                if not (placeholder.startswith('{') and placeholder.endswith('}')):
                    continue
                self._record(params, placeholder[1:-1], ParameterLocation.PATH, [value])
        return params

    # =========================================================================
    # Snapshots
    # =========================================================================

    def clusters(self) -> list[EndpointCluster]:
        """
        Frozen snapshots of every template with its exchanges.

        Returns:
            Clusters sorted by (path, method); exchanges ordered by timestamp
        """
        return [self.get_cluster(key) for key in sorted(self.templates)]

    def get_cluster(self, key: tuple[str, str]) -> EndpointCluster:
        """Snapshot one template."""
        template = self.templates[key]
        ordered = sorted(
            self._exchanges.get(key, []),
            key=lambda item: (item[1].timestamp, item[0])
        )
        exchanges = [exchange for _, exchange in ordered]

        snapshot = template.model_copy(deep=True)
        snapshot.path_params = self._path_params(template, exchanges)
        return EndpointCluster(template=snapshot, exchanges=tuple(exchanges))

    def get_statistics(self) -> dict[str, Any]:
        """
        Get clustering statistics.

        Returns:
            Statistics dictionary
        """
        return {
            "total_templates": len(self.templates),
            "total_exchanges": sum(t.exchange_count for t in self.templates.values()),
            "unclassified": len(self.unclassified),
            "largest_cluster": max(
                (t.exchange_count for t in self.templates.values()),
                default=0
            ),
            "templates": [
                {"endpoint": t.endpoint_key, "count": t.exchange_count}
                for t in sorted(
                    self.templates.values(),
                    key=lambda t: (-t.exchange_count, t.key)
                )[:20]
            ]
        }
