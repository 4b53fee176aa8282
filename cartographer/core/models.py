"""
Pydantic models for the API Cartographer pipeline.
Defines exchanges, endpoint templates, classifier outputs, schemas and spec versions.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator
from uuid import uuid4


# ==============================================================================
# Enumerations
# ==============================================================================

class ParameterLocation(str, Enum):
    """Where a parameter was observed."""
    PATH = "path"
    QUERY = "query"
    HEADER = "header"


class PaginationKind(str, Enum):
    """Pagination styles the classifier recognises."""
    CURSOR = "cursor"
    LINK_HEADER = "link_header"
    OFFSET_LIMIT = "offset_limit"
    PAGE_NUMBER = "page_number"
    VENDOR_SPECIFIC = "vendor_specific"


# Tie-break order when confidence and frequency are equal (first wins)
PAGINATION_PRIORITY: tuple[PaginationKind, ...] = (
    PaginationKind.CURSOR,
    PaginationKind.LINK_HEADER,
    PaginationKind.OFFSET_LIMIT,
    PaginationKind.PAGE_NUMBER,
    PaginationKind.VENDOR_SPECIFIC,
)


class AuthKind(str, Enum):
    """Authentication mechanisms the classifier recognises."""
    NONE = "none"
    COOKIE_SESSION = "cookie_session"
    BEARER_TOKEN = "bearer_token"
    API_KEY = "api_key"
    HTTP_BASIC = "http_basic"
    FORM_LOGIN = "form_login"


class BackoffStrategy(str, Enum):
    """Recommended retry spacing."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class WarningKind(str, Enum):
    """Non-fatal conditions recorded during a session."""
    MALFORMED_EXCHANGE = "malformed_exchange"
    AMBIGUOUS_PATTERN = "ambiguous_pattern"
    SCHEMA_CONFLICT = "schema_conflict"
    DIFF_BASELINE_MISSING = "diff_baseline_missing"


# ==============================================================================
# Captured Traffic
# ==============================================================================

class Exchange(BaseModel):
    """A captured request/response pair. Immutable once captured."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Request
    method: str
    url: str
    request_headers: dict[str, str] = Field(default_factory=dict)
    request_body: str | None = None

    # Response
    status_code: int
    response_headers: dict[str, str] = Field(default_factory=dict)
    response_body: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        # Naive timestamps are taken as UTC so captures from different sources sort together
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def request_header(self, name: str) -> str | None:
        """Case-insensitive request header lookup."""
        return _lookup(self.request_headers, name)

    def response_header(self, name: str) -> str | None:
        """Case-insensitive response header lookup."""
        return _lookup(self.response_headers, name)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def cookies(self) -> dict[str, str]:
        """Cookies sent with the request."""
        raw = self.request_header("cookie") or ""
        cookies: dict[str, str] = {}
        for part in raw.split(";"):
            name, sep, value = part.strip().partition("=")
            if sep and name:
                cookies[name] = value
        return cookies

    @property
    def set_cookie_names(self) -> set[str]:
        """Names of cookies set by the response."""
        names: set[str] = set()
        for header, value in self.response_headers.items():
            if header.lower() != "set-cookie":
                continue
            # HAR exports join repeated Set-Cookie headers with newlines
            for line in value.splitlines():
                name = line.split("=", 1)[0].strip()
                if name:
                    names.add(name)
        return names

    def request_json(self) -> Any:
        """Decode the request body as JSON. Raises ValueError if impossible."""
        return _decode_json(self.request_body)

    def response_json(self) -> Any:
        """Decode the response body as JSON. Raises ValueError if impossible."""
        return _decode_json(self.response_body)


def _lookup(headers: dict[str, str], name: str) -> str | None:
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _decode_json(body: str | None) -> Any:
    if body is None or not body.strip():
        raise ValueError("empty body")
    try:
        return json.loads(body)
    except RecursionError as e:
        raise ValueError("JSON nested too deeply to decode") from e


class UnclassifiedExchange(BaseModel):
    """An exchange that could not be clustered."""
    model_config = ConfigDict(frozen=True)

    exchange: Exchange
    reason: str


# ==============================================================================
# Endpoint Model
# ==============================================================================

class ParameterObservation(BaseModel):
    """What has been seen of one path, query or header parameter."""
    name: str
    location: ParameterLocation
    inferred_type: Literal["integer", "number", "boolean", "string"] | None = None
    values: list[str] = Field(default_factory=list)
    nullable: bool = False
    count: int = 0

    def frequency(self, cluster_size: int) -> float:
        """Share of the cluster's exchanges carrying this parameter."""
        if cluster_size <= 0:
            return 0.0
        return min(1.0, self.count / cluster_size)


class EndpointTemplate(BaseModel):
    """
    One logical operation: method plus normalized path plus parameter shape.
    Owned and mutated by the EndpointModelBuilder only.
    """
    method: str
    path: str
    path_params: dict[str, ParameterObservation] = Field(default_factory=dict)
    query_params: dict[str, ParameterObservation] = Field(default_factory=dict)
    header_params: dict[str, ParameterObservation] = Field(default_factory=dict)
    exchange_count: int = 0
    origins: set[str] = Field(default_factory=set)
    raw_paths: set[str] = Field(default_factory=set)

    @property
    def key(self) -> tuple[str, str]:
        return (self.path, self.method)

    @property
    def endpoint_key(self) -> str:
        return f"{self.method} {self.path}"


class EndpointCluster(BaseModel):
    """Frozen snapshot of a template and the exchanges it owns."""
    model_config = ConfigDict(frozen=True)

    template: EndpointTemplate
    exchanges: tuple[Exchange, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return self.template.key

    @property
    def size(self) -> int:
        return len(self.exchanges)


# ==============================================================================
# Classifier Outputs
# ==============================================================================

class PaginationPattern(BaseModel):
    """The dominant pagination style of one endpoint."""
    model_config = ConfigDict(frozen=True)

    kind: PaginationKind
    parameters: list[str] = Field(default_factory=list)
    header: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    frequency: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence: list[str] = Field(default_factory=list)
    low_confidence: bool = False


class AuthPattern(BaseModel):
    """How an endpoint authenticates its callers."""
    model_config = ConfigDict(frozen=True)

    kind: AuthKind
    required_headers: list[str] = Field(default_factory=list)
    required_cookies: list[str] = Field(default_factory=list)
    required_query: list[str] = Field(default_factory=list)
    login_endpoint: str | None = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    baseline_confirmed: bool = False


class BackoffPolicy(BaseModel):
    """Normalized retry recommendation."""
    model_config = ConfigDict(frozen=True)

    strategy: BackoffStrategy
    initial_delay_seconds: float
    multiplier: float = 1.0
    max_delay_seconds: float
    source: Literal["retry_after", "rate_limit_headers", "observed_timing", "default"]


class AntiBotSignal(BaseModel):
    """Bot-protection and rate-limit indicators seen on one endpoint."""
    model_config = ConfigDict(frozen=True)

    challenge_status_codes: list[int] = Field(default_factory=list)
    cdn_markers: list[str] = Field(default_factory=list)
    rate_limit_headers: dict[str, str] = Field(default_factory=dict)
    js_challenge: bool = False
    challenged: bool = False
    backoff: BackoffPolicy


# ==============================================================================
# Schemas
# ==============================================================================

class InferredSchema(BaseModel):
    """
    A JSON Schema inferred from samples.
    `definitions` is the arena of named shapes that `$ref` edges point into.
    """
    model_config = ConfigDict(frozen=True)

    root: dict[str, Any] = Field(default_factory=dict)
    definitions: dict[str, dict[str, Any]] = Field(default_factory=dict)
    sample_count: int = 0
    skipped_count: int = 0
    truncated_paths: list[str] = Field(default_factory=list)


# ==============================================================================
# Spec Versions
# ==============================================================================

class EndpointEntry(BaseModel):
    """Everything known about one endpoint when a spec is synthesized."""
    model_config = ConfigDict(frozen=True)

    template: EndpointTemplate
    pagination: PaginationPattern | None = None
    auth: AuthPattern | None = None
    anti_bot: AntiBotSignal | None = None
    response_schema: InferredSchema | None = None
    request_schema: InferredSchema | None = None
    status_codes: list[int] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return self.template.key


class ApiSpecVersion(BaseModel):
    """An immutable snapshot of the synthesized spec."""
    model_config = ConfigDict(frozen=True)

    target: str
    version: str
    created_at: datetime
    entries: tuple[EndpointEntry, ...] = ()
    document: dict[str, Any] = Field(default_factory=dict)
    fingerprint: str = ""

    def keys(self) -> list[tuple[str, str]]:
        return [entry.key for entry in self.entries]


class EndpointChange(BaseModel):
    """One changed endpoint and why it counts as changed."""
    model_config = ConfigDict(frozen=True)

    path: str
    method: str
    reasons: list[str] = Field(default_factory=list)


class SpecChangelog(BaseModel):
    """Structured result of comparing two spec versions."""
    model_config = ConfigDict(frozen=True)

    baseline_version: str | None = None
    current_version: str | None = None
    baseline_missing: bool = False
    added: list[tuple[str, str]] = Field(default_factory=list)
    removed: list[tuple[str, str]] = Field(default_factory=list)
    changed: list[EndpointChange] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


# ==============================================================================
# Session Records
# ==============================================================================

class DiscoveryWarning(BaseModel):
    """A non-fatal problem recorded during a session."""
    model_config = ConfigDict(frozen=True)

    kind: WarningKind
    message: str
    endpoint: str | None = None
    exchange_id: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class EndpointAnalysis(BaseModel):
    """Classifier and inferencer results for one cluster."""
    model_config = ConfigDict(frozen=True)

    cluster: EndpointCluster
    pagination: PaginationPattern | None = None
    auth: AuthPattern | None = None
    anti_bot: AntiBotSignal | None = None
    response_schema: InferredSchema | None = None
    request_schema: InferredSchema | None = None
    warnings: list[DiscoveryWarning] = Field(default_factory=list)
