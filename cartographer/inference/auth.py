"""
Auth Classifier - Infers how an endpoint authenticates its callers.
Compares credentials carried by successful calls with a 401/403 baseline and
binds session-based endpoints to an observed login flow.
"""

import re
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlsplit

from ..core.models import AuthKind, AuthPattern, EndpointCluster, Exchange


API_KEY_HEADERS = {
    "x-api-key", "api-key", "apikey", "x-apikey", "x-auth-token",
    "x-access-token", "x-app-key", "x-client-key",
}
API_KEY_PARAMS = {"api_key", "apikey", "key", "access_token", "token", "auth_token"}

# Cookie names that carry a session or token (csrf cookies are not credentials)
SESSION_COOKIE_RE = re.compile(
    r'sess|sid$|^token$|jwt|access_token|id_token|auth|PHPSESSID|JSESSIONID|connect\.sid',
    re.IGNORECASE
)
CSRF_COOKIE_RE = re.compile(r'csrf|xsrf', re.IGNORECASE)

PASSWORD_FIELD_RE = re.compile(r'password|^pass$|^passwd$|^pwd$|^passcode$', re.IGNORECASE)

KIND_PRECEDENCE = (
    AuthKind.BEARER_TOKEN,
    AuthKind.HTTP_BASIC,
    AuthKind.API_KEY,
    AuthKind.COOKIE_SESSION,
)
# Credentials a login endpoint can hand out
LOGIN_ISSUED_KINDS = (AuthKind.COOKIE_SESSION, AuthKind.BEARER_TOKEN)


@dataclass(frozen=True)
class Credential:
    """One credential carried by a request."""
    kind: AuthKind
    location: str  # header, cookie, query
    name: str


def is_login_cluster(cluster: EndpointCluster) -> bool:
    """
    Whether a cluster looks like a login form or login API.

    Args:
        cluster: Endpoint cluster

    Returns:
        True for POST endpoints whose request body has a password-like field
    """
    if cluster.template.method != "POST":
        return False
    return any(_has_password_field(exchange) for exchange in cluster.exchanges)


def _has_password_field(exchange: Exchange) -> bool:
    body = exchange.request_body
    if not body:
        return False
    try:
        data = exchange.request_json()
    except ValueError:
        # Form-encoded login
        return any(PASSWORD_FIELD_RE.search(name) for name, _ in parse_qsl(body))
    return _dict_has_password(data, depth=2)


def _dict_has_password(data: object, depth: int) -> bool:
    if depth < 0 or not isinstance(data, dict):
        return False
    for key, value in data.items():
        if PASSWORD_FIELD_RE.search(str(key)):
            return True
        if _dict_has_password(value, depth - 1):
            return True
    return False


class AuthClassifier:
    """
    Classifies the authentication requirements of one endpoint cluster.
    Stateless: login clusters are passed in, not remembered.
    """

    def classify(
        self,
        cluster: EndpointCluster,
        login_clusters: list[EndpointCluster] | None = None
    ) -> AuthPattern:
        """
        Infer the auth pattern of a cluster.

        Args:
            cluster: Frozen endpoint cluster
            login_clusters: Login-shaped clusters seen in the same session

        Returns:
            Auth pattern (kind NONE when no credential is required)
        """
        login_clusters = login_clusters or []

        if is_login_cluster(cluster):
            return AuthPattern(
                kind=AuthKind.FORM_LOGIN,
                login_endpoint=cluster.template.endpoint_key,
                confidence=1.0 if any(e.is_success for e in cluster.exchanges) else 0.7,
            )

        exchanges = list(cluster.exchanges)
        successes = [e for e in exchanges if e.is_success]
        baseline = [e for e in exchanges if e.status_code in (401, 403)]

        if not successes:
            # Nothing proves which credential works
            candidates = self._common_credentials(exchanges)
            return self._build(candidates, cluster, login_clusters, 0.3, False)

        candidates = self._common_credentials(successes)
        if not candidates:
            return AuthPattern(kind=AuthKind.NONE, confidence=0.7 if not baseline else 0.5)

        if baseline:
            confirmed = [
                c for c in candidates
                if self._discriminates(c, successes, baseline)
            ]
            if confirmed:
                return self._build(confirmed, cluster, login_clusters, 1.0, True)

        return self._build(candidates, cluster, login_clusters, 0.7, False)

    # =========================================================================
    # Credential Extraction
    # =========================================================================

    def _credentials(self, exchange: Exchange) -> dict[Credential, str]:
        """Credentials carried by one request, with their values."""
        found: dict[Credential, str] = {}

        authorization = exchange.request_header("authorization")
        if authorization:
            scheme = authorization.split(" ", 1)[0].lower()
            if scheme == "bearer":
                kind = AuthKind.BEARER_TOKEN
            elif scheme == "basic":
                kind = AuthKind.HTTP_BASIC
            else:
                kind = AuthKind.API_KEY
            found[Credential(kind, "header", "authorization")] = authorization

        for name, value in exchange.request_headers.items():
            if name.lower() in API_KEY_HEADERS:
                found[Credential(AuthKind.API_KEY, "header", name.lower())] = value

        for name, value in parse_qsl(urlsplit(exchange.url).query):
            if name.lower() in API_KEY_PARAMS:
                found[Credential(AuthKind.API_KEY, "query", name)] = value

        for name, value in exchange.cookies.items():
            if CSRF_COOKIE_RE.search(name):
                continue
            if SESSION_COOKIE_RE.search(name):
                found[Credential(AuthKind.COOKIE_SESSION, "cookie", name)] = value

        return found

    def _common_credentials(self, exchanges: list[Exchange]) -> list[Credential]:
        """Credentials present on every exchange."""
        if not exchanges:
            return []
        common: set[Credential] | None = None
        for exchange in exchanges:
            present = set(self._credentials(exchange))
            common = present if common is None else common & present
        return sorted(common or (), key=lambda c: (c.location, c.name))

    def _discriminates(
        self,
        credential: Credential,
        successes: list[Exchange],
        baseline: list[Exchange]
    ) -> bool:
        """A credential is required if the failing calls lack it or carry another value."""
        good_values = {self._credentials(e)[credential] for e in successes}
        for exchange in baseline:
            value = self._credentials(exchange).get(credential)
            if value is not None and value in good_values:
                return False
        return True

    # =========================================================================
    # Pattern Assembly
    # =========================================================================

    def _build(
        self,
        credentials: list[Credential],
        cluster: EndpointCluster,
        login_clusters: list[EndpointCluster],
        confidence: float,
        confirmed: bool
    ) -> AuthPattern:
        if not credentials:
            return AuthPattern(kind=AuthKind.NONE, confidence=confidence)

        kinds = {c.kind for c in credentials}
        kind = next(k for k in KIND_PRECEDENCE if k in kinds)

        pattern = AuthPattern(
            kind=kind,
            required_headers=sorted(c.name for c in credentials if c.location == "header"),
            required_cookies=sorted(c.name for c in credentials if c.location == "cookie"),
            required_query=sorted(c.name for c in credentials if c.location == "query"),
            confidence=confidence,
            baseline_confirmed=confirmed,
        )

        login = self._bind_login(pattern, cluster, login_clusters)
        if login:
            pattern = pattern.model_copy(update={"login_endpoint": login})
        return pattern

    def _bind_login(
        self,
        pattern: AuthPattern,
        cluster: EndpointCluster,
        login_clusters: list[EndpointCluster]
    ) -> str | None:
        """Pick the login endpoint that most plausibly issued this credential."""
        if pattern.kind not in LOGIN_ISSUED_KINDS:
            return None

        candidates = sorted(
            (c for c in login_clusters if c.key != cluster.key),
            key=lambda c: c.key
        )
        if not candidates:
            return None

        for login in candidates:
            if self._issued_by(pattern, cluster, login):
                return login.template.endpoint_key
        return candidates[0].template.endpoint_key

    def _issued_by(
        self,
        pattern: AuthPattern,
        cluster: EndpointCluster,
        login: EndpointCluster
    ) -> bool:
        issued_cookies = set().union(*(e.set_cookie_names for e in login.exchanges))
        if issued_cookies & set(pattern.required_cookies):
            return True

        if pattern.kind == AuthKind.BEARER_TOKEN:
            tokens = {
                (e.request_header("authorization") or "").split(" ", 1)[-1]
                for e in cluster.exchanges
                if e.is_success
            }
            for exchange in login.exchanges:
                body = exchange.response_body or ""
                if any(token and token in body for token in tokens):
                    return True
        return False
