"""Shared fixtures for the cartographer test suite."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from cartographer.core.config import Settings
from cartographer.core.models import Exchange


BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
ORIGIN = "https://api.example.com"


def make_exchange(
    path: str,
    method: str = "GET",
    status: int = 200,
    body: Any = None,
    request_body: Any = None,
    request_headers: dict[str, str] | None = None,
    response_headers: dict[str, str] | None = None,
    seconds: float = 0,
    origin: str = ORIGIN,
) -> Exchange:
    """Build an exchange; dict/list bodies are encoded as JSON."""
    response_headers = dict(response_headers or {})
    request_headers = dict(request_headers or {})

    if body is not None and not isinstance(body, str):
        body = json.dumps(body)
        response_headers.setdefault("content-type", "application/json")
    if request_body is not None and not isinstance(request_body, str):
        request_body = json.dumps(request_body)
        request_headers.setdefault("content-type", "application/json")

    url = path if path.startswith(("http://", "https://")) or "://" in path else origin + path
    return Exchange(
        timestamp=BASE_TIME + timedelta(seconds=seconds),
        method=method,
        url=url,
        request_headers=request_headers,
        request_body=request_body,
        status_code=status,
        response_headers=response_headers,
        response_body=body,
    )


@pytest.fixture
def exchange():
    """Factory for exchanges."""
    return make_exchange


@pytest.fixture
def config() -> Settings:
    """Settings isolated from the environment's database."""
    return Settings(database_path=":memory:")
