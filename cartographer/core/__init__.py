"""Core module - configuration, models, errors, and the discovery session."""

from .config import Settings, settings
from .errors import DiscoveryError, MalformedExchange, SessionAborted, SpecStoreError
from .models import (
    Exchange,
    EndpointTemplate,
    EndpointCluster,
    PaginationPattern,
    AuthPattern,
    AntiBotSignal,
    BackoffPolicy,
    InferredSchema,
    EndpointEntry,
    ApiSpecVersion,
    SpecChangelog,
    DiscoveryWarning,
)

__all__ = [
    "Settings",
    "settings",
    "DiscoveryError",
    "MalformedExchange",
    "SessionAborted",
    "SpecStoreError",
    "Exchange",
    "EndpointTemplate",
    "EndpointCluster",
    "PaginationPattern",
    "AuthPattern",
    "AntiBotSignal",
    "BackoffPolicy",
    "InferredSchema",
    "EndpointEntry",
    "ApiSpecVersion",
    "SpecChangelog",
    "DiscoveryWarning",
]
