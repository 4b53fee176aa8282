"""Capture module - traffic loading and relevance filtering."""

from .har import HarLoader, entry_to_exchange
from .filters import is_relevant_api_call, filter_api_calls

__all__ = [
    "HarLoader",
    "entry_to_exchange",
    "is_relevant_api_call",
    "filter_api_calls",
]
