"""Memory module - persistent storage of spec versions."""

from .spec_store import SpecStore

__all__ = [
    "SpecStore",
]
