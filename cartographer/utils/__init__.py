"""Utilities module - canonical hashing helpers."""

from .hashing import canonical_json, compute_fingerprint

__all__ = [
    "canonical_json",
    "compute_fingerprint",
]
