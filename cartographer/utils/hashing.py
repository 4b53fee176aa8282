"""
Hashing Utilities - Canonical serialization and fingerprints for spec documents.
"""

import hashlib
import json
from typing import Any


def canonical_json(data: Any) -> str:
    """
    Serialize data so that equal structures give equal strings.

    Args:
        data: JSON-compatible data

    Returns:
        Compact JSON with sorted keys
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute_fingerprint(data: Any) -> str:
    """
    SHA-256 of the canonical form of data.
    Key insertion order does not affect the result.

    Args:
        data: JSON-compatible data

    Returns:
        Hex digest
    """
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()