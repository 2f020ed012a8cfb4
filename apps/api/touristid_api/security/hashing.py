"""Integrity reference for personal data."""

import hashlib
import json


def canonical_json(data) -> str:
    """Deterministic JSON representation (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def hash_personal_data(personal_data: dict) -> str:
    """SHA-256 hex digest of the canonical personal data."""
    return hashlib.sha256(canonical_json(personal_data).encode()).hexdigest()
