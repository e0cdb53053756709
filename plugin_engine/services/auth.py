# =============================================================================
# Auth Service — API Key Generation & Hashing
# =============================================================================
#
# Pure functions; used by the API auth dependency and by tests that seed keys.
#
# DESIGN DECISION: SHA-256 (not bcrypt). Keys are 256-bit random tokens, so a
# fast deterministic digest is safe and allows a direct indexed lookup.
# =============================================================================

from __future__ import annotations

import hashlib
import secrets


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, key_prefix, key_hash). The raw key is shown to its owner
        once; only the prefix and hash are stored.
    """
    raw_key = f"pk-{secrets.token_hex(32)}"
    return raw_key, raw_key[:8], hash_api_key(raw_key)


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hex digest of an API key."""
    return hashlib.sha256(raw_key.encode()).hexdigest()
