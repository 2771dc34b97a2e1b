"""
auth/passwords.py -- Password hashing for managed users.

Passwords are pre-hashed with SHA-512 and the base64 digest is fed to bcrypt.
bcrypt alone silently ignores input past 72 bytes (and bcrypt 4.x rejects it
outright); the pre-hash gives a fixed-length ASCII input so long passphrases
keep their entropy.

Using bcrypt directly rather than passlib: no compatibility shim, and the
cost factor is read from BCRYPT_ROUNDS.

[C1] _DUMMY_HASH is computed once at import so that the "unknown username"
path performs one real bcrypt verification, exactly like the "wrong password"
path.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import Optional

import bcrypt

from core.config import get_settings

logger = logging.getLogger("gatekeeper.auth.passwords")


def _prehash(plain: str) -> bytes:
    digest = hashlib.sha512(plain.encode("utf-8")).digest()
    # base64 keeps the input free of NUL bytes; bcrypt reads at most 72 bytes.
    return base64.b64encode(digest)[:72]


def hash_password(plain: str, rounds: Optional[int] = None) -> str:
    """Return a bcrypt digest of the given plaintext password."""
    rounds = rounds or get_settings().bcrypt_rounds
    return bcrypt.hashpw(_prehash(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    """Return True if the plaintext password matches the bcrypt digest.

    A missing or unparsable digest never matches.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_prehash(plain), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password digest is not a valid bcrypt hash")
        return False


def should_rehash(hashed: str, rounds: Optional[int] = None) -> bool:
    """True when the digest was produced with fewer rounds than are now configured."""
    rounds = rounds or get_settings().bcrypt_rounds
    try:
        stored_rounds = int(hashed.split("$")[2])
    except (IndexError, ValueError):
        return True
    return stored_rounds < rounds


# Timing equalization dummy hash [C1].
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")
