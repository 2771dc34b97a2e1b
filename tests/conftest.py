"""
tests/conftest.py -- Shared test fixtures for Gatekeeper tests.

This module provides:
  - settings: an explicit Settings instance (dev mode, cheap bcrypt)
  - store: an isolated in-memory CredentialStore
  - cache: a private in-memory MetadataCache
  - make_store(): named shared-memory stores for TestClient tests
  - rsa_key / jwks_document / mint_id_token(): authlib helpers for OIDC tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
wherever TestClient is involved, because it runs sync dependencies in a
thread pool. Plain :memory: DBs are per-connection and would present a blank
schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import so
get_settings() auto-generates SECRET_KEY in dev mode rather than raising
ValueError, and so the module-level dummy hash is cheap to compute.
"""

from __future__ import annotations

import os
import time
from collections.abc import Generator
from typing import Any, Optional

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from authlib.jose import JsonWebKey, JsonWebToken

from auth.store import CredentialStore
from cache.store import MetadataCache
from core.config import Settings

TEST_SECRET_KEY = "gatekeeper-test-secret-key-0123456789abcdef"
ISSUER = "https://idp.example.com"
CLIENT_ID = "gatekeeper-client"
KEY_ID = "test-key-1"


def make_settings(**overrides: Any) -> Settings:
    """Settings with test defaults; keyword arguments override individual fields."""
    values: dict[str, Any] = {"debug": True, "secret_key": TEST_SECRET_KEY, "bcrypt_rounds": 4}
    values.update(overrides)
    return Settings(**values)


def make_store(name: str, settings: Optional[Settings] = None) -> CredentialStore:
    """Create a named shared-memory CredentialStore.

    Args:
        name: Unique string so test modules don't share state.
    """
    url = f"sqlite:///file:test_gatekeeper_{name}?mode=memory&cache=shared&uri=true"
    return CredentialStore(db_url=url, settings=settings or make_settings())


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- a fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store(settings: Settings) -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:", settings=settings)
    yield s
    s.close()


@pytest.fixture
def cache() -> Generator[MetadataCache, None, None]:
    c = MetadataCache()
    yield c
    c.close()


# ---------------------------------------------------------------------------
# OIDC helpers (authlib JOSE)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_key():
    """One RSA signing key per session; generating 2048-bit keys is slow."""
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": KEY_ID})


@pytest.fixture(scope="session")
def jwks_document(rsa_key) -> dict:
    return {"keys": [rsa_key.as_dict(is_private=False)]}


def mint_id_token(key, claims: dict, alg: str = "RS256") -> str:
    """Sign claims as a compact JWS. iss/aud/iat/exp get test defaults unless given.

    authlib copies the key's kid into the header.
    """
    now = int(time.time())
    payload = {"iss": ISSUER, "aud": CLIENT_ID, "iat": now, "exp": now + 300}
    payload.update(claims)
    token = JsonWebToken([alg]).encode({"alg": alg}, payload, key)
    return token.decode("ascii") if isinstance(token, bytes) else token
