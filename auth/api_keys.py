"""
auth/api_keys.py -- API key generation, decoding and authentication.

Key format:
    <prefix><public id: 5 chars><secret: 32 chars>      e.g. gk_Ab3dZ<32 chars>

  The public id is an index: the store finds the record in O(1) by public id,
  then compares SHA3-256(secret) with the stored digest in constant time. The
  secret itself is never persisted.

  The prefix is optional on input. Deployments that relabel keys externally
  strip it; set API_KEY_PREFIX_REQUIRED=true to refuse unprefixed keys.

Legacy format:
    <prefix><key body: 32 chars>

  Keys issued before public ids existed have no index segment. They are
  matched solely by the SHA3-256 digest of the whole body.

Format decision table (body = raw key with the prefix removed, if present):

    prefix present | prefix required | len(body) | result
    ---------------+-----------------+-----------+----------
    yes            | any             | 37        | current
    yes            | any             | 32        | legacy
    no             | yes             | any       | malformed
    no             | no              | 37        | current
    no             | no              | 32        | legacy
    any            | any             | other     | malformed

The generation alphabet contains no "_", so a generated body can never be
mistaken for a prefix.

Layer rule: imports auth.errors, auth.models and core/ only (plus sqlalchemy.exc for
repository errors); the store is passed in.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import string
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthenticationError, CauseType, MalformedApiKeyError
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import ApiKey
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.api_keys")

PUBLIC_ID_LENGTH = 5
SECRET_LENGTH = 32
LEGACY_KEY_LENGTH = 32

# URL-safe and free of the prefix separator.
_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class GeneratedApiKey:
    """A freshly generated key. key is the only copy of the plaintext secret."""

    key: str
    public_id: str
    secret: str

    @property
    def secret_hash(self) -> str:
        return hash_secret(self.secret)


@dataclass(frozen=True)
class DecodedApiKey:
    public_id: Optional[str]
    secret: str
    secret_hash: str
    legacy: bool = False


def hash_secret(secret: str) -> str:
    """Return SHA3-256(secret) as lowercase hex.

    A fast digest is sufficient here: secrets carry ~190 bits of entropy, so
    bcrypt's work factor buys nothing, and lookups stay O(1).
    """
    return hashlib.sha3_256(secret.encode("utf-8")).hexdigest()


def _random_chars(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate(prefix: Optional[str] = None) -> GeneratedApiKey:
    """Generate a new key with a random public id and secret."""
    if prefix is None:
        prefix = get_settings().api_key_prefix
    public_id = _random_chars(PUBLIC_ID_LENGTH)
    secret = _random_chars(SECRET_LENGTH)
    return GeneratedApiKey(key=f"{prefix}{public_id}{secret}", public_id=public_id, secret=secret)


def mask(public_id: Optional[str], prefix: str) -> str:
    """Display form of a key: prefix and public id, secret replaced by asterisks."""
    return f"{prefix}{public_id or ''}{'*' * SECRET_LENGTH}"


def decode(raw_key: Optional[str], prefix: Optional[str] = None, prefix_required: Optional[bool] = None) -> DecodedApiKey:
    """Split a raw key into public id and secret and hash the secret.

    Raises:
        MalformedApiKeyError: missing key, missing mandated prefix, or a body
            that is neither the current nor the legacy length.
    """
    if prefix is None or prefix_required is None:
        settings = get_settings()
        prefix = settings.api_key_prefix if prefix is None else prefix
        prefix_required = settings.api_key_prefix_required if prefix_required is None else prefix_required
    if not raw_key:
        raise MalformedApiKeyError("Provided API key is empty")

    if prefix and raw_key.startswith(prefix):
        body = raw_key[len(prefix) :]
    elif prefix and prefix_required:
        raise MalformedApiKeyError("Provided API key does not carry the required prefix")
    else:
        body = raw_key

    if len(body) == PUBLIC_ID_LENGTH + SECRET_LENGTH:
        public_id, secret = body[:PUBLIC_ID_LENGTH], body[PUBLIC_ID_LENGTH:]
        return DecodedApiKey(public_id=public_id, secret=secret, secret_hash=hash_secret(secret))
    if len(body) == LEGACY_KEY_LENGTH:
        return DecodedApiKey(public_id=None, secret=body, secret_hash=hash_secret(body), legacy=True)
    raise MalformedApiKeyError(
        f"Expected a key body of {PUBLIC_ID_LENGTH + SECRET_LENGTH} or {LEGACY_KEY_LENGTH} characters, got {len(body)}"
    )


def matches(decoded: DecodedApiKey, stored: ApiKey) -> bool:
    """Constant-time comparison of a decoded key against its stored record."""
    if decoded.legacy != stored.legacy:
        return False
    return hmac.compare_digest(decoded.secret_hash.encode("ascii"), stored.secret_hash.encode("ascii"))


class ApiKeyAuthenticationService:
    """Authenticates the raw key carried by the API-key header."""

    def __init__(self, store: CredentialStore, raw_key: Optional[str], settings: Optional[Settings] = None) -> None:
        self.store = store
        self.raw_key = raw_key
        self.settings = settings or get_settings()

    def is_specified(self) -> bool:
        return self.raw_key is not None

    def authenticate(self) -> ApiKey:
        try:
            decoded = decode(self.raw_key, self.settings.api_key_prefix, self.settings.api_key_prefix_required)
        except MalformedApiKeyError as e:
            logger.debug("Format of the provided API key is invalid: %s", e)
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS) from e

        try:
            if decoded.legacy:
                stored = self.store.get_legacy_api_key_by_digest(decoded.secret_hash)
            else:
                stored = self.store.get_api_key_by_public_id(decoded.public_id)
            if stored is None:
                logger.debug("No API key found for public ID %s", decoded.public_id or "<legacy>")
                raise AuthenticationError(CauseType.INVALID_CREDENTIALS)
            if not matches(decoded, stored):
                logger.debug("API key secret hashes do not match")
                raise AuthenticationError(CauseType.INVALID_CREDENTIALS)
            self.store.update_api_key_last_used(stored.id)
        except SQLAlchemyError as e:
            logger.error("API key lookup failed: %s", e)
            raise AuthenticationError(CauseType.OTHER) from e
        return stored
