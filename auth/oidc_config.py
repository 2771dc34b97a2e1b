"""
auth/oidc_config.py -- Cached OIDC provider discovery and signing keys.

Both resolvers follow the same cache-then-fetch pattern against the shared
MetadataCache; they differ in how a failed fetch is reported:

  OidcConfigurationResolver.resolve()
      None when OIDC is disabled, no issuer is configured, or discovery fails
      for any reason (non-2xx, unparsable body, missing fields, issuer
      mismatch). "No configuration" simply makes the OIDC authenticator
      not-specified; it never fails a request by itself.

  JwkSetResolver.resolve(jwks_uri)
      Raises AuthenticationError(OTHER) on any failure. A configuration
      without its signing keys cannot validate a token.

Cold-cache races may fetch twice; the last writer wins, and each put is
atomic, so a reader never sees a half-written document.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Callable, Optional

import requests
from authlib.jose import JsonWebKey, KeySet

from auth.errors import AuthenticationError, CauseType
from core.config import get_settings
from core.fetcher import fetch as _default_fetch

if TYPE_CHECKING:
    from cache.store import MetadataCache
    from core.config import Settings
    from core.fetcher import HttpResponse

logger = logging.getLogger("gatekeeper.auth.oidc")

CONFIGURATION_NAMESPACE = "OidcConfiguration"
CONFIGURATION_CACHE_KEY = "OIDC_CONFIGURATION"
JWK_SET_NAMESPACE = "JwkSet"
JWK_SET_CACHE_KEY = "OIDC_JWK_SET"

_DISCOVERY_PATH = "/.well-known/openid-configuration"

Fetcher = Callable[..., "HttpResponse"]


@dataclass(frozen=True)
class OidcConfiguration:
    """The subset of the provider's discovery document the authenticators use."""

    issuer: str
    userinfo_endpoint: Optional[str]
    jwks_uri: str

    @classmethod
    def from_document(cls, document: dict) -> OidcConfiguration:
        """Raises KeyError / TypeError when issuer or jwks_uri is absent."""
        return cls(
            issuer=document["issuer"],
            userinfo_endpoint=document.get("userinfo_endpoint"),
            jwks_uri=document["jwks_uri"],
        )


def _normalize_issuer(issuer: str) -> str:
    return issuer.rstrip("/")


class OidcConfigurationResolver:
    def __init__(
        self,
        cache: MetadataCache,
        settings: Optional[Settings] = None,
        fetch: Optional[Fetcher] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings or get_settings()
        self.fetch = fetch or _default_fetch

    def resolve(self) -> Optional[OidcConfiguration]:
        if not self.settings.oidc_enabled:
            logger.debug("Will not resolve OpenID Connect configuration: OIDC is disabled")
            return None
        issuer = self.settings.oidc_issuer
        if not issuer:
            logger.error("Will not resolve OpenID Connect configuration: no issuer configured")
            return None

        cached = self.cache.get(CONFIGURATION_NAMESPACE, CONFIGURATION_CACHE_KEY)
        if cached is not None:
            logger.debug("OpenID Connect configuration found in cache")
            return OidcConfiguration(**cached)

        discovery_url = _normalize_issuer(issuer) + _DISCOVERY_PATH
        logger.debug("Fetching OpenID Connect configuration from %s", discovery_url)
        try:
            response = self.fetch(discovery_url, settings=self.settings)
        except requests.RequestException as e:
            logger.error("Failed to fetch OpenID Connect configuration from %s: %s", discovery_url, e)
            return None
        if not response.ok:
            logger.error(
                "Failed to fetch OpenID Connect configuration from %s: HTTP %d", discovery_url, response.status
            )
            return None
        try:
            configuration = OidcConfiguration.from_document(response.json())
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Failed to parse OpenID Connect configuration from %s: %s", discovery_url, e)
            return None

        if _normalize_issuer(configuration.issuer) != _normalize_issuer(issuer):
            logger.error(
                "Issuer of the discovery document (%s) does not match the configured issuer (%s)",
                configuration.issuer,
                issuer,
            )
            return None

        self.cache.put(CONFIGURATION_NAMESPACE, CONFIGURATION_CACHE_KEY, asdict(configuration))
        return configuration

    def invalidate(self) -> None:
        self.cache.remove(CONFIGURATION_NAMESPACE, CONFIGURATION_CACHE_KEY)


class JwkSetResolver:
    def __init__(
        self,
        cache: MetadataCache,
        settings: Optional[Settings] = None,
        fetch: Optional[Fetcher] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings or get_settings()
        self.fetch = fetch or _default_fetch

    def resolve(self, jwks_uri: str) -> KeySet:
        """Return the provider's key set, from cache when possible.

        Raises:
            AuthenticationError(OTHER): fetch failed, non-2xx, or the body is
                not a parsable JWK set.
        """
        document = self.cache.get(JWK_SET_NAMESPACE, JWK_SET_CACHE_KEY)
        if document is None:
            document = self._fetch(jwks_uri)
            key_set = self._import(document)
            self.cache.put(JWK_SET_NAMESPACE, JWK_SET_CACHE_KEY, document)
            return key_set
        logger.debug("JWK set found in cache")
        return self._import(document)

    def invalidate(self) -> None:
        self.cache.remove(JWK_SET_NAMESPACE, JWK_SET_CACHE_KEY)

    def _fetch(self, jwks_uri: str) -> dict:
        logger.debug("Fetching JWK set from %s", jwks_uri)
        try:
            response = self.fetch(jwks_uri, settings=self.settings)
        except requests.RequestException as e:
            logger.error("Failed to fetch JWK set from %s: %s", jwks_uri, e)
            raise AuthenticationError(CauseType.OTHER) from e
        if not response.ok:
            logger.error("Failed to fetch JWK set from %s: HTTP %d", jwks_uri, response.status)
            raise AuthenticationError(CauseType.OTHER)
        try:
            document = response.json()
        except ValueError as e:
            logger.error("Failed to parse JWK set from %s: %s", jwks_uri, e)
            raise AuthenticationError(CauseType.OTHER) from e
        if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
            logger.error("Response from %s is not a JWK set", jwks_uri)
            raise AuthenticationError(CauseType.OTHER)
        return document

    @staticmethod
    def _import(document: dict) -> KeySet:
        try:
            return JsonWebKey.import_key_set(document)
        except Exception as e:
            # authlib raises a mix of ValueError, TypeError and JoseError subclasses here.
            logger.error("Failed to import JWK set: %s", e)
            raise AuthenticationError(CauseType.OTHER) from e
