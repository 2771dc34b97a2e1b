"""
auth/oidc.py -- OpenID Connect authentication: profiles, provisioning, team sync.

One authentication attempt runs through these stages:

  1. Not specified     OIDC disabled, no token presented, or no resolved
                       provider configuration. is_specified() is False; no
                       error is raised.
  2. ID-token profile  Signature checked against the provider's JWK set
                       (key chosen by kid; only asymmetric algorithms),
                       iss / aud / sub / exp validated with authlib.
  3. UserInfo profile  GET userinfo_endpoint with the bearer access token,
                       skipped when the ID-token profile is already complete.
  4. Completeness      first complete profile of
                       (ID token, UserInfo, merge(ID token, UserInfo)).
  5. Resolve user      existing user: bind subject once, refresh email,
                       sync teams. Unknown user: provision or UNMAPPED_ACCOUNT.

Failure mapping:

    stage / condition                         | CauseType
    ------------------------------------------+---------------------
    username / teams claim not configured     | OTHER
    ID token not parsable (header, segments)  | OTHER
    JWK set unavailable                       | OTHER
    signature, iss, aud, exp, unknown kid     | INVALID_CREDENTIALS
    UserInfo non-2xx                          | INVALID_CREDENTIALS
    UserInfo transport or parse failure       | OTHER
    no complete profile                       | OTHER
    stored subject differs from token subject | INVALID_CREDENTIALS
    unknown user, provisioning disabled       | UNMAPPED_ACCOUNT
    repository failure                        | OTHER

[M9] The subject identifier is bound on first login and never rebound. A
different subject for an existing username is treated as an account takeover
attempt and rejected; the comparison is constant-time.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import requests
from authlib.jose import JoseError, JsonWebToken
from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthenticationError, CauseType
from auth.models import OidcUser
from core.config import get_settings
from core.fetcher import fetch as _default_fetch

if TYPE_CHECKING:
    from authlib.jose import KeySet

    from auth.oidc_config import Fetcher, JwkSetResolver, OidcConfiguration
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.oidc")

# ID tokens must be signed with the provider's private key. HMAC algorithms
# would verify against a shared secret, and "none" against nothing.
ALLOWED_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512", "PS256", "PS384", "PS512"]

_STANDARD_CLAIMS = frozenset({"sub", "email", "iss", "aud", "exp", "iat", "nbf", "auth_time", "nonce", "azp", "at_hash"})


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@dataclass
class OidcProfile:
    """Claims of one authentication attempt. Never persisted as-is."""

    subject: Optional[str] = None
    username: Optional[str] = None
    groups: Optional[list[str]] = None
    email: Optional[str] = None
    custom_values: dict[str, Any] = field(default_factory=dict)

    def is_complete(self, team_synchronization: bool) -> bool:
        if self.subject is None or self.username is None:
            return False
        return self.groups is not None or not team_synchronization

    @classmethod
    def merge(cls, primary: OidcProfile, secondary: OidcProfile) -> OidcProfile:
        """Field-wise first non-None, primary before secondary."""
        custom_values = dict(secondary.custom_values)
        custom_values.update(primary.custom_values)
        return cls(
            subject=primary.subject if primary.subject is not None else secondary.subject,
            username=primary.username if primary.username is not None else secondary.username,
            groups=primary.groups if primary.groups is not None else secondary.groups,
            email=primary.email if primary.email is not None else secondary.email,
            custom_values=custom_values,
        )


def _as_group_list(value: Any) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return None


def create_profile(claims: dict[str, Any], settings: Settings) -> OidcProfile:
    """Map raw claims onto a profile using the configured claim names.

    Groups are only read when team synchronization is enabled. Claims that
    map to no profile field are kept in custom_values.
    """
    username_claim = settings.oidc_username_claim
    teams_claim = settings.oidc_teams_claim
    groups = None
    if settings.oidc_team_synchronization and teams_claim:
        groups = _as_group_list(claims.get(teams_claim))

    mapped = set(_STANDARD_CLAIMS)
    mapped.update(c for c in (username_claim, teams_claim) if c)
    username = claims.get(username_claim) if username_claim else None
    subject = claims.get("sub")
    return OidcProfile(
        subject=str(subject) if subject is not None else None,
        username=str(username) if username is not None else None,
        groups=groups,
        email=claims.get("email"),
        custom_values={k: v for k, v in claims.items() if k not in mapped},
    )


# ---------------------------------------------------------------------------
# ID token
# ---------------------------------------------------------------------------


class OidcIdTokenAuthenticator:
    """Validates an ID token against the provider's keys and builds a profile."""

    def __init__(self, configuration: OidcConfiguration, jwk_set_resolver: JwkSetResolver, settings: Settings) -> None:
        self.configuration = configuration
        self.jwk_set_resolver = jwk_set_resolver
        self.settings = settings

    def authenticate(self, id_token: str) -> OidcProfile:
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            logger.error("Parsing ID token failed: %s", e)
            raise AuthenticationError(CauseType.OTHER) from e

        algorithm = header.get("alg")
        if algorithm not in ALLOWED_ALGORITHMS:
            logger.warning("ID token uses a disallowed signing algorithm: %s", algorithm)
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS)

        key_set = self._key_set_for(header.get("kid"))
        issuers = [self.configuration.issuer]
        if self.settings.oidc_issuer and self.settings.oidc_issuer not in issuers:
            issuers.append(self.settings.oidc_issuer)
        claims_options = {
            "iss": {"essential": True, "values": issuers},
            "aud": {"essential": True, "value": self.settings.oidc_client_id},
            "sub": {"essential": True},
            "exp": {"essential": True},
        }
        try:
            claims = JsonWebToken(ALLOWED_ALGORITHMS).decode(id_token, key_set, claims_options=claims_options)
            claims.validate()
        except (JoseError, ValueError) as e:
            logger.info("ID token failed validation: %s", e)
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS) from e

        return create_profile(dict(claims), self.settings)

    def _key_set_for(self, kid: Optional[str]) -> KeySet:
        """Resolve the key set, refetching once when kid is unknown (key rotation)."""
        key_set = self.jwk_set_resolver.resolve(self.configuration.jwks_uri)
        if kid is None or _has_kid(key_set, kid):
            return key_set
        logger.debug("Key %s not in cached JWK set; refreshing", kid)
        self.jwk_set_resolver.invalidate()
        key_set = self.jwk_set_resolver.resolve(self.configuration.jwks_uri)
        if not _has_kid(key_set, kid):
            logger.info("ID token was signed with unknown key %s", kid)
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS)
        return key_set


def _has_kid(key_set: KeySet, kid: str) -> bool:
    try:
        key_set.find_by_kid(kid)
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# UserInfo
# ---------------------------------------------------------------------------


class OidcUserInfoAuthenticator:
    """Fetches the UserInfo document for an access token and builds a profile."""

    def __init__(self, configuration: OidcConfiguration, settings: Settings, fetch: Optional[Fetcher] = None) -> None:
        self.configuration = configuration
        self.settings = settings
        self.fetch = fetch or _default_fetch

    def authenticate(self, access_token: str) -> OidcProfile:
        endpoint = self.configuration.userinfo_endpoint
        if not endpoint:
            logger.error("Provider configuration has no UserInfo endpoint")
            raise AuthenticationError(CauseType.OTHER)
        try:
            response = self.fetch(
                endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                settings=self.settings,
            )
        except requests.RequestException as e:
            logger.error("UserInfo request to %s failed: %s", endpoint, e)
            raise AuthenticationError(CauseType.OTHER) from e
        if not response.ok:
            logger.info("UserInfo request was rejected with HTTP %d", response.status)
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS)
        try:
            claims = response.json()
        except ValueError as e:
            logger.error("Parsing UserInfo response failed: %s", e)
            raise AuthenticationError(CauseType.OTHER) from e
        if not isinstance(claims, dict):
            logger.error("UserInfo response is not a JSON object")
            raise AuthenticationError(CauseType.OTHER)
        return create_profile(claims, self.settings)


# ---------------------------------------------------------------------------
# Authentication service
# ---------------------------------------------------------------------------


class OidcAuthenticationService:
    """Authenticates an ID token and/or access token and returns the OidcUser.

    Usage:
        configuration = OidcConfigurationResolver(cache).resolve()
        service = OidcAuthenticationService(store, configuration, jwks, id_token, access_token)
        if service.is_specified():
            user = service.authenticate()
    """

    def __init__(
        self,
        store: CredentialStore,
        configuration: Optional[OidcConfiguration],
        jwk_set_resolver: JwkSetResolver,
        id_token: Optional[str] = None,
        access_token: Optional[str] = None,
        settings: Optional[Settings] = None,
        fetch: Optional[Fetcher] = None,
    ) -> None:
        self.store = store
        self.configuration = configuration
        self.jwk_set_resolver = jwk_set_resolver
        self.id_token = id_token
        self.access_token = access_token
        self.settings = settings or get_settings()
        self.fetch = fetch

    def is_specified(self) -> bool:
        if not self.settings.oidc_enabled:
            return False
        if self.id_token is None and self.access_token is None:
            return False
        return self.configuration is not None

    def authenticate(self) -> OidcUser:
        self._check_configuration()
        team_sync = self.settings.oidc_team_synchronization

        id_token_profile = None
        if self.id_token is not None:
            id_token_profile = OidcIdTokenAuthenticator(
                self.configuration, self.jwk_set_resolver, self.settings
            ).authenticate(self.id_token)
            logger.debug("ID token profile: %s", _describe(id_token_profile))
        userinfo_profile = None
        if id_token_profile is not None and id_token_profile.is_complete(team_sync):
            logger.debug("ID token profile is complete; UserInfo is not requested")
        elif self.access_token is not None:
            userinfo_profile = OidcUserInfoAuthenticator(self.configuration, self.settings, self.fetch).authenticate(
                self.access_token
            )
            logger.debug("UserInfo profile: %s", _describe(userinfo_profile))

        profile = self._select_profile(id_token_profile, userinfo_profile, team_sync)
        if profile is None:
            logger.error(
                "Neither the ID token nor the UserInfo response yielded a complete profile "
                "(subject, username%s)",
                " and groups" if team_sync else "",
            )
            raise AuthenticationError(CauseType.OTHER)

        try:
            user = self.store.get_oidc_user(profile.username)
            if user is not None:
                return self._update_existing(user, profile)
            return self._provision(profile)
        except SQLAlchemyError as e:
            logger.error("Repository failure during OIDC authentication: %s", e)
            raise AuthenticationError(CauseType.OTHER) from e

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _check_configuration(self) -> None:
        if not self.settings.oidc_username_claim:
            logger.error("No username claim has been configured")
            raise AuthenticationError(CauseType.OTHER)
        if self.settings.oidc_team_synchronization and not self.settings.oidc_teams_claim:
            logger.error("Team synchronization is enabled, but no teams claim has been configured")
            raise AuthenticationError(CauseType.OTHER)
        if self.id_token is not None and not self.settings.oidc_client_id:
            logger.error("An ID token was presented, but no client ID has been configured")
            raise AuthenticationError(CauseType.OTHER)
        if self.configuration is None:
            logger.error("OpenID Connect provider configuration is unavailable")
            raise AuthenticationError(CauseType.OTHER)

    @staticmethod
    def _select_profile(
        id_token_profile: Optional[OidcProfile],
        userinfo_profile: Optional[OidcProfile],
        team_sync: bool,
    ) -> Optional[OidcProfile]:
        candidates = [id_token_profile, userinfo_profile]
        if id_token_profile is not None and userinfo_profile is not None:
            candidates.append(OidcProfile.merge(id_token_profile, userinfo_profile))
        for candidate in candidates:
            if candidate is not None and candidate.is_complete(team_sync):
                return candidate
        return None

    def _update_existing(self, user: OidcUser, profile: OidcProfile) -> OidcUser:
        if user.subject_identifier is None:
            logger.debug("Binding subject identifier of user %s", user.username)
            user.subject_identifier = profile.subject
        elif not hmac.compare_digest(user.subject_identifier.encode("utf-8"), profile.subject.encode("utf-8")):
            logger.error(
                "Refusing to authenticate user %s: subject identifier has changed (%s to %s)",
                user.username,
                user.subject_identifier,
                profile.subject,
            )
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS)

        user.email = profile.email
        user = self.store.update_oidc_user(user)
        if self.settings.oidc_team_synchronization:
            logger.debug("Synchronizing teams for user %s", user.username)
            user = self.store.synchronize_oidc_team_membership(user, profile.groups)
        return user

    def _provision(self, profile: OidcProfile) -> OidcUser:
        if not self.settings.oidc_user_provisioning:
            logger.debug("User %s is not provisioned and provisioning is disabled", profile.username)
            raise AuthenticationError(CauseType.UNMAPPED_ACCOUNT)

        logger.debug("Provisioning user %s", profile.username)
        user = self.store.create_oidc_user(
            OidcUser(username=profile.username, subject_identifier=profile.subject, email=profile.email)
        )
        if self.settings.oidc_team_synchronization:
            user = self.store.synchronize_oidc_team_membership(user, profile.groups)
        default_teams = self.settings.oidc_default_teams
        if default_teams:
            user = self.store.add_oidc_user_to_teams(user, default_teams)
        return user


def _describe(profile: OidcProfile) -> str:
    return f"subject={profile.subject}, username={profile.username}, groups={profile.groups}"
