"""
auth/tokens.py -- Bearer token issuance, validation and authentication.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub, iss, iat, exp, the identity-provider tag (idp) and, optionally,
       the sorted, comma-joined permission names. Lifetime is fixed per
       service instance (AUTH_JWT_TTL_SECONDS, default 7 days).

  Expiry: checked here against an injectable clock (now < exp), not by
       python-jose, so tests can step one second past expiry and so that an
       expired token is reported distinctly from a forged one.

  Failures: verify() raises InvalidTokenError with the failing check;
       validate() collapses every failure to None. Neither ever returns a
       partially-populated result. A correctly signed token without sub or
       exp is rejected [M8].

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup: dev mode (DEBUG=true) auto-generates a
       random key with a warning; production mode refuses to start without one.
       Short keys (<32 chars) are rejected with ValueError [M6].

Layer rule: imports auth.errors / auth.models and core/ only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Union

from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthenticationError, CauseType, InvalidTokenError, TokenFailure
from auth.models import IdentityProvider, LdapUser, ManagedUser, OidcUser, Permission
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Principal, UserPrincipal
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.tokens")

_ALGORITHM = "HS256"

# Claims the service owns; extra_claims may not override them.
_RESERVED_CLAIMS = frozenset({"sub", "iss", "iat", "exp", "idp", "permissions"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ValidatedToken:
    subject: str
    expiration: datetime
    issuer: Optional[str] = None
    identity_provider: Optional[IdentityProvider] = None
    # Raw idp claim as presented; set even when it names no known provider.
    identity_provider_name: Optional[str] = None
    permissions: tuple[str, ...] = ()
    claims: dict = field(default_factory=dict)


def _permission_names(permissions: Optional[Iterable[Union[str, Permission]]]) -> list[str]:
    if permissions is None:
        return []
    return sorted({p.name if isinstance(p, Permission) else p for p in permissions})


def identity_provider_for(principal: Principal) -> IdentityProvider:
    """Tag a principal with the provider that authenticated it."""
    if isinstance(principal, LdapUser):
        return IdentityProvider.DIRECTORY
    if isinstance(principal, OidcUser):
        return IdentityProvider.OIDC
    return IdentityProvider.LOCAL


class TokenService:
    """Issues and validates HS256 bearer tokens.

    Usage:
        service = TokenService()
        token = service.create_token(user, permissions=user.permissions)
        validated = service.validate(token)     # ValidatedToken or None
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        ttl: Optional[int] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or _utcnow
        self.ttl = ttl if ttl is not None else self.settings.auth_jwt_ttl_seconds

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(
        self,
        subject: str,
        permissions: Optional[Iterable[Union[str, Permission]]] = None,
        identity_provider: Optional[IdentityProvider] = None,
        extra_claims: Optional[dict[str, Any]] = None,
    ) -> str:
        """Encode a signed token for subject, valid for self.ttl seconds from now."""
        now = int(self.clock().timestamp())
        claims: dict[str, Any] = {
            key: value for key, value in (extra_claims or {}).items() if key not in _RESERVED_CLAIMS
        }
        claims.update(
            {
                "sub": subject,
                "iss": self.settings.issuer,
                "iat": now,
                "exp": now + self.ttl,
                "idp": (identity_provider or IdentityProvider.LOCAL).value,
            }
        )
        names = _permission_names(permissions)
        if names:
            claims["permissions"] = ",".join(names)
        return jwt.encode(claims, self.settings.secret_key, algorithm=_ALGORITHM)

    def create_token(
        self,
        principal: UserPrincipal,
        permissions: Optional[Iterable[Union[str, Permission]]] = None,
        identity_provider: Optional[IdentityProvider] = None,
    ) -> str:
        """issue() for a user, deriving the identity-provider tag from its type when not given."""
        return self.issue(
            principal.username,
            permissions=permissions,
            identity_provider=identity_provider or identity_provider_for(principal),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def verify(self, token: str) -> ValidatedToken:
        """Validate token completely.

        Raises:
            InvalidTokenError: bad signature, malformed structure, missing
                sub/exp, or expired.
        """
        try:
            claims = jwt.decode(
                token,
                self.settings.secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError as e:
            if "Signature verification failed" in str(e):
                raise InvalidTokenError(TokenFailure.BAD_SIGNATURE) from e
            raise InvalidTokenError(TokenFailure.MALFORMED) from e

        subject = claims.get("sub")
        exp = claims.get("exp")
        if not subject or exp is None:
            raise InvalidTokenError(TokenFailure.MISSING_CLAIMS)
        try:
            expiration = datetime.fromtimestamp(int(exp), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidTokenError(TokenFailure.MALFORMED) from e
        if not self.clock() < expiration:
            raise InvalidTokenError(TokenFailure.EXPIRED)

        idp_name = claims.get("idp")
        permissions = claims.get("permissions") or ""
        return ValidatedToken(
            subject=subject,
            expiration=expiration,
            issuer=claims.get("iss"),
            identity_provider=IdentityProvider.for_name(idp_name),
            identity_provider_name=idp_name,
            permissions=tuple(p for p in permissions.split(",") if p),
            claims=claims,
        )

    def validate(self, token: Optional[str]) -> Optional[ValidatedToken]:
        """Return the validated token, or None on any failure."""
        if not token:
            return None
        try:
            return self.verify(token)
        except InvalidTokenError as e:
            if e.reason is TokenFailure.BAD_SIGNATURE:
                logger.info("Received token that did not pass signature verification")
            else:
                logger.debug("Rejected bearer token: %s", e.reason.value)
            return None

    def expires_in(self) -> timedelta:
        return timedelta(seconds=self.ttl)


# ---------------------------------------------------------------------------
# Bearer token authentication
# ---------------------------------------------------------------------------


class BearerTokenAuthenticationService:
    """Resolves the subject of a validated bearer token to a stored user.

    The idp claim selects the table: LOCAL (or no claim) -> managed users,
    DIRECTORY -> directory users, OIDC -> OIDC users. A claim naming an
    unknown provider is rejected rather than guessed.
    """

    def __init__(self, store: CredentialStore, token: Optional[str], token_service: Optional[TokenService] = None) -> None:
        self.store = store
        self.token = token
        self.token_service = token_service or TokenService()

    def is_specified(self) -> bool:
        return self.token is not None

    def authenticate(self) -> UserPrincipal:
        try:
            validated = self.token_service.verify(self.token or "")
        except InvalidTokenError as e:
            if e.reason is TokenFailure.EXPIRED:
                logger.debug("Bearer token expired")
                raise AuthenticationError(CauseType.EXPIRED_CREDENTIALS) from e
            if e.reason is TokenFailure.BAD_SIGNATURE:
                logger.info("Received token that did not pass signature verification")
            else:
                logger.debug("Rejected bearer token: %s", e.reason.value)
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS) from e

        if validated.identity_provider_name is not None and validated.identity_provider is None:
            logger.warning("Token names an unknown identity provider: %s", validated.identity_provider_name)
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS)

        try:
            user = self._lookup(validated)
        except SQLAlchemyError as e:
            logger.error("Bearer token subject lookup failed: %s", e)
            raise AuthenticationError(CauseType.OTHER) from e

        if user is None:
            logger.debug("No user found for token subject %s", validated.subject)
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS)
        if isinstance(user, ManagedUser) and user.suspended:
            logger.info("Suspended user %s presented a bearer token", user.username)
            raise AuthenticationError(CauseType.SUSPENDED, principal=user)
        return user

    def _lookup(self, validated: ValidatedToken) -> Optional[UserPrincipal]:
        idp = validated.identity_provider
        if idp is IdentityProvider.DIRECTORY:
            return self.store.get_ldap_user(validated.subject)
        if idp is IdentityProvider.OIDC:
            return self.store.get_oidc_user(validated.subject)
        return self.store.get_managed_user(validated.subject)
