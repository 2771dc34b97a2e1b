"""
auth/authenticator.py -- Username/password authentication: managed users, then LDAP.

Orchestration:

    managed-user outcome   | LDAP configured | result
    -----------------------+-----------------+---------------------------
    success                | any             | managed user
    INVALID_CREDENTIALS    | yes             | LDAP outcome (user/error)
    INVALID_CREDENTIALS    | no              | INVALID_CREDENTIALS
    any other failure      | any             | that failure

"LDAP configured" is Settings.ldap_configured: LDAP_ENABLED and a non-blank
LDAP_SERVER_URL.

[C1] Timing equalization: the managed-user check always performs exactly one
bcrypt verification. An unknown username is verified against _DUMMY_HASH so
that response time does not reveal whether the username exists.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthenticationError, CauseType
from auth.ldap import LdapAuthenticationService, LdapConnectionWrapper
from auth.passwords import _DUMMY_HASH, verify_password
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import ManagedUser, UserPrincipal
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth")


class ManagedUserAuthenticationService:
    def __init__(self, store: CredentialStore, username: Optional[str], password: Optional[str]) -> None:
        self.store = store
        self.username = username
        self.password = password

    def is_specified(self) -> bool:
        return self.username is not None and self.password is not None

    def authenticate(self) -> ManagedUser:
        try:
            user = self.store.get_managed_user(self.username or "")
        except SQLAlchemyError as e:
            logger.error("Managed user lookup failed: %s", e)
            raise AuthenticationError(CauseType.OTHER) from e

        if user is None or not user.password:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(self.password or "", _DUMMY_HASH)
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS)
        if not verify_password(self.password or "", user.password):
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS)
        if user.suspended:
            logger.info("Suspended user %s attempted to log in", user.username)
            raise AuthenticationError(CauseType.SUSPENDED, principal=user)
        if user.force_password_change:
            raise AuthenticationError(CauseType.FORCE_PASSWORD_CHANGE, principal=user)
        return user


class Authenticator:
    """Authenticates a username/password pair against every enabled backend.

    Usage:
        user = Authenticator(store, "alice", "s3cret").authenticate()
    """

    def __init__(
        self,
        store: CredentialStore,
        username: Optional[str],
        password: Optional[str],
        settings: Optional[Settings] = None,
        ldap_wrapper: Optional[LdapConnectionWrapper] = None,
    ) -> None:
        self.store = store
        self.username = username
        self.password = password
        self.settings = settings or get_settings()
        self.ldap_wrapper = ldap_wrapper

    def authenticate(self) -> UserPrincipal:
        ldap_configured = self.settings.ldap_configured
        try:
            return ManagedUserAuthenticationService(self.store, self.username, self.password).authenticate()
        except AuthenticationError as e:
            if e.cause_type is not CauseType.INVALID_CREDENTIALS or not ldap_configured:
                raise

        if ldap_configured:
            return LdapAuthenticationService(
                self.store, self.username, self.password, self.settings, self.ldap_wrapper
            ).authenticate()
        raise AuthenticationError(CauseType.OTHER)
