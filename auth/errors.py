"""
auth/errors.py -- The typed failure taxonomy shared by every authenticator.

Every expected authentication failure surfaces as AuthenticationError with
exactly one CauseType. The transport layer (auth/dependencies.py) maps the
cause to an HTTP status; nothing below it raises HTTP errors.

"Not specified" (no credential material presented) is NOT a failure and is
never expressed with these types -- authenticators expose is_specified() for
that.

Layer rule: no imports from other auth/ modules.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class CauseType(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    EXPIRED_CREDENTIALS = "EXPIRED_CREDENTIALS"
    FORCE_PASSWORD_CHANGE = "FORCE_PASSWORD_CHANGE"
    SUSPENDED = "SUSPENDED"
    UNMAPPED_ACCOUNT = "UNMAPPED_ACCOUNT"
    OTHER = "OTHER"


class AuthenticationError(Exception):
    """Raised when presented credentials do not yield a principal.

    principal is set when the failure concerns a known account (e.g. a
    suspended user) so the caller can act on it; it is None otherwise.
    """

    def __init__(self, cause_type: CauseType, principal: Optional[Any] = None) -> None:
        super().__init__(cause_type.value)
        self.cause_type = cause_type
        self.principal = principal


class MalformedApiKeyError(ValueError):
    """The raw API key does not have a recognisable format."""


class TokenFailure(str, Enum):
    BAD_SIGNATURE = "BAD_SIGNATURE"
    EXPIRED = "EXPIRED"
    MALFORMED = "MALFORMED"
    MISSING_CLAIMS = "MISSING_CLAIMS"


class InvalidTokenError(Exception):
    """A bearer token failed validation. reason says which check rejected it."""

    def __init__(self, reason: TokenFailure) -> None:
        super().__init__(reason.value)
        self.reason = reason


class DirectoryError(Exception):
    """A directory (LDAP) operation failed, e.g. a rejected bind or a failed search."""


class DirectoryUnavailableError(DirectoryError):
    """The directory server could not be reached at all."""
