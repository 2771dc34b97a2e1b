"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic) -- dataclasses own
domain shape; the store and the authenticators do the work.

Principal is a closed union of four variants sharing one accessor surface
(name, permissions, teams). Code that needs the variant -- identity-provider
tagging, store lookups -- switches on isinstance; everything else reads the
common attributes.

Layer rule: no imports from other auth/ modules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class IdentityProvider(str, Enum):
    LOCAL = "LOCAL"
    DIRECTORY = "DIRECTORY"
    OIDC = "OIDC"

    @classmethod
    def for_name(cls, name: Optional[str]) -> Optional[IdentityProvider]:
        """Resolve a token's idp claim. Unknown or missing names resolve to None.

        Tokens issued before the tag names were settled carry "LDAP" and
        "OPENID_CONNECT"; both still resolve.
        """
        if name is None:
            return None
        name = _LEGACY_IDP_NAMES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            return None


_LEGACY_IDP_NAMES = {"LDAP": "DIRECTORY", "OPENID_CONNECT": "OIDC"}


@dataclass(frozen=True)
class Permission:
    name: str
    description: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Team:
    name: str
    permissions: list[Permission] = field(default_factory=list)
    id: Optional[int] = None


@dataclass
class _UserFields:
    username: str
    permissions: list[Permission] = field(default_factory=list)
    teams: list[Team] = field(default_factory=list)
    id: Optional[int] = None

    @property
    def name(self) -> str:
        return self.username


@dataclass
class ManagedUser(_UserFields):
    """A user whose password digest is held locally."""

    password: Optional[str] = None  # bcrypt digest, never plaintext
    email: Optional[str] = None
    fullname: Optional[str] = None
    suspended: bool = False
    force_password_change: bool = False
    non_expiry_password: bool = False
    last_password_change: Optional[str] = None


@dataclass
class LdapUser(_UserFields):
    """A user authenticated by binding to the directory server."""

    dn: Optional[str] = None
    email: Optional[str] = None


@dataclass
class OidcUser(_UserFields):
    """A user authenticated by an OpenID Connect provider.

    subject_identifier is bound once, at first login, and never changes after
    that. email is refreshed from the provider on every login.
    """

    subject_identifier: Optional[str] = None
    email: Optional[str] = None


@dataclass
class ApiKey:
    """A long-lived credential owned by one or more teams.

    Only secret_hash (SHA3-256 of the secret) is persisted. The raw key is
    returned to the caller once, at creation or regeneration, and is then
    unrecoverable.

    Legacy keys have no independent public id; public_id is None and
    secret_hash is the digest of the whole key body.
    """

    secret_hash: str
    public_id: Optional[str] = None
    legacy: bool = False
    comment: Optional[str] = None
    teams: list[Team] = field(default_factory=list)
    id: Optional[int] = None
    created: Optional[str] = None
    last_used: Optional[str] = None
    masked_key: Optional[str] = None

    @property
    def name(self) -> str:
        return self.masked_key or f"api-key-{self.id}"

    @property
    def permissions(self) -> list[Permission]:
        # An API key holds no direct permissions; its teams do.
        return []


@dataclass
class OidcGroup:
    """An external group name asserted by the identity provider."""

    name: str
    id: Optional[int] = None


@dataclass
class MappedOidcGroup:
    team: Team
    group: OidcGroup
    id: Optional[int] = None


UserPrincipal = Union[ManagedUser, LdapUser, OidcUser]
Principal = Union[ManagedUser, LdapUser, OidcUser, ApiKey]
