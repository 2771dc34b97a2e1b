"""
auth/ldap.py -- Directory (LDAP) bind authentication and enumeration.

LdapAuthenticationService validates a username/password by binding to the
directory with the formatted principal name, then maps the username onto a
stored directory user. It never provisions users.

    principal name = LDAP_AUTH_USERNAME_FORMAT with %s replaced by the username
                     if a format is configured,
                   = username@LDAP_DOMAIN if a domain is configured,
                   = username otherwise.

LdapConnectionWrapper holds everything that needs a bound connection:
credential binds, service-account binds and the search helpers used by
directory synchronization. The network client itself (auth/ldap_client.py,
ldap3-backed) is loaded on first use; tests inject a stand-in via directory=.

Search filters are built by substituting {USER_DN}, {USERNAME} and
{SEARCH_TERM}; substituted values are escaped per RFC 4515 so user input can
never alter the filter structure [M10].

Failure mapping:
    empty username or password    -> INVALID_CREDENTIALS (no network call)
    server unreachable            -> INVALID_CREDENTIALS (logged at ERROR)
    anonymous LDAP_SECURITY_AUTH  -> INVALID_CREDENTIALS (no network call)
    bind rejected                 -> INVALID_CREDENTIALS
    bound, no stored user         -> UNMAPPED_ACCOUNT
    repository failure            -> OTHER
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthenticationError, CauseType, DirectoryError, DirectoryUnavailableError
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import LdapUser
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.ldap")

# Methods that bind without checking the password.
ANONYMOUS_AUTHENTICATION = frozenset({"none", "anonymous"})


@dataclass(frozen=True)
class DirectoryEntry:
    """One search result: its distinguished name and raw attribute values."""

    dn: str
    attributes: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Filter escaping (RFC 4515)
# ---------------------------------------------------------------------------

_FILTER_ESCAPES = {"*": "\\2a", "(": "\\28", ")": "\\29", "\\": "\\5c", "\x00": "\\00"}


def escape_filter_value(value: Optional[str]) -> Optional[str]:
    """Escape an assertion value for insertion into a search filter.

    Non-ASCII characters are written as their escaped UTF-8 bytes.
    """
    if value is None:
        return None
    out = []
    for char in value:
        if char in _FILTER_ESCAPES:
            out.append(_FILTER_ESCAPES[char])
        elif ord(char) <= 0x7F:
            out.append(char)
        else:
            out.extend(f"\\{b:02x}" for b in char.encode("utf-8"))
    return "".join(out)


def _substitute_user(template: Optional[str], user: LdapUser) -> Optional[str]:
    if template is None:
        return None
    return template.replace("{USER_DN}", escape_filter_value(user.dn or "")).replace(
        "{USERNAME}", escape_filter_value(user.username)
    )


def _substitute_search_term(template: Optional[str], term: Optional[str]) -> Optional[str]:
    if template is None:
        return None
    return template.replace("{SEARCH_TERM}", escape_filter_value(term or ""))


# ---------------------------------------------------------------------------
# Search results
# ---------------------------------------------------------------------------

RESULT_SUCCESS = 0
RESULT_PARTIAL_RESULTS = 9
RESULT_REFERRAL = 10
RESULT_NO_SUCH_OBJECT = 32


def collect_search_entries(result: Optional[dict], response: Optional[list]) -> list[DirectoryEntry]:
    """Entries of a finished search, from its result and raw response items.

    Referrals are not followed, so partial-results and referral codes end the
    search with the entries received so far. Any other failure code raises
    DirectoryError.
    """
    result = result or {}
    code = result.get("result", RESULT_SUCCESS)
    entries = [
        DirectoryEntry(dn=item["dn"], attributes=dict(item.get("attributes") or {}))
        for item in response or []
        if item.get("type") == "searchResEntry"
    ]
    if code in (RESULT_PARTIAL_RESULTS, RESULT_REFERRAL):
        logger.warning(
            "Partial results returned. If this is an Active Directory server, "
            "try using port 3268 or 3269 in LDAP_SERVER_URL"
        )
    elif code not in (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT):
        raise DirectoryError(f"Search failed: {result.get('description')} ({code})")
    return entries


def default_directory(settings: Settings):
    """Return the ldap3-backed directory client for the configured server."""
    from auth.ldap_client import Ldap3Directory

    return Ldap3Directory(settings)


# ---------------------------------------------------------------------------
# Connection wrapper
# ---------------------------------------------------------------------------


class LdapConnectionWrapper:
    """Binds to the directory and runs the searches directory sync relies on.

    Connections returned by the create_* methods expose
    search(base, search_filter, attributes=None) -> list[DirectoryEntry],
    get_attributes(dn) -> dict and close().
    """

    def __init__(self, settings: Optional[Settings] = None, directory=None) -> None:
        self.settings = settings or get_settings()
        self._directory = directory

    @property
    def directory(self):
        if self._directory is None:
            self._directory = default_directory(self.settings)
        return self._directory

    def format_principal(self, username: str) -> str:
        fmt = self.settings.ldap_auth_username_format
        if fmt and fmt.strip():
            return fmt.replace("%s", username)
        domain = self.settings.ldap_domain
        if domain and domain.strip():
            return f"{username}@{domain}"
        return username

    def create_authenticated_context(self, username: Optional[str], password: Optional[str]):
        """Bind as the user. Raises DirectoryError; empty credentials never reach the server."""
        if not username or not password:
            raise DirectoryError("Username or password cannot be empty")
        method = (self.settings.ldap_security_auth or "").strip().lower()
        if method in ANONYMOUS_AUTHENTICATION:
            logger.error("Anonymous LDAP_SECURITY_AUTH cannot be used to authenticate users")
            raise DirectoryError(f"LDAP_SECURITY_AUTH={method} cannot validate user credentials")
        principal = self.format_principal(username)
        logger.debug("Creating LDAP context for %s", principal)
        return self.directory.bind(principal, password)

    def create_search_context(self):
        """Bind with the configured service account."""
        logger.debug("Creating directory service context")
        bind_username = self.settings.ldap_bind_username
        bind_password = self.settings.ldap_bind_secret
        if not bind_username or not bind_password:
            raise DirectoryError("No service account has been configured for directory searches")
        return self.directory.bind(bind_username, bind_password)

    def get_groups(self, connection, user: LdapUser) -> list[str]:
        """DNs of the groups user belongs to, per LDAP_USER_GROUPS_FILTER."""
        logger.debug("Retrieving groups for %s", user.dn)
        search_filter = _substitute_user(self.settings.ldap_user_groups_filter, user)
        return self._search_dns(connection, search_filter)

    def get_all_groups(self, connection) -> list[str]:
        logger.debug("Retrieving all groups")
        return self._search_dns(connection, self.settings.ldap_groups_filter)

    def search_for_group_name(self, connection, group_name: Optional[str]) -> list[str]:
        return self.search(connection, self.settings.ldap_groups_search_filter, group_name)

    def search_for_user_name(self, connection, user_name: Optional[str]) -> list[str]:
        return self.search(connection, self.settings.ldap_users_search_filter, user_name)

    def search(self, connection, search_filter: Optional[str], search_term: Optional[str]) -> list[str]:
        return self._search_dns(connection, _substitute_search_term(search_filter, search_term))

    def search_for_username(self, connection, username: str) -> list[DirectoryEntry]:
        fmt = self.settings.ldap_auth_username_format
        name = fmt.replace("%s", username) if fmt and fmt.strip() else username
        search_filter = f"({self.settings.ldap_attribute_name}={escape_filter_value(name)})"
        logger.debug("Searching for %s", search_filter)
        return connection.search(self.settings.ldap_basedn, search_filter)

    def search_for_single_username(self, connection, username: str) -> Optional[DirectoryEntry]:
        """The one entry for username, or None. Raises DirectoryError when several match."""
        results = self.search_for_username(connection, username)
        if not results:
            logger.debug("Search for %s did not produce any results", username)
            return None
        if len(results) > 1:
            raise DirectoryError("Multiple entries in the directory contain the same username")
        return results[0]

    def get_attribute(self, source, attribute_name: str) -> Optional[str]:
        """First string value of attribute_name (case-insensitive).

        source is a DirectoryEntry, an attribute dict, or (connection, dn).
        """
        if isinstance(source, tuple):
            connection, dn = source
            attributes = connection.get_attributes(dn)
        elif isinstance(source, DirectoryEntry):
            attributes = source.attributes
        else:
            attributes = source
        if not attributes:
            return None
        wanted = attribute_name.lower()
        for key, value in attributes.items():
            if key.lower() != wanted:
                continue
            if isinstance(value, (list, tuple)):
                value = value[0] if value else None
            return value if isinstance(value, str) else None
        return None

    def get_mail(self, source) -> Optional[str]:
        """E-mail address per LDAP_ATTRIBUTE_MAIL; source as for get_attribute()."""
        return self.get_attribute(source, self.settings.ldap_attribute_mail)

    def _search_dns(self, connection, search_filter: Optional[str]) -> list[str]:
        if not search_filter:
            return []
        dns = [entry.dn for entry in connection.search(self.settings.ldap_basedn, search_filter)]
        for dn in dns:
            logger.debug("Found %s", dn)
        return dns


# ---------------------------------------------------------------------------
# Authentication service
# ---------------------------------------------------------------------------


class LdapAuthenticationService:
    def __init__(
        self,
        store: CredentialStore,
        username: Optional[str],
        password: Optional[str],
        settings: Optional[Settings] = None,
        wrapper: Optional[LdapConnectionWrapper] = None,
    ) -> None:
        self.store = store
        self.username = username
        self.password = password
        self.settings = settings or get_settings()
        self.wrapper = wrapper or LdapConnectionWrapper(self.settings)

    def is_specified(self) -> bool:
        return self.username is not None or self.password is not None

    def authenticate(self) -> LdapUser:
        if not self._validate_credentials():
            raise AuthenticationError(CauseType.INVALID_CREDENTIALS)
        try:
            user = self.store.get_ldap_user(self.username)
        except SQLAlchemyError as e:
            logger.error("Directory user lookup failed: %s", e)
            raise AuthenticationError(CauseType.OTHER) from e
        if user is None:
            logger.debug("User %s authenticated against the directory but is not mapped", self.username)
            raise AuthenticationError(CauseType.UNMAPPED_ACCOUNT)
        return user

    def _validate_credentials(self) -> bool:
        try:
            with closing(self.wrapper.create_authenticated_context(self.username, self.password)):
                return True
        except DirectoryUnavailableError as e:
            logger.error("Failed to connect to directory server: %s", e)
            return False
        except DirectoryError as e:
            logger.debug("Failed to authenticate user %s: %s", self.username, e)
            return False
