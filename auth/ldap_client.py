"""
auth/ldap_client.py -- ldap3-backed directory client.

Install with the "ldap" extra (pip install gatekeeper[ldap]). Only
auth/ldap.py imports this module, and only when a directory is first used.

Translates ldap3 failures into DirectoryError / DirectoryUnavailableError so
callers never handle ldap3 exception types. Referrals are not followed: a
search that ends in a referral or partial-results indication returns the
entries received so far.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

import ldap3
from ldap3.core.exceptions import LDAPCommunicationError, LDAPException

from auth.errors import DirectoryError, DirectoryUnavailableError
from auth.ldap import DirectoryEntry, collect_search_entries

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.ldap")


_AUTHENTICATION_METHODS = {
    "simple": ldap3.SIMPLE,
    "ntlm": ldap3.NTLM,
}


class Ldap3Connection:
    def __init__(self, connection: ldap3.Connection) -> None:
        self._conn = connection

    def search(
        self, base: Optional[str], search_filter: str, attributes: Optional[list[str]] = None
    ) -> list[DirectoryEntry]:
        try:
            self._conn.search(
                search_base=base or "",
                search_filter=search_filter,
                search_scope=ldap3.SUBTREE,
                attributes=attributes or ldap3.ALL_ATTRIBUTES,
            )
        except LDAPCommunicationError as e:
            raise DirectoryUnavailableError(str(e)) from e
        except LDAPException as e:
            raise DirectoryError(str(e)) from e
        return self._collect()

    def get_attributes(self, dn: str) -> dict[str, Any]:
        try:
            self._conn.search(
                search_base=dn,
                search_filter="(objectClass=*)",
                search_scope=ldap3.BASE,
                attributes=ldap3.ALL_ATTRIBUTES,
            )
        except LDAPException as e:
            raise DirectoryError(str(e)) from e
        entries = self._collect()
        return entries[0].attributes if entries else {}

    def close(self) -> None:
        try:
            self._conn.unbind()
        except LDAPException as e:
            logger.debug("Ignoring failure while closing directory connection: %s", e)

    def _collect(self) -> list[DirectoryEntry]:
        return collect_search_entries(self._conn.result, self._conn.response)


class Ldap3Directory:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        url = settings.ldap_server_url or ""
        self.server = ldap3.Server(
            url,
            use_ssl=url.lower().startswith("ldaps:"),
            get_info=ldap3.NONE,
            connect_timeout=settings.http_timeout_connection,
        )
        method = (settings.ldap_security_auth or "simple").strip().lower()
        self.authentication = _AUTHENTICATION_METHODS.get(method, ldap3.SIMPLE)

    def bind(self, principal: str, password: str) -> Ldap3Connection:
        """Open a connection bound as principal.

        Raises:
            DirectoryUnavailableError: the server could not be reached.
            DirectoryError: the bind was rejected.
        """
        try:
            connection = ldap3.Connection(
                self.server,
                user=principal,
                password=password,
                authentication=self.authentication,
                auto_bind=ldap3.AUTO_BIND_NO_TLS,
                receive_timeout=self.settings.http_timeout_socket,
                auto_referrals=False,
            )
        except LDAPCommunicationError as e:
            raise DirectoryUnavailableError(str(e)) from e
        except LDAPException as e:
            raise DirectoryError("Failed to authenticate user") from e
        return Ldap3Connection(connection)
