"""
auth/permissions.py -- Effective permissions and the authorization decision.

    effective(user)    = direct permissions of the user
                         union permissions of every team the user is in
    effective(api key) = union of permissions of every team owning the key

Permissions are compared by name. Authorization is ANY-of: a principal is
authorized for an operation when its effective set shares at least one name
with the operation's required set. An empty required set authorizes every
authenticated principal.

User records are re-read from the store before resolving, so permission or
membership changes apply to tokens issued before the change.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional

from auth.models import ApiKey, LdapUser, ManagedUser, OidcUser

if TYPE_CHECKING:
    from auth.models import Principal
    from auth.store import CredentialStore

logger = logging.getLogger("gatekeeper.auth.permissions")


class PermissionResolver:
    def __init__(self, store: Optional[CredentialStore] = None) -> None:
        self.store = store

    def effective_permissions(self, principal: Principal) -> set[str]:
        principal = self._refresh(principal)
        names = {p.name for p in principal.permissions}
        if self.store is not None:
            names.update(p.name for p in self.store.get_permissions_for_teams(principal.teams))
        else:
            for team in principal.teams:
                names.update(p.name for p in team.permissions)
        return names

    def is_authorized(self, principal: Principal, required: Iterable[str]) -> bool:
        required = set(required)
        if not required:
            return True
        granted = self.effective_permissions(principal)
        if granted & required:
            return True
        logger.info(
            "Unauthorized access attempt by %s: requires any of %s",
            principal.name,
            ", ".join(sorted(required)),
        )
        return False

    def _refresh(self, principal: Principal) -> Principal:
        if self.store is None or isinstance(principal, ApiKey):
            return principal
        if isinstance(principal, ManagedUser):
            current = self.store.get_managed_user(principal.username)
        elif isinstance(principal, LdapUser):
            current = self.store.get_ldap_user(principal.username)
        elif isinstance(principal, OidcUser):
            current = self.store.get_oidc_user(principal.username)
        else:
            current = None
        return current or principal
