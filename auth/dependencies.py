"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Two credential carriers are checked in priority order:
  1. X-Api-Key header -- long-lived API keys (CI/CD, scripts, integrations).
  2. Authorization: Bearer <token> header -- bearer tokens issued by TokenService.

Both converge on a Principal (a user or an ApiKey).

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_permissions(*names) wraps get_current_principal() and raises HTTP 403
unless the principal holds ANY of the named permissions.

Every authentication failure is HTTP 401 with code "unauthorized", except
FORCE_PASSWORD_CHANGE, which carries its own code so a client can send the
user to a password-change flow.

Collaborators come from app.state: credential_store (CredentialStore) and
token_service (TokenService).

Layer rule: this is the only auth/ module that imports fastapi.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import HTTPException, Request

from auth.api_keys import ApiKeyAuthenticationService
from auth.errors import AuthenticationError, CauseType
from auth.models import Principal
from auth.permissions import PermissionResolver
from auth.tokens import BearerTokenAuthenticationService

API_KEY_HEADER = "X-Api-Key"


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


def authenticate_request(request: Request) -> Optional[Principal]:
    """Authenticate whichever credential the request carries.

    Returns None when the request carries no credential at all.

    Raises:
        AuthenticationError: a credential was presented but did not authenticate.
    """
    store = request.app.state.credential_store

    api_key_auth = ApiKeyAuthenticationService(store, request.headers.get(API_KEY_HEADER), store.settings)
    if api_key_auth.is_specified():
        return api_key_auth.authenticate()

    bearer_auth = BearerTokenAuthenticationService(store, _bearer_token(request), request.app.state.token_service)
    if bearer_auth.is_specified():
        return bearer_auth.authenticate()

    return None


def try_get_current_principal(request: Request) -> Optional[Principal]:
    """Return the authenticated Principal, or None on any failure. Never raises."""
    try:
        return authenticate_request(request)
    except AuthenticationError:
        return None


def http_error_for(error: AuthenticationError) -> HTTPException:
    if error.cause_type is CauseType.FORCE_PASSWORD_CHANGE:
        return HTTPException(
            status_code=401,
            detail={"code": "force_password_change", "message": "A password change is required."},
        )
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
    )


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    try:
        principal = authenticate_request(request)
    except AuthenticationError as e:
        raise http_error_for(e) from e
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def require_permissions(*names: str) -> Callable[[Request], Principal]:
    """Build a dependency that admits principals holding ANY of names.

    Use as a FastAPI dependency:
        @router.post("/projects")
        async def route(principal: Principal = Depends(require_permissions("PORTFOLIO_MANAGEMENT"))): ...
    """
    required = frozenset(names)

    def dependency(request: Request) -> Principal:
        principal = get_current_principal(request)
        resolver = PermissionResolver(request.app.state.credential_store)
        if not resolver.is_authorized(principal, required):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient permissions."},
            )
        return principal

    return dependency
