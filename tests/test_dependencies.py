"""
tests/test_dependencies.py -- Integration tests for the FastAPI auth dependencies.

A minimal app mounts three routes guarded by try_get_current_principal,
get_current_principal and require_permissions("ADMIN", "MANAGE"), and is
driven through TestClient so header parsing and HTTP status mapping run for
real.

Coverage:
  - no credential -> 401 on guarded routes, None on the soft route
  - API key and bearer token both authenticate; API key wins when both are sent
  - bad / expired / suspended credentials -> 401 "unauthorized"
  - FORCE_PASSWORD_CHANGE surfaces its own error code
  - ANY-of permission check -> 403 vs 200
"""

from __future__ import annotations

import uuid
from typing import Optional

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from auth.dependencies import (
    API_KEY_HEADER,
    get_current_principal,
    http_error_for,
    require_permissions,
    try_get_current_principal,
)
from auth.errors import AuthenticationError, CauseType
from auth.models import ManagedUser, Principal
from auth.tokens import TokenService
from conftest import make_store


def _build_app(store, token_service) -> FastAPI:
    app = FastAPI()
    app.state.credential_store = store
    app.state.token_service = token_service

    @app.get("/whoami")
    def whoami(principal: Principal = Depends(get_current_principal)) -> dict:
        return {"name": principal.name}

    @app.get("/maybe")
    def maybe(principal: Optional[Principal] = Depends(try_get_current_principal)) -> dict:
        return {"name": principal.name if principal is not None else None}

    @app.get("/admin")
    def admin(principal: Principal = Depends(require_permissions("ADMIN", "MANAGE"))) -> dict:
        return {"name": principal.name}

    return app


@pytest.fixture
def env():
    """(client, store, token_service) over a fresh named shared-memory store."""
    store = make_store(f"deps_{uuid.uuid4().hex}")
    token_service = TokenService(settings=store.settings)
    for name in ("ADMIN", "MANAGE", "VIEW"):
        store.create_permission(name)
    with TestClient(_build_app(store, token_service)) as client:
        yield client, store, token_service
    store.close()


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestAuthentication:
    def test_no_credentials_is_401(self, env) -> None:
        client, _, _ = env
        resp = client.get("/whoami")
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "unauthorized"

    def test_soft_dependency_returns_none(self, env) -> None:
        client, _, _ = env
        assert client.get("/maybe").json() == {"name": None}
        assert client.get("/maybe", headers=_bearer("garbage")).json() == {"name": None}

    def test_bearer_token(self, env) -> None:
        client, store, tokens = env
        store.create_managed_user(ManagedUser(username="alice", password="x"))
        resp = client.get("/whoami", headers=_bearer(tokens.create_token(ManagedUser(username="alice"))))
        assert resp.status_code == 200
        assert resp.json() == {"name": "alice"}

    def test_non_bearer_scheme_ignored(self, env) -> None:
        client, store, tokens = env
        store.create_managed_user(ManagedUser(username="alice", password="x"))
        token = tokens.create_token(ManagedUser(username="alice"))
        assert client.get("/whoami", headers={"Authorization": f"Basic {token}"}).status_code == 401

    def test_api_key(self, env) -> None:
        client, store, _ = env
        key, raw_key = store.create_api_key(store.create_team("Automation"))
        resp = client.get("/whoami", headers={API_KEY_HEADER: raw_key})
        assert resp.status_code == 200
        assert resp.json() == {"name": key.masked_key}

    def test_api_key_checked_before_bearer(self, env) -> None:
        client, store, tokens = env
        store.create_managed_user(ManagedUser(username="alice", password="x"))
        headers = {API_KEY_HEADER: "gk_bogus", **_bearer(tokens.create_token(ManagedUser(username="alice")))}
        assert client.get("/whoami", headers=headers).status_code == 401

    def test_tampered_token_is_401(self, env) -> None:
        client, store, tokens = env
        store.create_managed_user(ManagedUser(username="alice", password="x"))
        token = tokens.create_token(ManagedUser(username="alice"))
        tampered = token[:-2] + ("AA" if not token.endswith("AA") else "BB")
        assert client.get("/whoami", headers=_bearer(tampered)).status_code == 401

    def test_suspended_user_is_401(self, env) -> None:
        client, store, tokens = env
        store.create_managed_user(ManagedUser(username="alice", password="x", suspended=True))
        resp = client.get("/whoami", headers=_bearer(tokens.create_token(ManagedUser(username="alice"))))
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "unauthorized"


class TestHttpErrorMapping:
    @pytest.mark.parametrize(
        "cause",
        [c for c in CauseType if c is not CauseType.FORCE_PASSWORD_CHANGE],
    )
    def test_everything_else_is_unauthorized(self, cause) -> None:
        error = http_error_for(AuthenticationError(cause))
        assert error.status_code == 401
        assert error.detail["code"] == "unauthorized"

    def test_force_password_change_has_its_own_code(self) -> None:
        error = http_error_for(AuthenticationError(CauseType.FORCE_PASSWORD_CHANGE))
        assert error.status_code == 401
        assert error.detail["code"] == "force_password_change"


class TestRequirePermissions:
    def _user_token(self, store, tokens, *team_permissions: str) -> str:
        team = store.create_team("Team")
        for name in team_permissions:
            team = store.add_permission_to_team(team, name)
        user = store.create_managed_user(ManagedUser(username="alice", password="x"))
        store.add_user_to_team(user, team)
        return tokens.create_token(user)

    def test_any_named_permission_admits(self, env) -> None:
        client, store, tokens = env
        token = self._user_token(store, tokens, "MANAGE")
        assert client.get("/admin", headers=_bearer(token)).status_code == 200

    def test_missing_permissions_is_403(self, env) -> None:
        client, store, tokens = env
        token = self._user_token(store, tokens, "VIEW")
        resp = client.get("/admin", headers=_bearer(token))
        assert resp.status_code == 403
        assert resp.json()["detail"]["code"] == "forbidden"

    def test_unauthenticated_is_401_not_403(self, env) -> None:
        client, _, _ = env
        assert client.get("/admin").status_code == 401

    def test_api_key_permissions_come_from_teams(self, env) -> None:
        client, store, _ = env
        team = store.add_permission_to_team(store.create_team("Admins"), "ADMIN")
        _, raw_key = store.create_api_key(team)
        assert client.get("/admin", headers={API_KEY_HEADER: raw_key}).status_code == 200
