"""Unit tests for auth/passwords.py and auth/authenticator.py.

Covers:
- SHA-512 + bcrypt hashing, long passphrases, should_rehash()
- managed-user outcomes: success, wrong password, unknown user, suspended,
  forced password change
- orchestration: fall through to LDAP only on INVALID_CREDENTIALS with LDAP
  configured
- timing equalization between unknown username and wrong password [C1]
"""

from __future__ import annotations

import statistics
import time
from unittest.mock import MagicMock, patch

import pytest

from auth.authenticator import Authenticator, ManagedUserAuthenticationService
from auth.errors import AuthenticationError, CauseType, DirectoryError
from auth.ldap import LdapConnectionWrapper
from auth.models import LdapUser, ManagedUser
from auth.passwords import hash_password, should_rehash, verify_password
from conftest import make_settings


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        digest = hash_password("correct horse", rounds=4)
        assert digest.startswith("$2")
        assert verify_password("correct horse", digest)
        assert not verify_password("wrong horse", digest)

    def test_long_passphrases_differ_beyond_72_bytes(self) -> None:
        base = "x" * 100
        digest = hash_password(base + "a", rounds=4)
        assert not verify_password(base + "b", digest)

    def test_invalid_digest_never_matches(self) -> None:
        assert not verify_password("anything", "not-a-bcrypt-hash")
        assert not verify_password("anything", None)

    def test_should_rehash_when_cost_increased(self) -> None:
        digest = hash_password("pw", rounds=4)
        assert should_rehash(digest, rounds=5)
        assert not should_rehash(digest, rounds=4)
        assert should_rehash("garbage", rounds=4)


def _user(store, username="alice", password="s3cret", **flags) -> ManagedUser:
    return store.create_managed_user(ManagedUser(username=username, password=hash_password(password, rounds=4), **flags))


class TestManagedUserAuthentication:
    def test_success(self, store) -> None:
        _user(store)
        user = ManagedUserAuthenticationService(store, "alice", "s3cret").authenticate()
        assert user.username == "alice"

    @pytest.mark.parametrize("username, password", [("alice", "wrong"), ("nobody", "s3cret")])
    def test_invalid_credentials(self, store, username, password) -> None:
        _user(store)
        with pytest.raises(AuthenticationError) as exc_info:
            ManagedUserAuthenticationService(store, username, password).authenticate()
        assert exc_info.value.cause_type is CauseType.INVALID_CREDENTIALS

    def test_suspended(self, store) -> None:
        _user(store, suspended=True)
        with pytest.raises(AuthenticationError) as exc_info:
            ManagedUserAuthenticationService(store, "alice", "s3cret").authenticate()
        assert exc_info.value.cause_type is CauseType.SUSPENDED
        assert exc_info.value.principal.username == "alice"

    def test_suspended_with_wrong_password_is_invalid_credentials(self, store) -> None:
        _user(store, suspended=True)
        with pytest.raises(AuthenticationError) as exc_info:
            ManagedUserAuthenticationService(store, "alice", "wrong").authenticate()
        assert exc_info.value.cause_type is CauseType.INVALID_CREDENTIALS

    def test_force_password_change(self, store) -> None:
        _user(store, force_password_change=True)
        with pytest.raises(AuthenticationError) as exc_info:
            ManagedUserAuthenticationService(store, "alice", "s3cret").authenticate()
        assert exc_info.value.cause_type is CauseType.FORCE_PASSWORD_CHANGE

    def test_unknown_user_still_runs_bcrypt(self, store) -> None:
        """Timing equalization: verify_password must run against the dummy hash."""
        with patch("auth.authenticator.verify_password", return_value=False) as mock_verify:
            with pytest.raises(AuthenticationError):
                ManagedUserAuthenticationService(store, "nobody", "pw").authenticate()
        mock_verify.assert_called_once()


def _ldap_settings(**overrides):
    values = {"ldap_enabled": True, "ldap_server_url": "ldap://ldap.example.com:389", "ldap_basedn": "dc=example,dc=com"}
    values.update(overrides)
    return make_settings(**values)


def _wrapper(settings, bind_side_effect=None) -> tuple[LdapConnectionWrapper, MagicMock]:
    directory = MagicMock()
    if bind_side_effect is not None:
        directory.bind.side_effect = bind_side_effect
    return LdapConnectionWrapper(settings, directory=directory), directory


class TestAuthenticatorOrchestration:
    def test_managed_user_wins(self, store) -> None:
        _user(store)
        settings = _ldap_settings()
        wrapper, directory = _wrapper(settings)
        user = Authenticator(store, "alice", "s3cret", settings, wrapper).authenticate()
        assert isinstance(user, ManagedUser)
        directory.bind.assert_not_called()

    def test_falls_through_to_ldap_on_invalid_credentials(self, store) -> None:
        store.create_ldap_user(LdapUser(username="bob", dn="cn=bob,dc=example,dc=com"))
        settings = _ldap_settings()
        wrapper, directory = _wrapper(settings)
        user = Authenticator(store, "bob", "dir-pass", settings, wrapper).authenticate()
        assert isinstance(user, LdapUser)
        directory.bind.assert_called_once_with("bob", "dir-pass")

    def test_ldap_failure_propagates(self, store) -> None:
        settings = _ldap_settings()
        wrapper, _ = _wrapper(settings, bind_side_effect=DirectoryError("rejected"))
        with pytest.raises(AuthenticationError) as exc_info:
            Authenticator(store, "bob", "bad", settings, wrapper).authenticate()
        assert exc_info.value.cause_type is CauseType.INVALID_CREDENTIALS

    @pytest.mark.parametrize("flag", ["suspended", "force_password_change"])
    def test_non_credential_failures_do_not_fall_through(self, store, flag) -> None:
        _user(store, **{flag: True})
        settings = _ldap_settings()
        wrapper, directory = _wrapper(settings)
        with pytest.raises(AuthenticationError) as exc_info:
            Authenticator(store, "alice", "s3cret", settings, wrapper).authenticate()
        assert exc_info.value.cause_type is not CauseType.INVALID_CREDENTIALS
        directory.bind.assert_not_called()

    @pytest.mark.parametrize(
        "overrides",
        [{"ldap_enabled": False}, {"ldap_server_url": None}, {"ldap_server_url": "   "}],
    )
    def test_no_fall_through_when_ldap_not_configured(self, store, overrides) -> None:
        settings = _ldap_settings(**overrides)
        wrapper, directory = _wrapper(settings)
        with pytest.raises(AuthenticationError) as exc_info:
            Authenticator(store, "bob", "pw", settings, wrapper).authenticate()
        assert exc_info.value.cause_type is CauseType.INVALID_CREDENTIALS
        directory.bind.assert_not_called()


class TestTimingEqualization:
    def test_unknown_user_and_wrong_password_take_similar_time(self, store) -> None:
        _user(store)
        trials = 15

        def measure(username: str) -> float:
            samples = []
            for _ in range(trials):
                start = time.perf_counter()
                with pytest.raises(AuthenticationError):
                    ManagedUserAuthenticationService(store, username, "wrong").authenticate()
                samples.append(time.perf_counter() - start)
            return statistics.median(samples)

        unknown = measure("nobody")
        wrong_password = measure("alice")
        # Both paths run one bcrypt verification at the same cost.
        assert unknown == pytest.approx(wrong_password, rel=0.5, abs=0.01)
