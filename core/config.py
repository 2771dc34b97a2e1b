"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatekeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.
The one exception is core/proxy.py, which honours the conventional
http_proxy / https_proxy / no_proxy variables when no explicit proxy is set.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, ldap_server_url -> LDAP_SERVER_URL).

  Explicit injection: every authenticator accepts a Settings instance. Tests
      build Settings(...) directly instead of mutating the environment.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Bearer tokens
       are HMAC-signed with it -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would silently invalidate every
       issued token on restart.

Layer rule: core/ is the kernel. This module may not import from auth/ or
cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")

FRAMEWORK_NAME = "Gatekeeper"


def _read_secret_file(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    try:
        return Path(path).read_text(encoding="utf-8").strip() or None
    except OSError as e:
        logger.error("Unable to read secret file %s: %s", path, e)
        return None


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Empty strings and None both mean
    "not configured" for optional values.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    application_name: Optional[str] = None

    # ------------------------------------------------------------------
    # Bearer tokens / passwords / API keys
    # ------------------------------------------------------------------

    auth_jwt_ttl_seconds: int = 7 * 24 * 60 * 60
    bcrypt_rounds: int = 14
    api_key_prefix: str = "gk_"
    api_key_prefix_required: bool = False

    # ------------------------------------------------------------------
    # Directory service (LDAP)
    # ------------------------------------------------------------------

    ldap_enabled: bool = False
    ldap_server_url: Optional[str] = None
    ldap_basedn: Optional[str] = None
    ldap_domain: Optional[str] = None
    ldap_security_auth: Optional[str] = None
    ldap_bind_username: Optional[str] = None
    ldap_bind_password: Optional[str] = None
    ldap_bind_password_file: Optional[str] = None
    ldap_auth_username_format: Optional[str] = None
    ldap_attribute_name: str = "userPrincipalName"
    ldap_attribute_mail: str = "mail"
    ldap_groups_filter: Optional[str] = None
    ldap_user_groups_filter: Optional[str] = None
    ldap_groups_search_filter: Optional[str] = None
    ldap_users_search_filter: Optional[str] = None

    # ------------------------------------------------------------------
    # OpenID Connect
    # ------------------------------------------------------------------

    oidc_enabled: bool = False
    oidc_issuer: Optional[str] = None
    oidc_client_id: Optional[str] = None
    oidc_username_claim: Optional[str] = "sub"
    oidc_user_provisioning: bool = False
    oidc_team_synchronization: bool = False
    oidc_teams_claim: Optional[str] = "groups"
    # Comma-separated team names assigned to auto-provisioned users.
    oidc_teams_default: Optional[str] = None

    # ------------------------------------------------------------------
    # Outbound HTTP
    # ------------------------------------------------------------------

    http_proxy_address: Optional[str] = None
    http_proxy_port: Optional[int] = None
    http_proxy_username: Optional[str] = None
    http_proxy_password: Optional[str] = None
    http_proxy_password_file: Optional[str] = None
    no_proxy: Optional[str] = None
    http_timeout_connection: float = 30
    http_timeout_socket: float = 30

    # ------------------------------------------------------------------
    # Metadata cache (OIDC discovery document, JWKS)
    # ------------------------------------------------------------------

    cache_ttl_seconds: int = 60 * 60
    cache_max_entries: int = 1000

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, value: int) -> int:
        # bcrypt only accepts log rounds in this range.
        if not 4 <= value <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def issuer(self) -> str:
        return self.application_name or FRAMEWORK_NAME

    @property
    def ldap_configured(self) -> bool:
        """LDAP is usable only when it is switched on AND a server URL is present."""
        return self.ldap_enabled and bool(self.ldap_server_url and self.ldap_server_url.strip())

    @property
    def ldap_bind_secret(self) -> Optional[str]:
        return self.ldap_bind_password or _read_secret_file(self.ldap_bind_password_file)

    @property
    def http_proxy_secret(self) -> Optional[str]:
        return self.http_proxy_password or _read_secret_file(self.http_proxy_password_file)

    @property
    def oidc_default_teams(self) -> list[str]:
        if not self.oidc_teams_default:
            return []
        return [name.strip() for name in self.oidc_teams_default.split(",") if name.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or pass Settings(...) directly
    to the component under test.
    """
    return Settings()
