"""
core/proxy.py -- Outbound proxy selection for OIDC discovery, JWKS and UserInfo calls.

Two sources, in priority order:
  1. Explicit configuration (HTTP_PROXY_ADDRESS / HTTP_PROXY_PORT / ... / NO_PROXY).
  2. The conventional https_proxy, http_proxy and no_proxy environment
     variables (names matched case-insensitively).

No-proxy exceptions are "host" or "host:port" entries. A host entry matches
the exact host or any sub-domain of it ("example.com" matches
"foo.example.com" but NOT "fooexample.com"). A single "*" disables proxying
entirely.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional
from urllib.parse import quote, unquote, urlsplit

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("gatekeeper.proxy")

_PROXYABLE_SCHEMES = {"http", "https"}


@dataclass
class ProxyConfig:
    host: Optional[str] = None
    port: Optional[int] = None
    domain: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    no_proxy: Optional[set[str]] = field(default=None)

    def should_proxy(self, url: Optional[str]) -> bool:
        """Return True if a request to url must go through this proxy."""
        if self.host is None or not url:
            return False
        parts = urlsplit(url)
        if parts.scheme.lower() not in _PROXYABLE_SCHEMES or not parts.hostname:
            return False
        if self.no_proxy is None:
            return True
        if "*" in self.no_proxy:
            return False

        hostname = parts.hostname.lower()
        host_port = parts.port
        for entry in self.no_proxy:
            entry = entry.strip()
            if not entry:
                continue
            bypass_host, _, bypass_port = entry.partition(":")
            bypass_host = bypass_host.lower()
            if bypass_port and (not bypass_port.isdigit() or int(bypass_port) != host_port):
                continue
            if hostname == bypass_host or hostname.endswith("." + bypass_host):
                return False
        return True

    def proxy_url(self) -> str:
        """Render the proxy as a URL usable in a requests proxies mapping."""
        credentials = ""
        if self.username:
            user = f"{self.domain}\\{self.username}" if self.domain else self.username
            credentials = quote(user, safe="")
            if self.password:
                credentials += ":" + quote(self.password, safe="")
            credentials += "@"
        port = f":{self.port}" if self.port else ""
        return f"http://{credentials}{self.host}{port}"


def _split_domain_username(username: str) -> tuple[Optional[str], str]:
    """Split a "DOMAIN\\user" proxy username into (domain, user)."""
    if "\\" in username:
        domain, _, user = username.partition("\\")
        return domain, user
    return None, username


def _parse_no_proxy(value: Optional[str]) -> Optional[set[str]]:
    if value is None:
        return None
    return {entry.strip() for entry in value.split(",") if entry.strip()}


def from_settings(settings: Settings) -> Optional[ProxyConfig]:
    """Build a ProxyConfig from explicit configuration. None if no proxy address is set."""
    if settings is None or not settings.http_proxy_address:
        return None
    cfg = ProxyConfig(host=settings.http_proxy_address, port=settings.http_proxy_port)
    if settings.http_proxy_username:
        cfg.domain, cfg.username = _split_domain_username(settings.http_proxy_username)
    password = settings.http_proxy_secret
    if password:
        cfg.password = password.strip() or None
    cfg.no_proxy = _parse_no_proxy(settings.no_proxy)
    return cfg


def _lookup(env: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in env.items():
        if key.lower() == name:
            return value
    return None


def _build_from_environment(env: Mapping[str, str], variable: str) -> Optional[ProxyConfig]:
    proxy = _lookup(env, variable)
    if not proxy:
        return None
    parts = urlsplit(proxy)
    if not parts.hostname:
        raise ValueError(f"{variable} does not contain a host: {proxy!r}")
    cfg = ProxyConfig(host=parts.hostname, port=parts.port)
    if parts.username is not None:
        cfg.domain, cfg.username = _split_domain_username(unquote(parts.username))
    if parts.password is not None:
        cfg.password = unquote(parts.password)
    return cfg


def from_environment(env: Optional[Mapping[str, str]] = None) -> Optional[ProxyConfig]:
    """Build a ProxyConfig from https_proxy / http_proxy / no_proxy variables."""
    env = os.environ if env is None else env
    try:
        cfg = _build_from_environment(env, "https_proxy") or _build_from_environment(env, "http_proxy")
    except ValueError as e:
        logger.warning("Could not parse proxy settings from environment: %s", e)
        return None
    if cfg is not None:
        cfg.no_proxy = _parse_no_proxy(_lookup(env, "no_proxy"))
    return cfg


def get_proxy_config(settings: Optional[Settings] = None) -> Optional[ProxyConfig]:
    """Return the effective proxy configuration, or None when no proxy applies."""
    return from_settings(settings) or from_environment()
