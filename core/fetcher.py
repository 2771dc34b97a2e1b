"""
fetcher.py -- All outbound HTTP for the identity-provider integrations.

OIDC discovery documents, JWK sets and UserInfo responses are fetched through
fetch(). Proxy selection follows core/proxy.py rather than requests' own
environment handling (trust_env=False), so the no-proxy semantics are the same
for configured and environment proxies.

Connect and read timeouts come from Settings. A timeout surfaces as a
requests.RequestException exactly like a refused connection; callers decide
which authentication failure that maps to.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import requests

from core.config import get_settings
from core.proxy import get_proxy_config

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("gatekeeper.fetcher")

# Module-level session shared across all fetcher calls for connection pooling.
# max_redirects=3 replaces the requests default of 30 -- identity providers
# answer directly, 3 hops is generous and limits SSRF via redirect chains.
_session = requests.Session()
_session.max_redirects = 3
_session.trust_env = False


@dataclass(frozen=True)
class HttpResponse:
    status: int
    content_type: Optional[str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode the body as JSON. Raises ValueError on an unparsable body."""
        return json.loads(self.body.decode("utf-8"))


def _proxies_for(url: str, settings: Settings) -> dict[str, Optional[str]]:
    proxy_cfg = get_proxy_config(settings)
    if proxy_cfg is not None and proxy_cfg.should_proxy(url):
        logger.debug("Using proxy %s:%s for %s", proxy_cfg.host, proxy_cfg.port, url)
        proxy_url = proxy_cfg.proxy_url()
        return {"http": proxy_url, "https": proxy_url}
    return {}


def fetch(url: str, headers: Optional[dict[str, str]] = None, settings: Optional[Settings] = None) -> HttpResponse:
    """GET url and return (status, content_type, body).

    Non-2xx responses are returned, not raised -- the caller knows whether a
    4xx means "credential rejected" or "provider misconfigured".

    Raises:
        requests.RequestException: connection failure, timeout, too many redirects.
    """
    settings = settings or get_settings()
    timeout = (settings.http_timeout_connection, settings.http_timeout_socket)
    resp = _session.get(url, headers=headers or {}, timeout=timeout, proxies=_proxies_for(url, settings))
    return HttpResponse(
        status=resp.status_code,
        content_type=resp.headers.get("Content-Type"),
        body=resp.content,
    )
