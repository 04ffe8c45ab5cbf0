from __future__ import annotations

from typing import Optional

import requests
from requests.adapters import HTTPAdapter

DEFAULT_POOL_SIZE = 4
USER_AGENT = "vault-export"


def build_http_session(*, verify_tls: bool = True, pool_size: Optional[int] = None) -> requests.Session:
    """
    Shared requests.Session for the whole run. urllib3-level retries are
    disabled; retry policy lives in ResilientRequester so every attempt is
    classified and logged.
    """
    session = requests.Session()
    size = pool_size if pool_size and pool_size > 0 else DEFAULT_POOL_SIZE
    adapter = HTTPAdapter(pool_connections=size, pool_maxsize=size, max_retries=0)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.verify = verify_tls
    session.headers.update({"Accept": "application/json", "User-Agent": USER_AGENT})
    return session


def api_url(base_url: str, path: str) -> str:
    """Join the configured base URL (e.g. https://pvwa.example.com/PasswordVault) and an API path."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"
