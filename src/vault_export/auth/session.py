from __future__ import annotations

from typing import Dict, Optional

import requests

from ..http.transport import api_url
from ..logging import get_logger
from ..util.errors import AuthenticationError
from ..util.serialization import truncate_text
from .secrets import SecretStore

LOG = get_logger(__name__)

AUTH_PROVIDERS = {"CyberArk", "LDAP", "RADIUS", "Windows"}
DEFAULT_AUTH_PROVIDER = "CyberArk"
LOGOFF_PATH = "/API/Auth/Logoff/"


def logon_path(provider: str) -> str:
    return f"/API/auth/{provider}/Logon/"


class AuthSession:
    """
    Owns the vault token for the run.

    The token is obtained by authenticate(), replaced in a single assignment by
    refresh(), and presented via auth_header(). Credentials are loaded from the
    secret store for each logon and dropped as soon as the logon request returns.
    """

    def __init__(
        self,
        base_url: str,
        secret_store: SecretStore,
        http: requests.Session,
        *,
        provider: str = DEFAULT_AUTH_PROVIDER,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url
        self.provider = provider
        self.timeout = timeout
        self._secret_store = secret_store
        self._http = http
        self._token: Optional[str] = None
        self.refresh_count = 0

    @property
    def authenticated(self) -> bool:
        return self._token is not None

    @property
    def token(self) -> str:
        if self._token is None:
            raise AuthenticationError("Not authenticated; call authenticate() first")
        return self._token

    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": self.token}

    def _logon(self) -> str:
        url = api_url(self.base_url, logon_path(self.provider))
        creds = self._secret_store.load()
        try:
            resp = self._http.post(
                url,
                json={"username": creds.username, "password": creds.password},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthenticationError(f"Logon request to {url} failed: {type(e).__name__}: {e}") from e
        finally:
            del creds

        if not 200 <= resp.status_code < 300:
            raise AuthenticationError(
                f"Logon to {url} rejected with HTTP {resp.status_code}: {truncate_text(resp.text, 200)}"
            )
        try:
            token = resp.json()
        except ValueError as e:
            raise AuthenticationError(f"Logon response from {url} is not valid JSON") from e
        if not isinstance(token, str) or not token.strip():
            raise AuthenticationError(f"Logon response from {url} did not contain a token string")
        return token.strip()

    def authenticate(self) -> str:
        LOG.info("Logging on to vault", extra={"url": self.base_url, "provider": self.provider})
        self._token = self._logon()
        LOG.info("Vault logon succeeded", extra={"provider": self.provider})
        return self._token

    def refresh(self) -> str:
        """
        Re-run logon and swap the token in one assignment. On failure the
        previous token is kept and AuthenticationError is raised; a later
        request that gets a 401 with it refreshes again.
        """
        token = self._logon()
        self._token = token
        self.refresh_count += 1
        LOG.info("Vault token refreshed", extra={"refresh_count": self.refresh_count})
        return token

    def logoff(self) -> bool:
        """Best-effort logoff; never raises."""
        if self._token is None:
            return False
        url = api_url(self.base_url, LOGOFF_PATH)
        try:
            resp = self._http.post(url, headers=self.auth_header(), timeout=self.timeout)
        except requests.RequestException as e:
            LOG.warning("Vault logoff failed", extra={"url": url, "error": f"{type(e).__name__}: {e}"})
            return False
        finally:
            self._token = None
        if not 200 <= resp.status_code < 300:
            LOG.warning("Vault logoff rejected", extra={"url": url, "status_code": resp.status_code})
            return False
        LOG.info("Logged off from vault")
        return True
