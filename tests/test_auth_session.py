from __future__ import annotations

import pytest
import requests

from fakes import FakeHttp, FakeResponse, StaticSecretStore
from vault_export.auth.session import AuthSession, logon_path
from vault_export.util.errors import AuthenticationError

BASE = "https://pvwa.example.com/PasswordVault"


def test_authenticate_posts_credentials_and_stores_token() -> None:
    http = FakeHttp()
    auth = AuthSession(BASE, StaticSecretStore("ops", "pw"), http)

    assert not auth.authenticated
    assert auth.authenticate() == "token-1"
    assert auth.authenticated
    assert auth.auth_header() == {"Authorization": "token-1"}
    assert http.logon_bodies == [{"username": "ops", "password": "pw"}]


def test_logon_path_uses_provider_segment() -> None:
    assert logon_path("LDAP") == "/API/auth/LDAP/Logon/"


def test_token_access_before_authenticate_raises() -> None:
    auth = AuthSession(BASE, StaticSecretStore(), FakeHttp())
    with pytest.raises(AuthenticationError):
        auth.auth_header()


def test_rejected_logon_raises_without_leaking_password() -> None:
    http = FakeHttp(logon_status=401)
    auth = AuthSession(BASE, StaticSecretStore(password="do-not-print"), http)

    with pytest.raises(AuthenticationError) as excinfo:
        auth.authenticate()

    assert "401" in str(excinfo.value)
    assert "do-not-print" not in str(excinfo.value)
    assert not auth.authenticated


def test_logon_transport_error_maps_to_authentication_error() -> None:
    class Unreachable(FakeHttp):
        def post(self, url, json=None, headers=None, timeout=None):
            raise requests.ConnectionError("name resolution failed")

    auth = AuthSession(BASE, StaticSecretStore(), Unreachable())
    with pytest.raises(AuthenticationError):
        auth.authenticate()


@pytest.mark.parametrize("text", ["not json", '{"token": "abc"}', '""'])
def test_logon_without_token_string_is_rejected(text: str) -> None:
    class OddLogon(FakeHttp):
        def post(self, url, json=None, headers=None, timeout=None):
            return FakeResponse(200, text=text)

    auth = AuthSession(BASE, StaticSecretStore(), OddLogon())
    with pytest.raises(AuthenticationError):
        auth.authenticate()


def test_refresh_swaps_token_and_reloads_credentials() -> None:
    store = StaticSecretStore()
    http = FakeHttp()
    auth = AuthSession(BASE, store, http)
    auth.authenticate()

    assert auth.refresh() == "token-2"
    assert auth.token == "token-2"
    assert auth.refresh_count == 1
    assert store.loads == 2


def test_failed_refresh_keeps_previous_token() -> None:
    http = FakeHttp()
    auth = AuthSession(BASE, StaticSecretStore(), http)
    auth.authenticate()
    http.logon_status = 500

    with pytest.raises(AuthenticationError):
        auth.refresh()
    assert auth.authenticated
    assert auth.token == "token-1"
    assert auth.refresh_count == 0

    http.logon_status = 200
    assert auth.refresh() == "token-3"
    assert auth.refresh_count == 1


def test_logoff_is_best_effort_and_clears_token() -> None:
    http = FakeHttp()
    auth = AuthSession(BASE, StaticSecretStore(), http)

    assert auth.logoff() is False
    auth.authenticate()
    assert auth.logoff() is True
    assert http.logoff_calls == 1
    assert not auth.authenticated


def test_logoff_swallows_transport_errors() -> None:
    class FlakyLogoff(FakeHttp):
        def post(self, url, json=None, headers=None, timeout=None):
            if url.endswith("/Logoff/"):
                raise requests.Timeout("slow")
            return super().post(url, json=json, headers=headers, timeout=timeout)

    auth = AuthSession(BASE, StaticSecretStore(), FlakyLogoff())
    auth.authenticate()
    assert auth.logoff() is False
    assert not auth.authenticated
