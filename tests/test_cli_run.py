from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from fakes import FakeHttp, FakeResponse, make_account, make_safe, make_user, paged
from vault_export import cli
from vault_export.auth.secrets import PromptSecretStore

BASE = "https://pvwa.example.com/PasswordVault"


class VaultRoutes:
    """Routes GETs by API path; unknown paths are test failures."""

    def __init__(self, routes: Dict[str, Any]) -> None:
        self.routes = routes

    def __call__(self, method: str, url: str, params: Dict[str, Any]) -> Any:
        path = url[len(BASE) :]
        route = self.routes[path]
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        return route(params)


def _install(monkeypatch, http: FakeHttp) -> None:
    monkeypatch.setattr(cli, "build_http_session", lambda **_: http)
    monkeypatch.setenv("VAULT_EXPORT_USERNAME", "svc-export")
    monkeypatch.setenv("VAULT_EXPORT_PASSWORD", "s3cret")


def _run(tmp_path: Path, *extra: str) -> int:
    argv = [
        "run",
        "--base-url",
        BASE,
        "--outdir",
        str(tmp_path),
        "--no-progress",
        "--retry-base-delay",
        "0",
        *extra,
    ]
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return int(excinfo.value.code)


def _run_dir(tmp_path: Path) -> Path:
    dirs = [p for p in tmp_path.iterdir() if p.is_dir()]
    assert len(dirs) == 1
    return dirs[0]


def _rows(path: Path) -> List[Dict[str, str]]:
    with path.open(encoding="utf-8", newline="") as fh:
        return list(csv.DictReader(fh))


def test_run_exports_all_reports(tmp_path, monkeypatch) -> None:
    safes = [make_safe(i) for i in range(240)]
    accounts = [make_account(i) for i in range(25)]
    users = {"Users": [make_user(1, groups=2), make_user(2, groups=0)], "Total": 2}
    http = FakeHttp(
        handler=VaultRoutes(
            {
                "/API/Safes/": paged(safes),
                "/API/Accounts/": paged(accounts),
                "/API/Users": [FakeResponse(200, users)],
            }
        )
    )
    _install(monkeypatch, http)

    code = _run(tmp_path, "--page-size", "100")

    assert code == 0
    out = _run_dir(tmp_path)
    assert len(_rows(out / "safes.csv")) == 240
    assert len(_rows(out / "accounts.csv")) == 25
    assert [r["username"] for r in _rows(out / "users.csv")] == ["user1", "user2"]
    assert [r["groupName"] for r in _rows(out / "user_groups.csv")] == ["Group0", "Group1"]
    assert not list(out.glob("*.partial"))

    safe_calls = [c for c in http.calls if c.url.endswith("/API/Safes/")]
    assert [c.params["offset"] for c in safe_calls] == [0, 100, 200]
    assert all(c.headers["Authorization"] == "token-1" for c in http.calls)
    assert http.logon_bodies == [{"username": "svc-export", "password": "s3cret"}]
    assert http.logoff_calls == 1
    assert http.closed

    summary = json.loads((out / "run_summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "OK"
    assert [r["kind"] for r in summary["reports"]] == ["accounts", "users", "safes"]
    assert "s3cret" not in (out / "run_summary.json").read_text(encoding="utf-8")
    assert (out / "logs" / "vault-export.log").exists()


def test_failed_report_is_isolated_and_exit_code_nonzero(tmp_path, monkeypatch) -> None:
    http = FakeHttp(
        handler=VaultRoutes(
            {
                "/API/Accounts/": [FakeResponse(503, text="Service Unavailable")],
                "/API/Users": [FakeResponse(200, {"Users": [make_user(1)]})],
                "/API/Safes/": paged([make_safe(1), make_safe(2)]),
            }
        )
    )
    _install(monkeypatch, http)

    code = _run(tmp_path, "--max-retries", "2")

    assert code == 1
    out = _run_dir(tmp_path)
    assert not (out / "accounts.csv").exists()
    assert (out / "accounts.csv.partial").exists()
    assert len(_rows(out / "users.csv")) == 1
    assert len(_rows(out / "safes.csv")) == 2

    account_calls = [c for c in http.calls if c.url.endswith("/API/Accounts/")]
    assert len(account_calls) == 2

    summary = json.loads((out / "run_summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "FAILED"
    by_kind = {r["kind"]: r for r in summary["reports"]}
    assert by_kind["accounts"]["status"] == "failed"
    assert by_kind["accounts"]["error_type"] == "RetriesExhaustedError"
    assert by_kind["users"]["status"] == "succeeded"
    assert by_kind["safes"]["status"] == "succeeded"


def test_expired_token_mid_run_is_refreshed(tmp_path, monkeypatch) -> None:
    http = FakeHttp(
        handler=VaultRoutes(
            {
                "/API/Safes/": [
                    FakeResponse(401, text="token expired"),
                    FakeResponse(200, {"value": [make_safe(1)]}),
                ],
            }
        )
    )
    _install(monkeypatch, http)

    code = _run(tmp_path, "--safes")

    assert code == 0
    assert len(http.logon_bodies) == 2
    assert [c.headers["Authorization"] for c in http.calls] == ["token-1", "token-2"]
    summary = json.loads((_run_dir(tmp_path) / "run_summary.json").read_text(encoding="utf-8"))
    assert summary["token_refreshes"] == 1


def test_failed_refresh_fails_only_the_current_report(tmp_path, monkeypatch) -> None:
    class FlakyLogon(FakeHttp):
        # First logon succeeds, the refresh logon is rejected, later ones succeed.
        def post(self, url, json=None, headers=None, timeout=None):
            if url.endswith("/Logon/"):
                self.logon_status = 503 if len(self.logon_bodies) == 1 else 200
            return super().post(url, json=json, headers=headers, timeout=timeout)

    http = FlakyLogon(
        handler=VaultRoutes(
            {
                "/API/Accounts/": [FakeResponse(401, text="token expired")],
                "/API/Users": [FakeResponse(200, {"Users": [make_user(1)]})],
                "/API/Safes/": paged([make_safe(1)]),
            }
        )
    )
    _install(monkeypatch, http)

    code = _run(tmp_path)

    assert code == 1
    summary = json.loads((_run_dir(tmp_path) / "run_summary.json").read_text(encoding="utf-8"))
    by_kind = {r["kind"]: r for r in summary["reports"]}
    assert by_kind["accounts"]["status"] == "failed"
    assert by_kind["accounts"]["error_type"] == "AuthenticationError"
    assert by_kind["users"]["status"] == "succeeded"
    assert by_kind["safes"]["status"] == "succeeded"
    assert [c.url[len(BASE) :] for c in http.calls] == ["/API/Accounts/", "/API/Users", "/API/Safes/"]
    assert all(c.headers["Authorization"] == "token-1" for c in http.calls)


def test_duplicate_page_fails_only_that_report(tmp_path, monkeypatch) -> None:
    http = FakeHttp(
        handler=VaultRoutes(
            {
                # Server ignores offset: every page is the same full page.
                "/API/Safes/": lambda params: FakeResponse(200, {"value": [make_safe(1), make_safe(2)]}),
                "/API/Users": [FakeResponse(200, {"Users": [make_user(1)]})],
            }
        )
    )
    _install(monkeypatch, http)

    code = _run(tmp_path, "--safes", "--users", "--page-size", "2")

    assert code == 1
    summary = json.loads((_run_dir(tmp_path) / "run_summary.json").read_text(encoding="utf-8"))
    by_kind = {r["kind"]: r for r in summary["reports"]}
    assert by_kind["safes"]["error_type"] == "PaginationIntegrityError"
    assert by_kind["users"]["status"] == "succeeded"


def test_authentication_failure_aborts_before_any_report(tmp_path, monkeypatch) -> None:
    http = FakeHttp(logon_status=401)
    _install(monkeypatch, http)

    code = _run(tmp_path)

    assert code == 3
    assert http.calls == []
    assert http.closed
    out = _run_dir(tmp_path)
    assert not list(out.glob("*.csv"))


def test_missing_credentials_exit_with_auth_error(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "build_http_session", lambda **_: FakeHttp())
    assert _run(tmp_path) == 3


def test_missing_base_url_is_config_error(tmp_path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["run", "--outdir", str(tmp_path)])
    assert excinfo.value.code == 2


def test_validate_auth_logs_on_and_off(monkeypatch, capsys) -> None:
    http = FakeHttp()
    _install(monkeypatch, http)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["validate-auth", "--base-url", BASE])

    assert excinfo.value.code == 0
    assert len(http.logon_bodies) == 1
    assert http.logoff_calls == 1
    assert "OK: authenticated" in capsys.readouterr().out


def test_unwritable_outdir_is_runtime_error(tmp_path, monkeypatch) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    http = FakeHttp()
    _install(monkeypatch, http)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["run", "--base-url", BASE, "--outdir", str(blocker), "--no-progress"])

    assert excinfo.value.code == 5
    assert http.logon_bodies == []


def test_prompt_credentials_disable_progress_and_reprompt_on_refresh(tmp_path, monkeypatch) -> None:
    http = FakeHttp(
        handler=VaultRoutes(
            {
                "/API/Safes/": [
                    FakeResponse(401, text="token expired"),
                    FakeResponse(200, {"value": [make_safe(1)]}),
                ],
            }
        )
    )
    monkeypatch.setattr(cli, "build_http_session", lambda **_: http)
    users: List[str] = []
    store = PromptSecretStore(prompt_user=lambda p: users.append(p) or "ops", prompt_secret=lambda _: "pw")
    monkeypatch.setattr(cli, "build_secret_store", lambda *a, **k: store)
    enabled: List[bool] = []
    real_progress = cli.ExportProgress

    def _progress(**kwargs):
        enabled.append(kwargs["enabled"])
        return real_progress(**kwargs)

    monkeypatch.setattr(cli, "ExportProgress", _progress)

    code = _run(tmp_path, "--safes", "--credential-source", "prompt", "--progress")

    assert code == 0
    assert enabled == [False]
    assert users == ["Vault username: "]
    assert http.logon_bodies == [{"username": "ops", "password": "pw"}] * 2
