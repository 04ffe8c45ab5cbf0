from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .auth.secrets import CREDENTIAL_SOURCES
from .auth.session import DEFAULT_AUTH_PROVIDER
from .export.csv import DEFAULT_GC_EVERY
from .http.requester import DEFAULT_BASE_DELAY, DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT
from .util.errors import ConfigError
from .util.pagination import DEFAULT_PAGE_SIZE
from .util.time import utc_timestamp_dirname

# --------
# Defaults
# --------
REPORT_KINDS = ("accounts", "users", "safes")
ENV_PREFIX = "VAULT_EXPORT_"

# Value kind of every key accepted in a config file, also used to parse the
# matching VAULT_EXPORT_<KEY> environment variable.
CONFIG_FIELD_KINDS: Dict[str, str] = {
    "base_url": "str",
    "outdir": "path",
    "reports": "reports",
    "page_size": "int",
    "max_retries": "int",
    "retry_base_delay": "float",
    "timeout": "float",
    "auth_provider": "str",
    "credential_source": "str",
    "credentials_file": "path",
    "username": "str",
    "accounts_search": "str",
    "accounts_safe": "str",
    "accounts_per_safe": "bool",
    "gc_every": "int",
    "verify_tls": "bool",
    "progress": "bool",
    "json_logs": "bool",
    "log_level": "str",
}
ALLOWED_CONFIG_KEYS = set(CONFIG_FIELD_KINDS)
# VAULT_EXPORT_USERNAME belongs to the env credential source, not the run config.
ENV_CONFIG_KEYS = tuple(k for k in CONFIG_FIELD_KINDS if k != "username")
_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}

@dataclass(frozen=True)
class RunConfig:
    # General
    outdir: Path
    base_url: Optional[str] = None
    reports: Tuple[str, ...] = REPORT_KINDS
    json_logs: bool = False
    log_level: str = "INFO"
    progress: bool = True

    # Fetch / retry
    page_size: int = DEFAULT_PAGE_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_BASE_DELAY
    timeout: float = DEFAULT_TIMEOUT
    verify_tls: bool = True

    # Auth
    auth_provider: str = DEFAULT_AUTH_PROVIDER
    credential_source: str = "env"  # env|file|prompt
    credentials_file: Optional[Path] = None
    username: Optional[str] = None

    # Accounts scoping
    accounts_search: Optional[str] = None
    accounts_safe: Optional[str] = None
    accounts_per_safe: bool = False

    # Export
    gc_every: int = DEFAULT_GC_EVERY

    # Internal/derived
    collected_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds")
    )


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Top-level config must be an object")
    return data


def _parse_reports(value: Union[str, List[Any], Tuple[Any, ...]]) -> Tuple[str, ...]:
    if isinstance(value, str):
        items = [r.strip().lower() for r in value.split(",") if r.strip()]
    elif isinstance(value, (list, tuple)) and all(isinstance(r, str) for r in value):
        items = [r.strip().lower() for r in value if r.strip()]
    else:
        raise ConfigError("Config field 'reports' must be a list of strings or comma-separated string")
    unknown = sorted(set(items) - set(REPORT_KINDS))
    if unknown:
        raise ConfigError(f"Unknown report kind(s): {', '.join(unknown)}; expected {', '.join(REPORT_KINDS)}")
    # Declared order, not the order given.
    return tuple(kind for kind in REPORT_KINDS if kind in items)


def _coerce(key: str, value: Any, label: str) -> Any:
    """Convert a raw config-file or environment value to the kind declared for key."""
    kind = CONFIG_FIELD_KINDS[key]
    if kind == "reports":
        return _parse_reports(value)
    if isinstance(value, bool) and kind != "bool":
        raise ConfigError(f"{label} must be a {kind}")
    if kind == "bool":
        if isinstance(value, bool):
            return value
        word = str(value).strip().lower()
        if word in _TRUE_WORDS or word in _FALSE_WORDS:
            return word in _TRUE_WORDS
        raise ConfigError(f"{label} must be a boolean")
    if kind in {"int", "float"}:
        cast = int if kind == "int" else float
        if isinstance(value, (int, float)) and (kind == "float" or isinstance(value, int)):
            return cast(value)
        try:
            return cast(str(value).strip())
        except ValueError:
            raise ConfigError(f"{label} must be {'an integer' if kind == 'int' else 'a number'}") from None
    if kind == "path" and isinstance(value, Path):
        return value
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string")
    return value


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    if "password" in data:
        raise ConfigError("Passwords are not accepted in the run config; use a credential source")
    return _compact_dict(
        {
            key: _coerce(key, value, f"Config field '{key}'")
            for key, value in data.items()
            if key in ALLOWED_CONFIG_KEYS and value is not None
        }
    )


def _env_config() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in ENV_CONFIG_KEYS:
        raw = os.getenv(ENV_PREFIX + key.upper())
        if raw is None or not raw.strip():
            continue
        out[key] = _coerce(key, raw.strip(), f"Environment variable {ENV_PREFIX}{key.upper()}")
    return out


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def _timestamp_dir(base: Optional[Union[str, Path]]) -> Path:
    ts = utc_timestamp_dirname()
    if base:
        return Path(base) / ts
    return Path("out") / ts


def _cli_reports(ns: argparse.Namespace) -> Optional[Tuple[str, ...]]:
    selected = [kind for kind in REPORT_KINDS if getattr(ns, kind, None)]
    return tuple(selected) if selected else None


def _validate(merged: Dict[str, Any], command: str) -> None:
    if command in {"run", "validate-auth"} and not merged.get("base_url"):
        raise ConfigError("--base-url is required (or set base_url in the config file / VAULT_EXPORT_BASE_URL)")
    base_url = merged.get("base_url")
    if base_url and not str(base_url).lower().startswith(("https://", "http://")):
        raise ConfigError(f"base URL must start with https:// or http://, got: {base_url}")
    for key in ("page_size", "max_retries", "gc_every"):
        value = merged.get(key)
        minimum = 0 if key == "gc_every" else 1
        if value is not None and int(value) < minimum:
            raise ConfigError(f"{key} must be >= {minimum}")
    if float(merged.get("retry_base_delay") or 0) < 0:
        raise ConfigError("retry_base_delay must be >= 0")
    if merged.get("timeout") is not None and float(merged["timeout"]) <= 0:
        raise ConfigError("timeout must be > 0")
    source = str(merged.get("credential_source") or "env").lower()
    if source not in CREDENTIAL_SOURCES:
        raise ConfigError(f"credential_source must be one of: {', '.join(sorted(CREDENTIAL_SOURCES))}")
    if merged.get("accounts_safe") and merged.get("accounts_per_safe"):
        raise ConfigError("--accounts-safe and --accounts-per-safe are mutually exclusive")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vault-export", description="Vault bulk CSV export")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # common flags builder
    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument("--base-url", dest="base_url", default=None, help="Vault base URL, e.g. https://pvwa/PasswordVault")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")
        p.add_argument("--timeout", type=float, default=None, help=f"Per-request timeout seconds (default {DEFAULT_TIMEOUT:g})")
        p.add_argument(
            "--verify-tls",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Verify the vault TLS certificate (default: on)",
        )
        # Auth
        p.add_argument(
            "--auth-provider",
            default=None,
            help=f"Logon provider segment: CyberArk, LDAP, RADIUS, Windows (default {DEFAULT_AUTH_PROVIDER})",
        )
        p.add_argument(
            "--credential-source",
            default=None,
            choices=sorted(CREDENTIAL_SOURCES),
            help=(
                "Where logon credentials come from (default: env). 'prompt' asks for the "
                "password again on token refresh and turns off the progress display"
            ),
        )
        p.add_argument("--credentials-file", type=Path, default=None, help="YAML/JSON file with username/password")
        p.add_argument("--username", default=None, help="Username for the prompt credential source")

    # run
    p_run = subparsers.add_parser("run", help="Export the selected reports to CSV")
    add_common(p_run)
    p_run.add_argument("--outdir", type=Path, default=None, help="Output base directory (out/TS)")
    p_run.add_argument("--accounts", action="store_true", default=None, help="Export accounts")
    p_run.add_argument("--users", action="store_true", default=None, help="Export users and group memberships")
    p_run.add_argument("--safes", action="store_true", default=None, help="Export safes")
    p_run.add_argument("--page-size", type=int, default=None, help=f"Records per page (default {DEFAULT_PAGE_SIZE})")
    p_run.add_argument("--max-retries", type=int, default=None, help=f"Attempts per request (default {DEFAULT_MAX_RETRIES})")
    p_run.add_argument(
        "--retry-base-delay",
        type=float,
        default=None,
        help=f"Backoff base seconds; doubles per attempt (default {DEFAULT_BASE_DELAY:g})",
    )
    p_run.add_argument("--accounts-search", default=None, help="Free-text search applied to the account listing")
    p_run.add_argument("--accounts-safe", default=None, help="Only export accounts from this safe")
    p_run.add_argument(
        "--accounts-per-safe",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="List accounts safe by safe (avoids the 20,000-record cross-safe cap)",
    )
    p_run.add_argument(
        "--gc-every",
        type=int,
        default=None,
        help=f"Records between memory checkpoints, 0 disables (default {DEFAULT_GC_EVERY})",
    )
    p_run.add_argument(
        "--progress",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Show a progress display (default: on unless JSON logs)",
    )

    # validate-auth
    p_val = subparsers.add_parser("validate-auth", help="Log on and off to validate credentials")
    add_common(p_val)
    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[list[str]] = None,
    subcommand: Optional[str] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, RunConfig) where command is the subcommand selected: run|validate-auth
    """
    parser = build_parser()
    ns = args if args is not None else parser.parse_args(argv)
    command = ns.command if subcommand is None else subcommand

    # defaults
    base: Dict[str, Any] = {
        "base_url": None,
        "outdir": None,
        "reports": REPORT_KINDS,
        "page_size": DEFAULT_PAGE_SIZE,
        "max_retries": DEFAULT_MAX_RETRIES,
        "retry_base_delay": DEFAULT_BASE_DELAY,
        "timeout": DEFAULT_TIMEOUT,
        "auth_provider": DEFAULT_AUTH_PROVIDER,
        "credential_source": "env",
        "credentials_file": None,
        "username": None,
        "accounts_search": None,
        "accounts_safe": None,
        "accounts_per_safe": False,
        "gc_every": DEFAULT_GC_EVERY,
        "verify_tls": True,
        "progress": None,
        "json_logs": False,
        "log_level": "INFO",
    }

    # config file
    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    # env
    env_cfg = _env_config()

    # CLI
    cli_cfg: Dict[str, Any] = {key: getattr(ns, key, None) for key in CONFIG_FIELD_KINDS}
    cli_cfg["reports"] = _cli_reports(ns)
    cli_cfg = _compact_dict(cli_cfg)

    merged = _merge_dicts(base, _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg)))
    _validate(merged, command)

    # Normalize/construct types
    outdir_raw = merged.get("outdir")
    outdir = _timestamp_dir(outdir_raw) if command == "run" else Path(outdir_raw) if outdir_raw else Path.cwd()
    json_logs = bool(merged["json_logs"])
    progress = merged.get("progress")
    credentials_file = merged.get("credentials_file")

    cfg = RunConfig(
        outdir=outdir,
        base_url=str(merged["base_url"]).rstrip("/") if merged.get("base_url") else None,
        reports=tuple(merged.get("reports") or REPORT_KINDS),
        json_logs=json_logs,
        log_level=(merged.get("log_level") or "INFO").upper(),
        progress=(not json_logs) if progress is None else bool(progress),
        page_size=int(merged["page_size"]),
        max_retries=int(merged["max_retries"]),
        retry_base_delay=float(merged["retry_base_delay"]),
        timeout=float(merged["timeout"]),
        verify_tls=bool(merged["verify_tls"]),
        auth_provider=str(merged.get("auth_provider") or DEFAULT_AUTH_PROVIDER),
        credential_source=str(merged.get("credential_source") or "env").lower(),
        credentials_file=Path(credentials_file).expanduser() if credentials_file else None,
        username=merged.get("username"),
        accounts_search=merged.get("accounts_search"),
        accounts_safe=merged.get("accounts_safe"),
        accounts_per_safe=bool(merged["accounts_per_safe"]),
        gc_every=int(merged["gc_every"]),
    )
    return command, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    return {
        "outdir": str(cfg.outdir),
        "base_url": cfg.base_url,
        "reports": list(cfg.reports),
        "page_size": cfg.page_size,
        "max_retries": cfg.max_retries,
        "retry_base_delay": cfg.retry_base_delay,
        "timeout": cfg.timeout,
        "verify_tls": cfg.verify_tls,
        "auth_provider": cfg.auth_provider,
        "credential_source": cfg.credential_source,
        "credentials_file": str(cfg.credentials_file) if cfg.credentials_file else None,
        "accounts_search": cfg.accounts_search,
        "accounts_safe": cfg.accounts_safe,
        "accounts_per_safe": cfg.accounts_per_safe,
        "gc_every": cfg.gc_every,
        "collected_at": cfg.collected_at,
    }
