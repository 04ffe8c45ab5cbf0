from __future__ import annotations

import getpass
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

import yaml

from ..util.errors import AuthenticationError, ConfigError

CREDENTIAL_SOURCES = {"env", "file", "prompt"}
USERNAME_ENV = "VAULT_EXPORT_USERNAME"
PASSWORD_ENV = "VAULT_EXPORT_PASSWORD"
CREDENTIALS_FILE_ENV = "VAULT_EXPORT_CREDENTIALS_FILE"


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


class SecretStore(Protocol):
    """
    Source of logon credentials. load() is called once per logon so secret
    material never has to outlive a single request.
    """

    def load(self) -> Credentials: ...


def _require(value: Any, what: str, source: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise AuthenticationError(f"Missing {what} in {source}")
    return value.strip() if what == "username" else value


class EnvSecretStore:
    def __init__(self, username_var: str = USERNAME_ENV, password_var: str = PASSWORD_ENV) -> None:
        self.username_var = username_var
        self.password_var = password_var

    def load(self) -> Credentials:
        source = f"environment ({self.username_var}/{self.password_var})"
        return Credentials(
            username=_require(os.getenv(self.username_var), "username", source),
            password=_require(os.getenv(self.password_var), "password", source),
        )


class FileSecretStore:
    """
    YAML or JSON mapping with `username` and `password` keys. Keep the file
    outside the repository and readable only by the running user.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            raise AuthenticationError(f"Credentials file not found: {self.path}")
        text = self.path.read_text(encoding="utf-8")
        try:
            if self.path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text) or {}
        except (ValueError, yaml.YAMLError) as e:
            raise AuthenticationError(f"Failed to parse credentials file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise AuthenticationError(f"Credentials file {self.path} must contain a mapping")
        return data

    def load(self) -> Credentials:
        data = self._read()
        source = f"credentials file {self.path}"
        return Credentials(
            username=_require(data.get("username"), "username", source),
            password=_require(data.get("password"), "password", source),
        )


class PromptSecretStore:
    def __init__(
        self,
        username: Optional[str] = None,
        *,
        prompt_user: Callable[[str], str] = input,
        prompt_secret: Callable[[str], str] = getpass.getpass,
    ) -> None:
        self.username = username
        self._prompt_user = prompt_user
        self._prompt_secret = prompt_secret

    def load(self) -> Credentials:
        """
        Ask for the password on every call. The username is asked once and
        kept, so a token refresh only re-prompts for the password.
        """
        if not self.username:
            self.username = self._prompt_user("Vault username: ")
        username = self.username
        password = self._prompt_secret(f"Vault password for {username}: ")
        return Credentials(
            username=_require(username, "username", "prompt"),
            password=_require(password, "password", "prompt"),
        )


def build_secret_store(
    source: str,
    *,
    credentials_file: Optional[Path] = None,
    username: Optional[str] = None,
) -> SecretStore:
    source = (source or "env").lower()
    if source == "env":
        return EnvSecretStore()
    if source == "file":
        path = credentials_file
        if path is None and os.getenv(CREDENTIALS_FILE_ENV):
            path = Path(os.environ[CREDENTIALS_FILE_ENV]).expanduser()
        if path is None:
            raise ConfigError(f"credential source 'file' requires --credentials-file or {CREDENTIALS_FILE_ENV}")
        return FileSecretStore(Path(path).expanduser())
    if source == "prompt":
        return PromptSecretStore(username)
    raise ConfigError(f"Unsupported credential source: {source}")
