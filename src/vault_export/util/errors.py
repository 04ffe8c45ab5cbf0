from __future__ import annotations

from enum import IntEnum
from typing import Optional


class ExitCode(IntEnum):
    OK = 0
    REPORT_FAILED = 1
    CONFIG_ERROR = 2
    AUTH_ERROR = 3
    VAULT_API_ERROR = 4
    RUNTIME_ERROR = 5


class VaultExportError(Exception):
    """Base error for the export pipeline."""


class ConfigError(VaultExportError):
    """Raised for configuration or argument issues."""


class AuthenticationError(VaultExportError):
    """Raised when a vault logon (or re-logon) cannot produce a token."""


class VaultApiError(VaultExportError):
    """
    Base for failures talking to the vault REST API.
    Carries enough context to diagnose a failed call from the logs alone.
    """

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.attempts = attempts
        self.offset = offset

    def context(self) -> dict:
        out = {
            "url": self.url,
            "status_code": self.status_code,
            "attempts": self.attempts,
            "offset": self.offset,
        }
        return {k: v for k, v in out.items() if v is not None}


class RequestFailedError(VaultApiError):
    """Raised when a request fails in a non-retriable way."""


class RetriesExhaustedError(RequestFailedError):
    """Raised when every allowed attempt hit a retryable failure."""


class ResponseShapeError(VaultApiError):
    """Raised for empty, non-JSON, or structurally unexpected response bodies."""


class PaginationIntegrityError(VaultApiError):
    """Raised when an identifier repeats within one pagination sequence."""

    def __init__(self, message: str, *, identifier: str, **kwargs: object) -> None:
        super().__init__(message, **kwargs)  # type: ignore[arg-type]
        self.identifier = identifier


class ExportError(VaultExportError):
    """Raised when writing export artifacts fails."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, AuthenticationError):
        return int(ExitCode.AUTH_ERROR)
    if isinstance(exc, VaultApiError):
        return int(ExitCode.VAULT_API_ERROR)
    # ExportError, other VaultExportError, OSError and anything unexpected.
    return int(ExitCode.RUNTIME_ERROR)
