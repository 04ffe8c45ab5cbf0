from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from ..auth.session import AuthSession
from ..logging import get_logger
from ..util.errors import RequestFailedError, ResponseShapeError, RetriesExhaustedError
from ..util.serialization import redact_params, truncate_text

LOG = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 5.0
DEFAULT_TIMEOUT = 60.0


class Outcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    AUTH_EXPIRED = "auth_expired"
    NON_RETRYABLE = "non_retryable"


@dataclass(frozen=True)
class AttemptResult:
    outcome: Outcome
    status_code: Optional[int] = None
    body: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt` (1-based): base, 2*base, 4*base, ..."""
        return self.base_delay * (2 ** (attempt - 1))


def classify_status(status_code: int) -> Outcome:
    if 200 <= status_code < 300:
        return Outcome.SUCCESS
    if status_code == 401:
        return Outcome.AUTH_EXPIRED
    if status_code in RETRYABLE_STATUS_CODES:
        return Outcome.RETRYABLE
    return Outcome.NON_RETRYABLE


def _parse_body(resp: requests.Response, url: str) -> Any:
    if not resp.content or not resp.content.strip():
        raise ResponseShapeError(f"Empty response body from {url}", url=url, status_code=resp.status_code)
    try:
        return resp.json()
    except ValueError as e:
        raise ResponseShapeError(
            f"Response from {url} is not valid JSON: {truncate_text(resp.text, 120)}",
            url=url,
            status_code=resp.status_code,
        ) from e


class ResilientRequester:
    """
    Executes one vault API request with bounded retries.

    Each attempt is reduced to an AttemptResult; the loop in execute() acts on
    the classified outcome only:
      - SUCCESS: return the parsed JSON body.
      - RETRYABLE (408/429/5xx, timeouts, connection errors): back off and retry
        while attempts remain.
      - AUTH_EXPIRED (401): refresh the AuthSession once and retry immediately.
        The refresh does not count against max_retries; a second 401 is final.
      - NON_RETRYABLE (other 4xx): raise at once.
    """

    def __init__(
        self,
        auth: AuthSession,
        http: requests.Session,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.auth = auth
        self.policy = policy or RetryPolicy()
        self._http = http
        self._sleep = sleep
        self.calls = 0

    def get(self, url: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        return self.execute("GET", url, params=params)

    def _attempt(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]],
        json_body: Any,
    ) -> AttemptResult:
        self.calls += 1
        try:
            resp = self._http.request(
                method,
                url,
                params=dict(params) if params else None,
                json=json_body,
                headers=self.auth.auth_header(),
                timeout=self.policy.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            return AttemptResult(Outcome.RETRYABLE, error=f"{type(e).__name__}: {e}")
        except requests.RequestException as e:
            return AttemptResult(Outcome.NON_RETRYABLE, error=f"{type(e).__name__}: {e}")

        outcome = classify_status(resp.status_code)
        if outcome is Outcome.SUCCESS:
            return AttemptResult(outcome, resp.status_code, body=_parse_body(resp, url))
        return AttemptResult(outcome, resp.status_code, error=truncate_text(resp.text, 200) or None)

    def execute(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
    ) -> Any:
        max_retries = self.policy.max_retries
        safe_params = redact_params(params)
        attempt = 0
        call = 0
        refreshed = False
        last: Optional[AttemptResult] = None

        while attempt < max_retries:
            call += 1
            log_ctx: Dict[str, Any] = {"method": method, "url": url, "attempt": call, "params": safe_params}
            LOG.debug("Sending request", extra=log_ctx)
            result = self._attempt(method, url, params, json_body)
            log_ctx.update(status_code=result.status_code, outcome=result.outcome.value)

            if result.outcome is Outcome.SUCCESS:
                LOG.debug("Request succeeded", extra=log_ctx)
                return result.body

            if result.outcome is Outcome.AUTH_EXPIRED:
                if refreshed:
                    LOG.error("Request still unauthorized after re-authentication", extra=log_ctx)
                    raise RequestFailedError(
                        f"{method} {url} returned HTTP 401 after token refresh",
                        url=url,
                        status_code=result.status_code,
                        attempts=call,
                    )
                LOG.warning("Token rejected; re-authenticating before retry", extra=log_ctx)
                refreshed = True
                self.auth.refresh()
                continue

            attempt += 1
            last = result
            if result.outcome is Outcome.NON_RETRYABLE:
                LOG.error("Request failed with non-retryable error", extra={**log_ctx, "error": result.error})
                raise RequestFailedError(
                    f"{method} {url} failed: HTTP {result.status_code}: {result.error}"
                    if result.status_code is not None
                    else f"{method} {url} failed: {result.error}",
                    url=url,
                    status_code=result.status_code,
                    attempts=call,
                )

            if attempt < max_retries:
                delay = self.policy.delay_for(attempt)
                LOG.warning(
                    "Retryable failure; backing off",
                    extra={**log_ctx, "error": result.error, "delay_s": delay},
                )
                self._sleep(delay)
            else:
                LOG.warning("Retryable failure on final attempt", extra={**log_ctx, "error": result.error})

        status = last.status_code if last else None
        detail = f"HTTP {status}" if status is not None else (last.error if last else "no response")
        LOG.error(
            "Request failed after exhausting retries",
            extra={"method": method, "url": url, "attempt": call, "status_code": status},
        )
        raise RetriesExhaustedError(
            f"{method} {url} failed after {attempt} attempts: {detail}",
            url=url,
            status_code=status,
            attempts=attempt,
        )
