"""
HTTP gateway base for the workflow's external collaborators.

All outbound HTTP calls (document store, HSM signature service, payment
gateway) go through ``HttpGateway.request``. Direct `requests` calls in
services or blueprints are FORBIDDEN.

  - Retry: max 2 attempts, exponential backoff (1 s → 4 s)
  - Timeout: INTEGRATION_TIMEOUT_SECONDS (default 30 s)
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause per gateway
  - Structured GatewayResult returned; clients raise IntegrationError

Threading: circuit breaker state is per instance and guarded by a lock.

Testability: pass a mock `session` (and ``backoff=[0, 0]``) to the
gateway constructor instead of letting it create a real requests.Session.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5
_CB_WINDOW_SECONDS = 60
_CB_OPEN_DURATION_SECONDS = 30

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]

_DEFAULT_TIMEOUT = 30


class IntegrationError(Exception):
    """An external collaborator could not answer. Safe to retry later."""

    code = "INTEGRATION_ERROR"
    retryable = True

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        self.service = service
        self.status_code = status_code
        self.message = f"{service}: {message}"
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "service": self.service,
            "status_code": self.status_code,
        }


class CircuitOpenError(IntegrationError):
    """Raised when the circuit breaker is open for a gateway."""


class GatewayResult:
    """Structured return value from HttpGateway calls.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body (dict or list), else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
        circuit_open:   True when the call was refused by the breaker.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
        circuit_open: bool = False,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.circuit_open = circuit_open

    def to_log_dict(self) -> dict:
        return {
            "http_status_code": self.status_code,
            "error_message": self.error,
            "duration_ms": self.duration_ms,
            "status": "success" if self.ok else "error",
        }


class HttpGateway:
    """JSON-over-HTTP client with retry and circuit breaking.

    Subclasses set ``service_name`` and add one method per remote operation.
    """

    service_name = "external"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        backoff: list[float] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session: requests.Session | None = session
        self._backoff = list(_RETRY_BACKOFF_SECONDS if backoff is None else backoff)
        self._cb_lock = threading.Lock()
        self._failures: list[datetime] = []
        self._open_until: datetime | None = None

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _circuit_closed(self) -> bool:
        now = datetime.now(timezone.utc)
        with self._cb_lock:
            if self._open_until and now < self._open_until:
                logger.warning("Circuit open for %s until %s", self.service_name, self._open_until)
                return False
            window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
            self._failures = [f for f in self._failures if f >= window_start]
            if len(self._failures) >= _CB_FAILURE_THRESHOLD:
                self._open_until = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
                logger.error(
                    "Circuit opened for %s: %d failures in %ds window",
                    self.service_name, len(self._failures), _CB_WINDOW_SECONDS,
                )
                return False
            return True

    def _record_failure(self) -> None:
        with self._cb_lock:
            self._failures.append(datetime.now(timezone.utc))

    def _record_success(self) -> None:
        with self._cb_lock:
            self._failures.clear()
            self._open_until = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | list | None = None,
        params: dict | None = None,
    ) -> GatewayResult:
        """Execute a request with retries. Always returns; callers check ``.ok``."""
        if not self._circuit_closed():
            return GatewayResult(
                ok=False, status_code=None, data=None,
                error="Circuit breaker is open, calls temporarily suspended",
                duration_ms=0, circuit_open=True,
            )

        url = f"{self.base_url}/{path.lstrip('/')}"
        kwargs: dict[str, Any] = {"headers": self._headers(), "timeout": self.timeout}
        if json_body is not None:
            kwargs["json"] = json_body
        if params:
            kwargs["params"] = params

        last_error = "Unknown error"
        last_status: int | None = None
        started = time.perf_counter()

        for attempt in range(_RETRY_MAX + 1):
            try:
                t0 = time.perf_counter()
                resp = self.session.request(method, url, **kwargs)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.ok:
                    self._record_success()
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(True, resp.status_code, data, None, duration_ms)

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                self._record_failure()
                # 4xx other than 429 will not improve on retry
                if 400 <= resp.status_code < 500 and resp.status_code != 429:
                    break
                logger.warning(
                    "%s request failed attempt=%d/%d status=%d url=%s",
                    self.service_name, attempt + 1, _RETRY_MAX + 1, resp.status_code, url,
                )

            except requests.Timeout:
                last_error = f"Request timed out after {self.timeout}s"
                self._record_failure()
                logger.warning(
                    "%s request timed out attempt=%d/%d url=%s",
                    self.service_name, attempt + 1, _RETRY_MAX + 1, url,
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                self._record_failure()
                logger.warning(
                    "%s network error attempt=%d/%d url=%s error=%s",
                    self.service_name, attempt + 1, _RETRY_MAX + 1, url, last_error,
                )

            if attempt < _RETRY_MAX and self._backoff:
                sleep_s = self._backoff[min(attempt, len(self._backoff) - 1)]
                if sleep_s:
                    time.sleep(sleep_s)

        return GatewayResult(
            ok=False,
            status_code=last_status,
            data=None,
            error=last_error,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    def call(self, method: str, path: str, **kwargs) -> dict:
        """``request`` that raises IntegrationError instead of returning a failed result."""
        result = self.request(method, path, **kwargs)
        if result.circuit_open:
            raise CircuitOpenError(self.service_name, result.error)
        if not result.ok:
            raise IntegrationError(self.service_name, result.error or "request failed", result.status_code)
        return result.data if isinstance(result.data, dict) else {"items": result.data}
