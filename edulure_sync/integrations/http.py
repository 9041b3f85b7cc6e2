"""Shared request/retry layer for the CRM API clients."""
import random
import time
from typing import Callable, Optional
from urllib.parse import urlparse

import requests

from edulure_sync.errors import IntegrationRequestError
from edulure_sync.logging_config import get_logger
from edulure_sync.metrics import record_request_attempt

USER_AGENT = "Edulure-Platform-Integration/1.0"
DEFAULT_RETRY_BASE_DELAY_MS = 500
DEFAULT_RETRY_MAX_DELAY_MS = 5000
MIN_RETRY_DELAY_MS = 100
RETRY_EXPONENT_CAP = 6


class CrmHttpClient:
    """
    Connection layer for CRM REST APIs, built on a requests session.

    Retries 429, 5xx and transport errors up to `max_retries` times with
    jittered exponential backoff (or the server's Retry-After). Other 4xx
    responses raise immediately. A 401 triggers one credential refresh
    when the subclass supports it.
    """

    provider = "crm"

    def __init__(self, timeout_ms: int = 12000, max_retries: int = 3,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 rng: Callable[[], float] = random.random,
                 audit_logger: Optional[Callable[[dict], None]] = None,
                 retry_base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS,
                 retry_max_delay_ms: int = DEFAULT_RETRY_MAX_DELAY_MS):
        self.timeout_seconds = max(timeout_ms, 1) / 1000
        self.max_retries = max(int(max_retries), 0)
        self.session = session or requests.Session()
        self.sleep = sleep
        self.rng = rng
        self.audit_logger = audit_logger
        self.retry_base_delay_ms = retry_base_delay_ms if retry_base_delay_ms > 0 else DEFAULT_RETRY_BASE_DELAY_MS
        self.retry_max_delay_ms = max(self.retry_base_delay_ms, retry_max_delay_ms)
        self.logger = get_logger(__name__, module=f"{self.provider}-client")

    # -------------------------
    # Hooks for subclasses
    # -------------------------
    def _auth_headers(self) -> dict:
        return {}

    def _refresh_credentials(self) -> bool:
        """Refresh credentials after a 401. Return True to replay the request once."""
        return False

    # -------------------------
    # Retry policy
    # -------------------------
    def compute_retry_delay_ms(self, attempt: int, retry_after_ms: Optional[float] = None) -> int:
        safe_attempt = max(int(attempt or 1), 1)
        exponent = min(safe_attempt - 1, RETRY_EXPONENT_CAP)
        exponential = min(self.retry_base_delay_ms * (2 ** exponent), self.retry_max_delay_ms)
        if retry_after_ms and retry_after_ms > 0:
            candidate = min(retry_after_ms, self.retry_max_delay_ms)
        else:
            candidate = exponential
        jitter = 0.75 + self.rng() * 0.5
        return max(MIN_RETRY_DELAY_MS, int(round(candidate * jitter)))

    @staticmethod
    def _retry_after_ms(response) -> Optional[float]:
        raw = response.headers.get("Retry-After")
        try:
            seconds = float(raw) if raw is not None else 0
        except (TypeError, ValueError):
            return None
        return seconds * 1000 if seconds > 0 else None

    @staticmethod
    def _safe_json(response):
        if not response.text:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    # -------------------------
    # Request loop
    # -------------------------
    def _request(self, method: str, url: str, json_body=None, params=None,
                 idempotency_key: Optional[str] = None, headers: Optional[dict] = None):
        path = urlparse(url).path
        refreshed = False
        attempt = 1

        while True:
            request_headers = {
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                **self._auth_headers(),
                **(headers or {}),
            }
            if idempotency_key:
                request_headers["Idempotency-Key"] = idempotency_key

            started = time.monotonic()
            try:
                response = self.session.request(
                    method,
                    url,
                    json=json_body,
                    params=params,
                    headers=request_headers,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                retry = attempt <= self.max_retries
                self._record_attempt(method, path, None, "retry" if retry else "failure", started, attempt,
                                     error=exc, idempotency_key=idempotency_key)
                self.logger.warning("CRM request errored", provider=self.provider, path=path,
                                    attempt=attempt, error=str(exc), timeout=isinstance(exc, requests.Timeout))
                if not retry:
                    raise IntegrationRequestError(
                        f"{self.provider} request failed after {attempt} attempts: {exc}", retryable=True
                    ) from exc
                self.sleep(self.compute_retry_delay_ms(attempt) / 1000)
                attempt += 1
                continue

            status = response.status_code

            if status == 401 and not refreshed and self._refresh_credentials():
                self._record_attempt(method, path, status, "retry", started, attempt,
                                     idempotency_key=idempotency_key)
                refreshed = True
                continue

            if status == 429 or status >= 500:
                details = self._safe_json(response)
                backoff_ms = self.compute_retry_delay_ms(attempt, self._retry_after_ms(response))
                retry = attempt <= self.max_retries
                self._record_attempt(method, path, status, "retry" if retry else "failure", started, attempt,
                                     idempotency_key=idempotency_key, backoff_ms=backoff_ms)
                self.logger.warning("CRM responded with retryable error", provider=self.provider,
                                    status=status, path=path, attempt=attempt, backoff_ms=backoff_ms)
                if not retry:
                    raise IntegrationRequestError(
                        f"{self.provider} request failed with status {status}",
                        status_code=status, details=details, retryable=True,
                    )
                self.sleep(backoff_ms / 1000)
                attempt += 1
                continue

            if not response.ok:
                details = self._safe_json(response)
                self._record_attempt(method, path, status, "failure", started, attempt,
                                     idempotency_key=idempotency_key)
                raise IntegrationRequestError(
                    f"{self.provider} request failed with status {status}",
                    status_code=status, details=details, retryable=False,
                )

            self._record_attempt(method, path, status, "success", started, attempt,
                                 idempotency_key=idempotency_key)
            return self._safe_json(response)

    def _record_attempt(self, method, path, status_code, outcome, started, attempt, error=None, **metadata):
        duration_ms = int((time.monotonic() - started) * 1000)
        record_request_attempt(self.provider, method, outcome, attempt > 1)
        if self.audit_logger is None:
            return
        try:
            self.audit_logger({
                "provider": self.provider,
                "request_method": method,
                "request_path": path,
                "status_code": status_code,
                "outcome": outcome,
                "duration_ms": duration_ms,
                "attempt": attempt,
                "metadata": metadata,
                "error_code": type(error).__name__ if error is not None else None,
                "error_message": str(error) if error is not None else None,
            })
        except Exception as exc:
            self.logger.warning("Failed to record integration audit entry", provider=self.provider, error=str(exc))
