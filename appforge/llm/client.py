"""Generative backend client for appforge.

Every call passes through admission control and quota accounting before
any network traffic, retries throttled responses at a fixed interval, and
fails over from the primary to the backup credential on auth-class errors.

send() never raises for backend trouble: the outcome is a SendResult
carrying either a BackendResponse or a tagged ClientError.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from appforge.core.config import BackendConfig
from appforge.core.models import (
    BackendRequest,
    BackendResponse,
    ClientError,
    ClientErrorKind,
    CredentialRole,
    SendResult,
)
from appforge.llm.credentials import CredentialVault
from appforge.llm.quota import QuotaTracker
from appforge.llm.rate_limiter import RateLimiter

logger = logging.getLogger("appforge.llm.client")

AUTH_ERROR_CODES = frozenset({
    "INVALID_API_KEY",
    "API_KEY_INVALID",
    "PERMISSION_DENIED",
    "UNAUTHENTICATED",
})
AUTH_HTTP_STATUSES = frozenset({401, 403})
THROTTLE_HTTP_STATUS = 429


@dataclass
class ResilienceState:
    """Shared admission/quota/credential state injected into clients.

    One instance may back any number of BackendClients in the process;
    each component guards its own state.
    """

    rate_limiter: RateLimiter
    quota: QuotaTracker
    vault: CredentialVault


@dataclass
class SendOptions:
    use_thinking: bool = False
    thinking_budget: Optional[int] = None
    model: Optional[str] = None
    cancel_event: Optional[threading.Event] = None


class BackendClient:
    """Synchronous client for the backend's generateContent endpoint."""

    def __init__(
        self,
        state: ResilienceState,
        config: Optional[BackendConfig] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.state = state
        self.config = config or BackendConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self._client: Optional[httpx.Client] = None
        self._sleep = sleep or time.sleep

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(
                    self.config.timeout_seconds,
                    connect=self.config.connect_timeout_seconds,
                ),
            )
        return self._client

    def send(self, request: BackendRequest, options: Optional[SendOptions] = None) -> SendResult:
        """Send one request through admission control, quota and failover.

        Args:
            request: Logical request (system instruction, contents, tools).
            options: Thinking mode, model override, cancellation event.

        Returns:
            SendResult with the response on success, or a ClientError.
        """
        options = options or SendOptions()
        limiter = self.state.rate_limiter
        quota = self.state.quota

        if _is_cancelled(options):
            return _cancelled()

        if not limiter.try_reserve():
            wait_ms = limiter.wait_time_ms()
            return SendResult.failure(
                ClientErrorKind.RATE_LIMIT,
                "RATE_LIMIT",
                f"Please wait {wait_ms // 1000} seconds before next request",
                retry_after_ms=wait_ms,
            )

        request = self._prepare(request, options)
        units = quota.estimate_units(request.contents)
        if not quota.try_reserve(units):
            limiter.release_reservation()
            return SendResult.failure(
                ClientErrorKind.QUOTA_EXCEEDED,
                "TOKEN_LIMIT",
                f"Insufficient token quota for ~{units} tokens "
                f"(daily remaining {quota.remaining_daily()}, "
                f"minute remaining {quota.remaining_minute()})",
            )

        committed = False
        try:
            result = self._send_with_failover(request, options)
            if result.ok:
                limiter.commit_reservation()
                quota.commit(units)
                committed = True
            return result
        finally:
            if not committed:
                limiter.release_reservation()
                quota.release(units)

    def generate_text(
        self,
        prompt: str,
        system_instruction: str = "",
        options: Optional[SendOptions] = None,
    ) -> SendResult:
        """Single user turn convenience wrapper around send()."""
        request = BackendRequest(
            system_instruction=system_instruction,
            contents=[{"role": "user", "parts": [{"text": prompt}]}],
        )
        return self.send(request, options)

    def resilience_status(self) -> dict[str, Any]:
        """Expose limiter/quota/vault state for diagnostics (secrets masked)."""
        limiter = self.state.rate_limiter
        quota = self.state.quota
        return {
            "rate_limit": {
                "remaining": limiter.remaining(),
                "wait_time_ms": limiter.wait_time_ms(),
            },
            "quota": {
                "remaining_daily": quota.remaining_daily(),
                "remaining_minute": quota.remaining_minute(),
                "summary": quota.usage_stats(),
            },
            "credentials": self.state.vault.status().model_dump(mode="json"),
        }

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _prepare(self, request: BackendRequest, options: SendOptions) -> BackendRequest:
        if options.use_thinking and request.thinking_budget is None:
            budget = options.thinking_budget or self.config.default_thinking_budget
            return request.model_copy(update={"thinking_budget": budget})
        return request

    def _send_with_failover(self, request: BackendRequest, options: SendOptions) -> SendResult:
        vault = self.state.vault
        active_secret = vault.get_active()
        if not active_secret:
            return SendResult.failure(
                ClientErrorKind.AUTH, "NO_CREDENTIAL", "No backend credential configured",
            )

        result = self._request_with_retry(request, active_secret, options)
        if result.ok:
            vault.record_outcome(active_secret, True)
            return result

        if (
            _is_auth_failure(result.error)
            and vault.active_role == CredentialRole.PRIMARY
            and vault.has_backup()
        ):
            logger.warning(
                "Auth failure on primary credential (%s); retrying with backup",
                result.error.code,
            )
            backup_secret = vault.get_secret(CredentialRole.BACKUP)
            backup_result = self._request_with_retry(request, backup_secret, options)
            if backup_result.ok:
                vault.record_outcome(backup_secret, True)
                vault.record_outcome(active_secret, False)
                vault.failover()
                return backup_result
            vault.record_outcome(backup_secret, False)

        vault.record_outcome(active_secret, False)
        return result

    def _request_with_retry(
        self,
        request: BackendRequest,
        secret: str,
        options: SendOptions,
    ) -> SendResult:
        """Execute one exchange, retrying only throttled (429) responses."""
        model = options.model or self.config.model
        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": secret,
        }
        payload = request.to_payload()
        max_attempts = self.config.max_attempts

        for attempt in range(max_attempts):
            if _is_cancelled(options):
                return _cancelled()
            try:
                resp = self.client.post(url, json=payload, headers=headers)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                logger.warning("Network error talking to backend: %s", e)
                return SendResult.failure(
                    ClientErrorKind.NETWORK,
                    "NETWORK_ERROR",
                    f"Failed to reach backend: {e}",
                )

            if resp.status_code == THROTTLE_HTTP_STATUS:
                if attempt + 1 < max_attempts:
                    delay = self.config.throttle_backoff_seconds
                    logger.warning(
                        "Throttled by backend. Waiting %.1fs before retry %d/%d",
                        delay, attempt + 2, max_attempts,
                    )
                    if self._wait(delay, options.cancel_event):
                        return _cancelled()
                continue

            if resp.is_success:
                return _parse_success(resp)
            return _parse_failure(resp)

        logger.error("Backend still throttling after %d attempts", max_attempts)
        return SendResult.failure(
            ClientErrorKind.MAX_RETRIES_EXCEEDED,
            "MAX_RETRIES_EXCEEDED",
            f"Failed after {max_attempts} attempts",
            http_status=THROTTLE_HTTP_STATUS,
        )

    def _wait(self, seconds: float, cancel_event: Optional[threading.Event]) -> bool:
        """Block this worker for the backoff; True if cancelled meanwhile."""
        if cancel_event is not None:
            return cancel_event.wait(seconds)
        self._sleep(seconds)
        return False


def _is_cancelled(options: SendOptions) -> bool:
    return options.cancel_event is not None and options.cancel_event.is_set()


def _cancelled() -> SendResult:
    return SendResult.failure(ClientErrorKind.CANCELLED, "CANCELLED", "Request was cancelled")


def _is_auth_failure(error: Optional[ClientError]) -> bool:
    return error is not None and error.kind == ClientErrorKind.AUTH


def _parse_success(resp: httpx.Response) -> SendResult:
    try:
        data = resp.json()
    except (json.JSONDecodeError, ValueError) as e:
        return SendResult.failure(
            ClientErrorKind.PARSE,
            "PARSE_ERROR",
            f"Failed to parse backend response: {e}",
            http_status=resp.status_code,
        )
    if not isinstance(data, dict):
        return SendResult.failure(
            ClientErrorKind.PARSE,
            "PARSE_ERROR",
            "Backend response is not a JSON object",
            http_status=resp.status_code,
        )
    if isinstance(data.get("error"), dict):
        return _error_result(data["error"], resp.status_code)
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return SendResult.failure(
            ClientErrorKind.PARSE,
            "PARSE_ERROR",
            "Backend response has no candidates",
            http_status=resp.status_code,
        )
    logger.debug("Backend response: %d candidate(s)", len(candidates))
    return SendResult.success(BackendResponse(candidates=candidates, raw=data))


def _parse_failure(resp: httpx.Response) -> SendResult:
    body = resp.text
    try:
        data = json.loads(body) if body else None
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return _error_result(data["error"], resp.status_code)

    kind = ClientErrorKind.AUTH if resp.status_code in AUTH_HTTP_STATUSES else ClientErrorKind.NETWORK
    return SendResult.failure(
        kind,
        "HTTP_ERROR",
        f"HTTP {resp.status_code}: {body}",
        http_status=resp.status_code,
    )


def _error_result(error: dict[str, Any], http_status: int) -> SendResult:
    code = _error_code(error)
    message = str(error.get("message", "Unknown error"))
    reasons = {
        str(d.get("reason"))
        for d in error.get("details") or []
        if isinstance(d, dict) and d.get("reason")
    }
    is_auth = (
        code in AUTH_ERROR_CODES
        or bool(reasons & AUTH_ERROR_CODES)
        or http_status in AUTH_HTTP_STATUSES
    )
    kind = ClientErrorKind.AUTH if is_auth else ClientErrorKind.NETWORK
    return SendResult.failure(kind, code, message, http_status=http_status)


def _error_code(error: dict[str, Any]) -> str:
    """Prefer a symbolic code; numeric codes fall back to the status string."""
    code = error.get("code")
    if isinstance(code, str) and code:
        return code
    status = error.get("status")
    if isinstance(status, str) and status:
        return status
    if code is not None:
        return str(code)
    return "UNKNOWN_ERROR"
