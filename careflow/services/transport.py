"""Timeout and retry policy wrapped around every remote model call."""
from __future__ import annotations

import asyncio

import openai
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from careflow.config import RetryConfig
from careflow.core.logger import get_logger
from careflow.core.protocol import ModelClient, ModelRequest, ModelResponse

_TRANSIENT_STATUS_CODES = frozenset({408, 429})

_TRANSIENT_EXCEPTIONS = (
    asyncio.TimeoutError,
    ConnectionResetError,
    openai.RateLimitError,
    openai.InternalServerError,
    openai.APITimeoutError,
    openai.APIConnectionError,
)


class ModelServiceError(RuntimeError):
    """Raised when a model call fails permanently or exhausts its retries."""

    def __init__(self, message: str, *, transient: bool, attempts: int) -> None:
        super().__init__(message)
        self.transient = transient
        self.attempts = attempts


def is_transient_error(error: BaseException) -> bool:
    """Return True for failures expected to resolve on their own."""
    if isinstance(error, _TRANSIENT_EXCEPTIONS):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code in _TRANSIENT_STATUS_CODES or error.status_code >= 500
    return False


class RetryingTransport:
    """Send requests with a per-call timeout and bounded retries on transient errors."""

    def __init__(self, client: ModelClient, policy: RetryConfig) -> None:
        self._client = client
        self._policy = policy
        self._logger = get_logger("careflow.services.transport")

    async def send(self, request: ModelRequest) -> ModelResponse:
        retryer = AsyncRetrying(
            stop=stop_after_attempt(self._policy.max_retries + 1),
            wait=wait_exponential(multiplier=self._policy.base_delay_seconds, min=0)
            + wait_random(0, self._policy.max_jitter_seconds),
            retry=retry_if_exception(is_transient_error),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            return await retryer(self._send_once, request)
        except Exception as exc:
            transient = is_transient_error(exc)
            attempts = retryer.statistics.get("attempt_number", 1)
            self._logger.warning(
                "Model call failed.",
                exc_info=True,
                extra={
                    "context": {
                        "model": request.model,
                        "error_type": type(exc).__name__,
                        "transient": transient,
                        "attempts": attempts,
                    }
                },
            )
            raise ModelServiceError(
                f"Model call failed after {attempts} attempt(s): {type(exc).__name__}",
                transient=transient,
                attempts=attempts,
            ) from exc

    async def _send_once(self, request: ModelRequest) -> ModelResponse:
        return await asyncio.wait_for(
            self._client.complete(request),
            timeout=self._policy.request_timeout_seconds,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self._logger.warning(
            "Transient model error, retrying.",
            extra={
                "context": {
                    "attempt": retry_state.attempt_number,
                    "max_attempts": self._policy.max_retries + 1,
                    "error_type": type(error).__name__ if error else None,
                    "delay_ms": round(delay * 1000),
                }
            },
        )
