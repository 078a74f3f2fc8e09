"""Tests for the timeout and retry policy around model calls."""
from __future__ import annotations

import asyncio

import httpx
import openai
import pytest

from careflow.config import RetryConfig
from careflow.core.protocol import ModelRequest, ModelResponse
from careflow.services.llm_client import MalformedResponseError
from careflow.services.transport import ModelServiceError, RetryingTransport, is_transient_error
from fakes import ScriptedModelClient, text_reply


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


REQUEST = ModelRequest(model="test-model", system_prompt="system", turns=())
_HTTP_REQUEST = httpx.Request("POST", "https://models.example.test/v1/chat/completions")


def fast_policy(max_retries: int = 2, timeout: float = 5.0) -> RetryConfig:
    return RetryConfig(
        request_timeout_seconds=timeout,
        max_retries=max_retries,
        base_delay_seconds=0.0,
        max_jitter_seconds=0.0,
    )


def status_error(cls, status_code: int) -> openai.APIStatusError:
    response = httpx.Response(status_code, request=_HTTP_REQUEST)
    return cls(f"status {status_code}", response=response, body=None)


class SlowClient:
    def __init__(self) -> None:
        self.calls = 0

    async def complete(self, request: ModelRequest) -> ModelResponse:
        self.calls += 1
        await asyncio.sleep(5)
        return text_reply("too late")


@pytest.mark.parametrize(
    "error",
    [
        asyncio.TimeoutError(),
        ConnectionResetError(),
        openai.APIConnectionError(request=_HTTP_REQUEST),
        openai.APITimeoutError(request=_HTTP_REQUEST),
        status_error(openai.RateLimitError, 429),
        status_error(openai.InternalServerError, 500),
        status_error(openai.APIStatusError, 503),
        status_error(openai.APIStatusError, 408),
    ],
)
def test_transient_errors(error: BaseException) -> None:
    assert is_transient_error(error)


@pytest.mark.parametrize(
    "error",
    [
        status_error(openai.BadRequestError, 400),
        status_error(openai.AuthenticationError, 401),
        MalformedResponseError("no choices"),
        ValueError("bad"),
    ],
)
def test_permanent_errors(error: BaseException) -> None:
    assert not is_transient_error(error)


@pytest.mark.anyio
async def test_success_passes_through() -> None:
    client = ScriptedModelClient(text_reply("hello"))

    response = await RetryingTransport(client, fast_policy()).send(REQUEST)

    assert response.text() == "hello"
    assert len(client.requests) == 1


@pytest.mark.anyio
async def test_transient_errors_are_retried() -> None:
    client = ScriptedModelClient(
        ConnectionResetError(),
        openai.APIConnectionError(request=_HTTP_REQUEST),
        text_reply("recovered"),
    )

    response = await RetryingTransport(client, fast_policy(max_retries=2)).send(REQUEST)

    assert response.text() == "recovered"
    assert len(client.requests) == 3


@pytest.mark.anyio
async def test_exhausted_retries_raise_transient_error() -> None:
    client = ScriptedModelClient(*(status_error(openai.RateLimitError, 429) for _ in range(3)))

    with pytest.raises(ModelServiceError) as excinfo:
        await RetryingTransport(client, fast_policy(max_retries=2)).send(REQUEST)

    assert excinfo.value.transient
    assert excinfo.value.attempts == 3
    assert len(client.requests) == 3


@pytest.mark.anyio
async def test_permanent_error_is_not_retried() -> None:
    client = ScriptedModelClient(status_error(openai.BadRequestError, 400), text_reply("unused"))

    with pytest.raises(ModelServiceError) as excinfo:
        await RetryingTransport(client, fast_policy(max_retries=2)).send(REQUEST)

    assert not excinfo.value.transient
    assert excinfo.value.attempts == 1
    assert client.remaining == 1


@pytest.mark.anyio
async def test_timeout_cancels_call_and_counts_as_transient() -> None:
    client = SlowClient()

    with pytest.raises(ModelServiceError) as excinfo:
        await RetryingTransport(client, fast_policy(max_retries=1, timeout=0.01)).send(REQUEST)

    assert excinfo.value.transient
    assert client.calls == 2
