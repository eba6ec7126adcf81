import json
import time

import httpx
import pytest

from serving_benchmark.backoff import BackoffHandler
from serving_benchmark.client import ChatCompletionClient, build_probe_payload
from serving_benchmark.executor import EndpointProber, RequestExecutor
from serving_benchmark.models import FailureReason

from conftest import chat_handler, mock_client


def make_executor(handler, sleep, max_attempts=3, base_delay=1.0):
    backoff = BackoffHandler(base_delay=base_delay, max_delay=30.0, max_attempts=max_attempts, sleep=sleep)
    return RequestExecutor(mock_client(handler), backoff, temperature=0.7)


async def test_successful_request(test_case, sleep_recorder):
    handler = chat_handler()
    outcome = await make_executor(handler, sleep_recorder).execute(test_case)

    assert outcome.success
    assert outcome.tokens == 7
    assert outcome.elapsed > 0
    assert outcome.tokens_per_second == pytest.approx(7 / outcome.elapsed)
    assert outcome.attempts == 1
    assert len(handler.calls) == 1
    assert sleep_recorder.delays == []

    request = handler.calls[0]
    assert request.url == "http://127.0.0.1:8000/v1/chat/completions"
    assert request.method == "POST"


async def test_payload_carries_prompt_and_limits(test_case, sleep_recorder):
    handler = chat_handler()
    await make_executor(handler, sleep_recorder).execute(test_case)

    payload = json.loads(handler.calls[0].content)
    assert payload["model"] == "test-model"
    assert payload["max_tokens"] == 64
    assert payload["temperature"] == 0.7
    assert payload["messages"][-1] == {"role": "user", "content": "What is the capital of France?"}


async def test_http_error_exhausts_attempts(test_case, sleep_recorder):
    handler = chat_handler(body={"error": "boom"}, status_code=500)
    outcome = await make_executor(handler, sleep_recorder, max_attempts=3, base_delay=1.0).execute(test_case)

    assert not outcome.success
    assert outcome.failure_reason == FailureReason.HTTP_STATUS
    assert outcome.attempts == 3
    assert outcome.elapsed == 0.0
    assert outcome.tokens == 0
    assert len(handler.calls) == 3
    assert sleep_recorder.delays == [1.0, 2.0]


async def test_backoff_really_waits(test_case):
    handler = chat_handler(status_code=503, delay=0)
    backoff = BackoffHandler(base_delay=0.01, max_delay=1.0, max_attempts=3)
    executor = RequestExecutor(mock_client(handler), backoff)

    start = time.monotonic()
    outcome = await executor.execute(test_case)
    waited = time.monotonic() - start

    assert not outcome.success
    assert len(handler.calls) == 3
    assert waited >= 0.01 + 0.02


async def test_recovers_after_transient_error(test_case, sleep_recorder):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(502, text="Bad Gateway")
        return httpx.Response(200, json={"choices": [{"message": {"content": "Paris, of course."}}]})

    outcome = await make_executor(handler, sleep_recorder).execute(test_case)

    assert outcome.success
    assert outcome.attempts == 2
    # No usage block, so tokens are counted as words
    assert outcome.tokens == 3
    assert sleep_recorder.delays == [1.0]


async def test_connection_error(test_case, sleep_recorder):
    def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)

    outcome = await make_executor(handler, sleep_recorder, max_attempts=2).execute(test_case)

    assert not outcome.success
    assert outcome.failure_reason == FailureReason.CONNECTION_ERROR
    assert outcome.attempts == 2


async def test_timeout(test_case, sleep_recorder):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    outcome = await make_executor(handler, sleep_recorder, max_attempts=1).execute(test_case)

    assert not outcome.success
    assert outcome.failure_reason == FailureReason.TIMEOUT
    assert outcome.attempts == 1
    assert sleep_recorder.delays == []


async def test_malformed_body(test_case, sleep_recorder):
    def handler(request):
        return httpx.Response(200, text="not json at all")

    outcome = await make_executor(handler, sleep_recorder, max_attempts=2).execute(test_case)

    assert outcome.failure_reason == FailureReason.MALFORMED_RESPONSE
    assert outcome.attempts == 2


@pytest.mark.parametrize("content", ["", " ", "x", " \n"])
async def test_degenerate_completion_is_retried(test_case, sleep_recorder, content):
    handler = chat_handler(body={"choices": [{"message": {"content": content}}]})
    outcome = await make_executor(handler, sleep_recorder, max_attempts=2).execute(test_case)

    assert not outcome.success
    assert outcome.failure_reason == FailureReason.EMPTY_COMPLETION
    assert len(handler.calls) == 2


async def test_probe_accepts_200(endpoint, sleep_recorder):
    handler = chat_handler()
    prober = EndpointProber(mock_client(handler), BackoffHandler(max_attempts=3, sleep=sleep_recorder))

    assert await prober.probe(endpoint)
    payload = json.loads(handler.calls[0].content)
    assert payload["max_tokens"] == 5
    assert payload["messages"] == [{"role": "user", "content": "test"}]


async def test_probe_ignores_body(endpoint, sleep_recorder):
    def handler(request):
        return httpx.Response(200, text="")

    prober = EndpointProber(mock_client(handler), BackoffHandler(max_attempts=1, sleep=sleep_recorder))
    assert await prober.probe(endpoint)


async def test_probe_rejects_other_statuses(endpoint, sleep_recorder):
    handler = chat_handler(status_code=201)
    prober = EndpointProber(mock_client(handler), BackoffHandler(max_attempts=3, sleep=sleep_recorder))

    assert not await prober.probe(endpoint)
    assert len(handler.calls) == 3
    assert sleep_recorder.delays == [1.0, 2.0]


async def test_shared_http_client_is_left_open(endpoint):
    handler = chat_handler()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        async with ChatCompletionClient(timeout=5.0, http_client=http_client) as client:
            response = await client.post_chat(endpoint, build_probe_payload("test-model"))

        assert response.status_code == 200
        assert not http_client.is_closed
        assert (await http_client.post(endpoint.chat_completions_url, json={})).status_code == 200
    assert len(handler.calls) == 2


async def test_owned_http_client_is_closed(endpoint):
    client = mock_client(chat_handler())
    async with client:
        await client.post_chat(endpoint, build_probe_payload("test-model"))
    assert client._client is None
