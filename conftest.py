import json
import time

import httpx
import pytest

from serving_benchmark.client import ChatCompletionClient
from serving_benchmark.config import BenchmarkConfig
from serving_benchmark.models import Endpoint, TestCase


PARIS_BODY = {
    "choices": [{"message": {"content": "Paris is the capital of France."}}],
    "usage": {"completion_tokens": 7},
}


class SleepRecorder:
    """Async stand-in for asyncio.sleep that only records the delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def is_probe(request: httpx.Request) -> bool:
    return json.loads(request.content)["max_tokens"] == 5


def chat_handler(body=None, status_code=200, delay=0.001):
    """MockTransport handler answering every request the same way."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if delay:
            time.sleep(delay)
        return httpx.Response(status_code, json=PARIS_BODY if body is None else body)

    handler.calls = calls
    return handler


def mock_client(handler) -> ChatCompletionClient:
    return ChatCompletionClient(timeout=5.0, transport=httpx.MockTransport(handler))


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def endpoint():
    return Endpoint("primary", "llama.cpp", "http://127.0.0.1:8000", "test-model")


@pytest.fixture
def test_case(endpoint):
    return TestCase(endpoint=endpoint, prompt="What is the capital of France?", prompt_type="simple", max_tokens=64)


@pytest.fixture
def make_config(tmp_path):
    def factory(**overrides):
        values = {
            "output_dir": str(tmp_path / "benchmarks"),
            "repetitions": 2,
            "base_delay": 0.0,
            "max_delay": 0.0,
        }
        values.update(overrides)
        return BenchmarkConfig(**values)

    return factory
