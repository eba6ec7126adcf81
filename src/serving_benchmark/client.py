"""
HTTP transport for OpenAI-compatible chat-completion endpoints.
"""

import json
import time
from dataclasses import dataclass
from typing import Dict, Any, Optional

import httpx

from .backoff import RequestFailure
from .logging import get_logger
from .models import Endpoint, FailureReason


logger = get_logger(__name__)

PROBE_CONTENT = "test"
PROBE_MAX_TOKENS = 5


@dataclass(frozen=True)
class TransportResponse:
    """Raw result of one POST: status, body text and wall-clock seconds."""
    status_code: int
    body: str
    elapsed: float

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def build_chat_payload(
    model: str,
    prompt: str,
    max_tokens: int,
    temperature: float,
    system_prompt: Optional[str] = None
) -> Dict[str, Any]:
    """Build the chat-completion request body."""
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature
    }


def build_probe_payload(model: str) -> Dict[str, Any]:
    """Build the minimal request used to check that an endpoint answers."""
    return build_chat_payload(model, PROBE_CONTENT, PROBE_MAX_TOKENS, 0.0)


class ChatCompletionClient:
    """
    Async client that POSTs chat-completion requests with httpx.

    Connection problems and timeouts are raised as RequestFailure; HTTP
    error statuses are returned to the caller untouched.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the client.

        Args:
            timeout: Per-request timeout in seconds
            http_client: Existing httpx.AsyncClient (optional, not closed by us)
            transport: Custom httpx transport for a client we create (optional)
        """
        self.timeout = timeout
        self._transport = transport
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport
            )
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def post_chat(self, endpoint: Endpoint, payload: Dict[str, Any]) -> TransportResponse:
        """
        Send one chat-completion request and time it.

        Raises:
            RequestFailure: On timeout or connection-level errors
        """
        client = self._ensure_client()
        url = endpoint.chat_completions_url

        start_time = time.perf_counter()
        try:
            response = await client.post(url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise RequestFailure(FailureReason.TIMEOUT, f"Request to {url} timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise RequestFailure(FailureReason.CONNECTION_ERROR, f"Request to {url} failed: {e}") from e
        elapsed = max(time.perf_counter() - start_time, 0.0)

        logger.debug(
            "Chat completion response",
            engine=endpoint.name,
            url=url,
            status_code=response.status_code,
            elapsed=round(elapsed, 4)
        )
        return TransportResponse(response.status_code, response.text, elapsed)


class DryRunClient:
    """
    Stand-in for ChatCompletionClient that never touches the network.

    Every call answers HTTP 200 with min(max_tokens, 32) words, a matching
    usage.completion_tokens and an elapsed time of 0.05 + 0.01 * tokens.
    """

    MAX_WORDS = 32

    def __init__(self):
        self.calls = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def aclose(self):
        return None

    async def post_chat(self, endpoint: Endpoint, payload: Dict[str, Any]) -> TransportResponse:
        self.calls += 1
        tokens = max(1, min(int(payload.get("max_tokens", 1)), self.MAX_WORDS))
        content = " ".join(f"word{i}" for i in range(tokens))
        body = json.dumps({
            "model": payload.get("model"),
            "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "length"}],
            "usage": {"completion_tokens": tokens}
        })
        return TransportResponse(200, body, round(0.05 + 0.01 * tokens, 4))
