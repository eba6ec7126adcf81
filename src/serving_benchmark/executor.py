"""
Retrying request execution and endpoint probing.
"""

from typing import Optional, Tuple

from .backoff import BackoffHandler, RequestFailure, RetriesExhausted
from .client import build_chat_payload, build_probe_payload
from .logging import get_logger
from .models import Endpoint, FailureReason, RequestOutcome, TestCase
from .parsing import parse_completion


logger = get_logger(__name__)

# Stripped completions shorter than this count as degenerate
MIN_COMPLETION_LENGTH = 2


class RequestExecutor:
    """
    Turns one logical request into exactly one RequestOutcome.

    Each attempt goes through the transport and the response parser; any
    failure (transport, status, body, or degenerate completion) is retried by
    the backoff handler until its attempts run out.
    """

    def __init__(
        self,
        client,
        backoff_handler: Optional[BackoffHandler] = None,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None
    ):
        """
        Initialize the executor.

        Args:
            client: ChatCompletionClient or DryRunClient
            backoff_handler: Retry policy (defaults to BackoffHandler())
            temperature: Sampling temperature sent with every request
            system_prompt: Optional system message prepended to every request
        """
        self.client = client
        self.backoff_handler = backoff_handler or BackoffHandler()
        self.temperature = temperature
        self.system_prompt = system_prompt

    async def execute(self, test_case: TestCase) -> RequestOutcome:
        endpoint = test_case.endpoint
        payload = build_chat_payload(
            model=endpoint.model,
            prompt=test_case.prompt,
            max_tokens=test_case.max_tokens,
            temperature=self.temperature,
            system_prompt=self.system_prompt
        )
        attempts = 0

        async def attempt() -> Tuple[float, int]:
            nonlocal attempts
            attempts += 1
            return await self._attempt(endpoint, payload)

        try:
            elapsed, tokens = await self.backoff_handler.execute_with_backoff(attempt)
        except RetriesExhausted as e:
            reason = self.backoff_handler.get_error_category(e.last_exception)
            logger.error(
                "Request failed after all attempts",
                engine=endpoint.name,
                test_case=test_case.label,
                attempts=e.attempts,
                failure_reason=reason.value
            )
            return RequestOutcome.failed(reason, e.attempts)

        return RequestOutcome.succeeded(elapsed, tokens, attempts)

    async def _attempt(self, endpoint: Endpoint, payload) -> Tuple[float, int]:
        response = await self.client.post_chat(endpoint, payload)

        if not response.ok:
            raise RequestFailure(
                FailureReason.HTTP_STATUS,
                f"{endpoint.name} returned HTTP {response.status_code}",
                status_code=response.status_code
            )

        parsed = parse_completion(response.body)
        if not parsed.well_formed:
            raise RequestFailure(FailureReason.MALFORMED_RESPONSE, f"{endpoint.name} returned a malformed body")
        if len(parsed.text.strip()) < MIN_COMPLETION_LENGTH:
            raise RequestFailure(FailureReason.EMPTY_COMPLETION, f"{endpoint.name} returned an empty completion")

        return response.elapsed, parsed.tokens


class EndpointProber:
    """Checks that an endpoint answers before it is measured."""

    def __init__(self, client, backoff_handler: Optional[BackoffHandler] = None):
        self.client = client
        self.backoff_handler = backoff_handler or BackoffHandler()

    async def probe(self, endpoint: Endpoint) -> bool:
        """
        Send a minimal chat request; only the status code is inspected.

        Returns:
            True when the endpoint answered HTTP 200 within the allowed attempts
        """
        payload = build_probe_payload(endpoint.model)
        logger.info(f"Testing {endpoint.name} endpoint: {endpoint.base_url}", engine=endpoint.name)

        async def attempt():
            response = await self.client.post_chat(endpoint, payload)
            if response.status_code != 200:
                raise RequestFailure(
                    FailureReason.HTTP_STATUS,
                    f"{endpoint.name} probe returned HTTP {response.status_code}",
                    status_code=response.status_code
                )
            return response

        try:
            await self.backoff_handler.execute_with_backoff(attempt)
        except RetriesExhausted as e:
            logger.error(
                f"{endpoint.name} endpoint probe failed",
                engine=endpoint.name,
                url=endpoint.chat_completions_url,
                attempts=e.attempts,
                error=str(e.last_exception)
            )
            return False

        logger.info(f"{endpoint.name} endpoint is working", engine=endpoint.name)
        return True
