"""
Core benchmarking orchestration.
"""

import asyncio
import signal
import threading
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Any

from .aggregator import BatchAggregator
from .backoff import BackoffHandler
from .client import ChatCompletionClient, DryRunClient
from .config import BenchmarkConfig
from .executor import EndpointProber, RequestExecutor
from .logging import ProgressLogger, get_logger
from .models import BatchResult, Endpoint, RequestOutcome, RunState, RunSummary, TestCase
from .storage import ResultStore


logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def exit_code_for(state: RunState) -> int:
    """Process exit status for a finished run."""
    if state == RunState.COMPLETED:
        return EXIT_OK
    if state == RunState.INTERRUPTED:
        return EXIT_INTERRUPTED
    return EXIT_FAILURE


def build_test_cases(
    endpoints: List[Endpoint],
    token_counts: List[int],
    prompts: Dict[str, str]
) -> List[TestCase]:
    """
    Cartesian product of token counts, endpoints and prompts.

    Token counts vary slowest and prompt types fastest, each in the order
    given.
    """
    return [
        TestCase(endpoint=endpoint, prompt=prompt, prompt_type=prompt_type, max_tokens=max_tokens)
        for max_tokens in token_counts
        for endpoint in endpoints
        for prompt_type, prompt in prompts.items()
    ]


class SweepOrchestrator:
    """
    Probes the selected endpoints, then runs one batch per test case and
    records every finished batch.

    A run moves INIT -> PROBING -> SWEEPING -> COMPLETED, or ends early in
    ABORTED (failed probe on a single-engine run, no healthy endpoint, or
    abort_on_batch_failure) or INTERRUPTED (SIGINT/SIGTERM). A stop request
    takes effect between requests; the batch in progress is discarded. A
    second signal stops at once by raising KeyboardInterrupt.
    """

    def __init__(
        self,
        config: BenchmarkConfig,
        store: Optional[ResultStore] = None,
        client=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        request_callback: Optional[Callable[[TestCase, int, int, RequestOutcome], None]] = None,
        batch_callback: Optional[Callable[[BatchResult], None]] = None,
        progress_logger: Optional[ProgressLogger] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Validated configuration
            store: Result store receiving batch results and the run summary
            client: Transport to use; built from config when None
            sleep: Coroutine function used for retry backoff
            request_callback: Called after every request
            batch_callback: Called after every completed batch
            progress_logger: Structured progress reporting for the sweep
        """
        self.config = config
        self.store = store
        self.client = client
        self.sleep = sleep
        self.request_callback = request_callback
        self.batch_callback = batch_callback
        self.progress_logger = progress_logger or ProgressLogger(get_logger("progress"))
        self.state = RunState.INIT
        self._shutdown_requested = False

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def request_shutdown(self) -> None:
        """Ask the sweep to stop at the next request boundary."""
        self._shutdown_requested = True

    def _install_signal_handlers(self) -> Dict[int, Any]:
        """
        Route SIGINT and SIGTERM to request_shutdown; a second signal raises
        KeyboardInterrupt. Returns the old handlers.
        """
        if threading.current_thread() is not threading.main_thread():
            return {}

        def signal_handler(signum, frame):
            if self._shutdown_requested:
                logger.warning(f"Received signal {signum} again, stopping immediately")
                raise KeyboardInterrupt
            logger.info(f"Received signal {signum}, stopping after the current request...")
            self.request_shutdown()

        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, signal_handler)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _transition(self, state: RunState) -> None:
        logger.info("Run state changed", previous_state=self.state.value, state=state.value)
        self.state = state

    def _create_client(self):
        if self.config.dry_run:
            logger.info("Dry run: synthetic responses, no network calls")
            return DryRunClient()
        return ChatCompletionClient(timeout=self.config.timeout)

    async def run(self) -> RunSummary:
        """
        Execute the whole sweep once.

        Returns:
            RunSummary with the final state and every completed batch result
        """
        if self.state != RunState.INIT:
            raise RuntimeError("A sweep can only be run once")

        summary = RunSummary()
        previous_handlers = self._install_signal_handlers()
        owns_client = self.client is None
        client = self._create_client() if owns_client else self.client

        try:
            await self._run(client, summary)
        except (KeyboardInterrupt, asyncio.CancelledError):
            self._transition(RunState.INTERRUPTED)
            raise
        finally:
            self._restore_signal_handlers(previous_handlers)
            if owns_client:
                await client.aclose()
            summary.state = self.state
            summary.finished_at = datetime.now()
            if self.store:
                self.store.save_summary(summary)

        logger.info(
            "Benchmark run finished",
            state=summary.state.value,
            total_cases=summary.total_cases,
            failed_cases=summary.failed_cases,
            degraded_engines=summary.degraded_engines
        )
        return summary

    async def _run(self, client, summary: RunSummary) -> None:
        config = self.config
        backoff_handler = BackoffHandler(
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            max_attempts=config.max_retries,
            sleep=self.sleep
        )

        self._transition(RunState.PROBING)
        healthy = await self._probe_endpoints(client, backoff_handler, summary)
        if self.state != RunState.PROBING:
            return

        test_cases = build_test_cases(healthy, config.token_counts, config.prompts())
        self._transition(RunState.SWEEPING)

        executor = RequestExecutor(
            client,
            backoff_handler,
            temperature=config.temperature,
            system_prompt=config.system_prompt
        )
        aggregator = BatchAggregator(
            executor,
            config.repetitions,
            stop_requested=lambda: self._shutdown_requested,
            progress_callback=self.request_callback
        )

        operation_id = "sweep"
        self.progress_logger.start_operation(
            operation_id,
            "sweep",
            len(test_cases),
            engines=[endpoint.name for endpoint in healthy],
            token_counts=list(config.token_counts),
            repetitions=config.repetitions
        )

        for test_case in test_cases:
            if self._shutdown_requested:
                break

            result = await aggregator.run_batch(test_case)
            if result is None:
                break

            summary.record(result)
            if self.store:
                self.store.append_result(result)
            if self.batch_callback:
                self.batch_callback(result)

            self.progress_logger.update_progress(
                operation_id,
                completed_delta=0 if result.failed else 1,
                failed_delta=1 if result.failed else 0,
                test_case=test_case.label
            )

            if result.failed and config.abort_on_batch_failure:
                logger.error("Aborting sweep after failed batch", test_case=test_case.label)
                self._transition(RunState.ABORTED)
                break

        if self.state == RunState.SWEEPING:
            if self._shutdown_requested:
                logger.info(
                    "Benchmark run interrupted",
                    completed_cases=summary.total_cases,
                    planned_cases=len(test_cases)
                )
                self._transition(RunState.INTERRUPTED)
            else:
                self._transition(RunState.COMPLETED)

        self.progress_logger.complete_operation(
            operation_id,
            success=self.state == RunState.COMPLETED,
            state=self.state.value
        )

    async def _probe_endpoints(self, client, backoff_handler: BackoffHandler, summary: RunSummary) -> List[Endpoint]:
        """
        Probe every selected endpoint.

        On a single-engine run a failed probe aborts the run. On a combined
        run the failed endpoint is dropped and marked degraded.
        """
        prober = EndpointProber(client, backoff_handler)
        healthy = []

        for endpoint in self.config.selected_endpoints():
            if self._shutdown_requested:
                self._transition(RunState.INTERRUPTED)
                return healthy

            if await prober.probe(endpoint):
                healthy.append(endpoint)
            elif self.config.single_engine:
                logger.error(f"{endpoint.name} endpoint test failed, aborting run", engine=endpoint.name)
                self._transition(RunState.ABORTED)
                return healthy
            else:
                logger.warning(
                    f"{endpoint.name} endpoint test failed, continuing without it",
                    engine=endpoint.name
                )
                summary.degraded_engines.append(endpoint.name)

        if not healthy:
            logger.error("No endpoint passed the probe, aborting run")
            self._transition(RunState.ABORTED)
        return healthy
