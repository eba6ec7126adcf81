"""
Batch execution and online statistics.
"""

import math
from typing import Callable, Optional

from .executor import RequestExecutor
from .logging import get_logger
from .models import BatchResult, RequestOutcome, TestCase


logger = get_logger(__name__)


class RunningStats:
    """
    Streaming statistics over the outcomes of one batch.

    Only successful outcomes contribute to times, tokens and rates. The
    standard deviation is the population one, kept with Welford's update.
    """

    def __init__(self):
        self.total_requests = 0
        self.successful_requests = 0
        self.total_time = 0.0
        self.total_tokens = 0
        self.total_tokens_per_second = 0.0
        self.min_time = math.inf
        self.max_time = 0.0
        self._mean = 0.0
        self._m2 = 0.0

    def add(self, outcome: RequestOutcome) -> None:
        self.total_requests += 1
        if not outcome.success:
            return

        self.successful_requests += 1
        self.total_time += outcome.elapsed
        self.total_tokens += outcome.tokens
        self.total_tokens_per_second += outcome.tokens_per_second
        self.min_time = min(self.min_time, outcome.elapsed)
        self.max_time = max(self.max_time, outcome.elapsed)

        delta = outcome.elapsed - self._mean
        self._mean += delta / self.successful_requests
        self._m2 += delta * (outcome.elapsed - self._mean)

    @property
    def std_dev(self) -> Optional[float]:
        if self.successful_requests == 0:
            return None
        return math.sqrt(max(self._m2, 0.0) / self.successful_requests)

    def to_batch_result(self, test_case: TestCase) -> BatchResult:
        if self.successful_requests == 0:
            return BatchResult(
                engine=test_case.engine,
                prompt_type=test_case.prompt_type,
                max_tokens=test_case.max_tokens,
                successful_requests=0,
                total_requests=self.total_requests
            )

        n = self.successful_requests
        return BatchResult(
            engine=test_case.engine,
            prompt_type=test_case.prompt_type,
            max_tokens=test_case.max_tokens,
            successful_requests=n,
            total_requests=self.total_requests,
            avg_response_time=self.total_time / n,
            min_response_time=self.min_time,
            max_response_time=self.max_time,
            avg_tokens=self.total_tokens // n,
            avg_tokens_per_second=self.total_tokens_per_second / n,
            std_dev_response_time=self.std_dev
        )


class BatchAggregator:
    """Runs the repetitions of one test case back to back and summarizes them."""

    def __init__(
        self,
        executor: RequestExecutor,
        repetitions: int,
        stop_requested: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[TestCase, int, int, RequestOutcome], None]] = None
    ):
        """
        Initialize the aggregator.

        Args:
            executor: Executor used for every request
            repetitions: Requests per test case
            stop_requested: Polled before each request; True abandons the batch
            progress_callback: Called after each request with
                (test_case, request_index, repetitions, outcome)
        """
        self.executor = executor
        self.repetitions = repetitions
        self.stop_requested = stop_requested or (lambda: False)
        self.progress_callback = progress_callback

    async def run_batch(self, test_case: TestCase) -> Optional[BatchResult]:
        """
        Execute all repetitions of a test case.

        Returns:
            The BatchResult, or None if a stop was requested before the batch
            finished
        """
        logger.info(
            f"Running {test_case.engine} test with {test_case.prompt_type} prompt "
            f"({self.repetitions} requests)",
            test_case=test_case.label
        )

        stats = RunningStats()
        for index in range(1, self.repetitions + 1):
            if self.stop_requested():
                logger.warning(
                    "Stop requested, abandoning incomplete batch",
                    test_case=test_case.label,
                    completed_requests=stats.total_requests
                )
                return None

            outcome = await self.executor.execute(test_case)
            stats.add(outcome)

            if self.progress_callback:
                self.progress_callback(test_case, index, self.repetitions, outcome)

        result = stats.to_batch_result(test_case)
        if result.failed:
            logger.error(
                f"All {result.total_requests} requests failed for {test_case.engine} "
                f"({test_case.prompt_type}, max_tokens={test_case.max_tokens})",
                test_case=test_case.label
            )
        else:
            logger.info(
                "Batch completed",
                test_case=test_case.label,
                successful_requests=result.successful_requests,
                total_requests=result.total_requests,
                avg_response_time=round(result.avg_response_time, 3),
                avg_tokens_per_second=round(result.avg_tokens_per_second, 2)
            )
        return result
