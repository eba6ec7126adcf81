"""
Data models for the Serving Benchmark Toolkit.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any


class FailureReason(str, Enum):
    """Why a logical request ended without a usable completion."""
    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    MALFORMED_RESPONSE = "malformed_response"
    EMPTY_COMPLETION = "empty_completion"


class RunState(str, Enum):
    """Lifecycle of one sweep."""
    INIT = "init"
    PROBING = "probing"
    SWEEPING = "sweeping"
    COMPLETED = "completed"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class Endpoint:
    """A chat-completion backend under test."""
    engine: str
    name: str
    base_url: str
    model: str

    @property
    def chat_completions_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/v1/chat/completions"


@dataclass(frozen=True)
class TestCase:
    """One (engine, prompt, token-count) point of the sweep."""
    __test__ = False  # not a pytest class

    endpoint: Endpoint
    prompt: str
    prompt_type: str
    max_tokens: int

    @property
    def engine(self) -> str:
        return self.endpoint.name

    @property
    def label(self) -> str:
        return f"{self.engine}/{self.prompt_type}/{self.max_tokens}"


@dataclass(frozen=True)
class RequestOutcome:
    """Normalized measurement of one logical request."""
    elapsed: float
    tokens: int
    tokens_per_second: float
    success: bool
    failure_reason: Optional[FailureReason] = None
    attempts: int = 1

    @classmethod
    def succeeded(cls, elapsed: float, tokens: int, attempts: int = 1) -> "RequestOutcome":
        elapsed = max(elapsed, 0.0)
        tokens = max(tokens, 0)
        if elapsed > 0 and tokens > 0:
            tokens_per_second = tokens / elapsed
        else:
            tokens_per_second = 0.0
        return cls(
            elapsed=elapsed,
            tokens=tokens,
            tokens_per_second=tokens_per_second,
            success=True,
            attempts=attempts
        )

    @classmethod
    def failed(cls, reason: FailureReason, attempts: int) -> "RequestOutcome":
        # Failed outcomes never carry timing; see DESIGN.md.
        return cls(
            elapsed=0.0,
            tokens=0,
            tokens_per_second=0.0,
            success=False,
            failure_reason=reason,
            attempts=attempts
        )


RESULT_COLUMNS = [
    'engine', 'prompt_type', 'max_tokens', 'successful_requests', 'total_requests',
    'avg_response_time', 'min_response_time', 'max_response_time',
    'avg_tokens', 'avg_tokens_per_second', 'std_dev_response_time'
]


def _fmt(value: Optional[float], digits: int) -> str:
    if value is None:
        return ""
    return f"{value:.{digits}f}"


@dataclass(frozen=True)
class BatchResult:
    """Aggregate over all repetitions of one test case."""
    engine: str
    prompt_type: str
    max_tokens: int
    successful_requests: int
    total_requests: int
    avg_response_time: Optional[float] = None
    min_response_time: Optional[float] = None
    max_response_time: Optional[float] = None
    avg_tokens: Optional[int] = None
    avg_tokens_per_second: Optional[float] = None
    std_dev_response_time: Optional[float] = None

    @property
    def failed(self) -> bool:
        return self.successful_requests == 0

    def to_record(self) -> Dict[str, Any]:
        """Render the row written to the result log."""
        return {
            'engine': self.engine,
            'prompt_type': self.prompt_type,
            'max_tokens': self.max_tokens,
            'successful_requests': self.successful_requests,
            'total_requests': self.total_requests,
            'avg_response_time': _fmt(self.avg_response_time, 3),
            'min_response_time': _fmt(self.min_response_time, 3),
            'max_response_time': _fmt(self.max_response_time, 3),
            'avg_tokens': "" if self.avg_tokens is None else int(self.avg_tokens),
            'avg_tokens_per_second': _fmt(self.avg_tokens_per_second, 2),
            'std_dev_response_time': _fmt(self.std_dev_response_time, 3)
        }


@dataclass
class RunSummary:
    """Totals for one invocation of the sweep orchestrator."""
    state: RunState = RunState.INIT
    total_cases: int = 0
    failed_cases: int = 0
    results: List[BatchResult] = field(default_factory=list)
    degraded_engines: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def record(self, result: BatchResult) -> None:
        self.results.append(result)
        self.total_cases += 1
        if result.failed:
            self.failed_cases += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'total_cases': self.total_cases,
            'failed_cases': self.failed_cases,
            'degraded_engines': list(self.degraded_engines),
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None
        }
