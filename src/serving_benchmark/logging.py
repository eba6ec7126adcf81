"""
Structured logging for the Serving Benchmark Toolkit.

Provides centralized logging configuration with:
- Structured logging using structlog
- Progress reporting for long-running sweeps
- Multiple output formats (JSON, human-readable)
"""

import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Optional, Dict, Any, Union
from datetime import datetime

import structlog
from structlog.stdlib import LoggerFactory

from .config import BenchmarkConfig


class BenchmarkLogger:
    """
    Centralized logging configuration for the Serving Benchmark Toolkit.

    Sends every record to stdout and, when a log file is set, to a rotating
    file that receives DEBUG and above.
    """

    def __init__(self, config: BenchmarkConfig, log_file: Optional[Union[str, Path]] = None):
        """
        Initialize logging configuration.

        Args:
            config: BenchmarkConfig instance with logging settings
            log_file: Log file path; takes precedence over config.log_file
        """
        self.config = config
        self.log_file = Path(log_file) if log_file else (Path(config.log_file) if config.log_file else None)
        self._configured = False
        self._progress_logger = None

    def configure_logging(self):
        """Configure structlog processors and stdlib handlers."""
        if self._configured:
            return

        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]

        if self.config.log_format == "structured":
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._setup_handlers()
        self._configured = True

        logger = structlog.get_logger(__name__)
        logger.info(
            "Logging configured",
            log_level=self.config.log_level,
            log_format=self.config.log_format,
            log_file=str(self.log_file) if self.log_file else None
        )

    def _setup_handlers(self):
        """Set up logging handlers for console and file output."""
        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        formatter = logging.Formatter('%(message)s')

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, self.config.log_level))
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                self.log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            root_logger.setLevel(logging.DEBUG)
        else:
            root_logger.setLevel(getattr(logging, self.config.log_level))

    def get_logger(self, name: str) -> structlog.BoundLogger:
        if not self._configured:
            self.configure_logging()
        return structlog.get_logger(name)

    def get_progress_logger(self) -> 'ProgressLogger':
        """Get a progress logger for tracking the sweep."""
        if not self._progress_logger:
            self._progress_logger = ProgressLogger(self.get_logger("progress"))
        return self._progress_logger


class ProgressLogger:
    """
    Tracks progress of long-running operations such as a sweep.

    Reports completion rate, failures and an estimate of the remaining time.
    """

    def __init__(self, logger: structlog.BoundLogger):
        self.logger = logger
        self._active_operations: Dict[str, Dict[str, Any]] = {}

    def start_operation(self, operation_id: str, operation_type: str, total_items: int, **context):
        """
        Start tracking a long-running operation.

        Args:
            operation_id: Unique identifier for the operation
            operation_type: Type of operation (e.g., "sweep")
            total_items: Total number of items to process
            **context: Additional context information
        """
        start_time = datetime.now()
        self._active_operations[operation_id] = {
            "operation_type": operation_type,
            "total_items": total_items,
            "completed_items": 0,
            "failed_items": 0,
            "start_time": start_time,
            "last_update": start_time,
        }

        self.logger.info(
            "Operation started",
            operation_id=operation_id,
            operation_type=operation_type,
            total_items=total_items,
            **context
        )

    def update_progress(self, operation_id: str, completed_delta: int = 0, failed_delta: int = 0, **context):
        """Update progress for an active operation."""
        if operation_id not in self._active_operations:
            self.logger.warning("Progress update for unknown operation", operation_id=operation_id)
            return

        operation = self._active_operations[operation_id]
        operation["completed_items"] += completed_delta
        operation["failed_items"] += failed_delta
        operation["last_update"] = datetime.now()

        processed_items = operation["completed_items"] + operation["failed_items"]
        total_items = operation["total_items"]
        completion_rate = (processed_items / total_items) * 100 if total_items else 100.0
        elapsed_time = (operation["last_update"] - operation["start_time"]).total_seconds()

        estimated_remaining = None
        remaining_items = total_items - processed_items
        if processed_items > 0 and remaining_items > 0 and elapsed_time > 0:
            estimated_remaining = remaining_items / (processed_items / elapsed_time)

        self.logger.info(
            "Progress update",
            operation_id=operation_id,
            operation_type=operation["operation_type"],
            completed_items=operation["completed_items"],
            failed_items=operation["failed_items"],
            total_items=total_items,
            completion_rate=round(completion_rate, 1),
            elapsed_time=round(elapsed_time, 1),
            estimated_remaining_time=round(estimated_remaining, 1) if estimated_remaining else None,
            **context
        )

    def complete_operation(self, operation_id: str, success: bool = True, **context):
        """Mark an operation as completed and stop tracking it."""
        operation = self._active_operations.pop(operation_id, None)
        if operation is None:
            self.logger.warning("Completion for unknown operation", operation_id=operation_id)
            return

        total_time = (datetime.now() - operation["start_time"]).total_seconds()
        self.logger.info(
            "Operation completed",
            operation_id=operation_id,
            operation_type=operation["operation_type"],
            success=success,
            completed_items=operation["completed_items"],
            failed_items=operation["failed_items"],
            total_items=operation["total_items"],
            total_time=round(total_time, 1),
            **context
        )


def setup_logging(config: BenchmarkConfig, log_file: Optional[Union[str, Path]] = None) -> BenchmarkLogger:
    """
    Set up logging configuration for the application.

    Args:
        config: BenchmarkConfig instance
        log_file: Optional log file path overriding config.log_file

    Returns:
        Configured BenchmarkLogger instance
    """
    benchmark_logger = BenchmarkLogger(config, log_file)
    benchmark_logger.configure_logging()
    return benchmark_logger


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance (convenience function)."""
    return structlog.get_logger(name)
