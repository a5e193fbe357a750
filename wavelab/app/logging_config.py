"""
Centralized logging configuration for wavelab.

This module provides structured logging using structlog. The pool process and
every worker process call setup_logging() once at start; workers are spawned
fresh, so they do not inherit the parent's configuration.
"""

import structlog
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from structlog.contextvars import bind_contextvars, clear_contextvars


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> None:
    """
    Set up structured logging for wavelab.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json" or "console")
        log_file: Optional log file path. If None, logs to stdout only.
        max_file_size: Maximum size of each log file before rotation
        backup_count: Number of backup files to keep
    """
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()
    clear_contextvars()

    log_level_obj = getattr(logging, log_level.upper())

    if log_format == "json":
        processor_chain = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FILENAME,
                           structlog.processors.CallsiteParameter.FUNC_NAME,
                           structlog.processors.CallsiteParameter.LINENO]
            ),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    else:
        processor_chain = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=True),
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level_obj)
    handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count
        )
        file_handler.setLevel(log_level_obj)
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level_obj,
        handlers=handlers,
        format="%(message)s"
    )

    structlog.configure(
        processors=processor_chain,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_from_settings(settings) -> None:
    """Configure logging from a wavelab Settings object (LOG_LEVEL, LOG_FORMAT, LOG_FILE)."""
    setup_logging(
        log_level=settings.LOG_LEVEL,
        log_format=settings.LOG_FORMAT,
        log_file=settings.LOG_FILE,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class LoggingContext:
    """
    Context manager for scoped logging context.

    Example:
        with LoggingContext(job_id="abc", worker_id=2):
            log.info("running job")  # Will include job_id and worker_id
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous_context = {}

    def __enter__(self):
        self.previous_context = structlog.contextvars.get_contextvars()
        bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        clear_contextvars()
        if self.previous_context:
            bind_contextvars(**self.previous_context)


class PerformanceLogger:
    """
    Specialized logger for pool and job metrics.
    """

    def __init__(self, name: str = "wavelab.performance"):
        self.log = get_logger(name)

    def log_queue_metrics(
        self,
        queue_name: str,
        depth: int,
        max_size: int,
        **context
    ) -> None:
        """Log queue depth metrics."""
        self.log.debug(
            "queue_metrics",
            queue_name=queue_name,
            depth=depth,
            max_size=max_size,
            utilization_pct=(depth / max_size * 100) if max_size > 0 else 0,
            **context
        )

    def log_compute_job(
        self,
        job_id: str,
        job_kind: str,
        outcome: str,
        duration_ms: float,
        worker_pid: int,
        **context
    ) -> None:
        """Log compute job completion."""
        self.log.info(
            "compute_job_finished",
            job_id=job_id,
            job_kind=job_kind,
            outcome=outcome,
            duration_ms=duration_ms,
            worker_pid=worker_pid,
            **context
        )


performance_log = PerformanceLogger()
