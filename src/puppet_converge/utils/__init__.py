"""Utility modules for logging and retry helpers."""
from .retry import with_retry, RETRYABLE_EXCEPTIONS
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    timed_section_sync,
    perf_logger,
)

__all__ = [
    "with_retry",
    "RETRYABLE_EXCEPTIONS",
    "setup_logging",
    "timed",
    "timed_section",
    "timed_section_sync",
    "perf_logger",
]
