"""Logging configuration for puppet-converge.

Provides configurable logging with:
- File-based logging with rotation
- Console output for real-time debugging
- Performance timing decorators for host operations
- Structured context (resource ref, operation type)

Environment Variables:
    PUPPET_CONVERGE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    PUPPET_CONVERGE_LOG_FILE: Path to log file (default: ~/.puppet-converge/converge.log)
    PUPPET_CONVERGE_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    PUPPET_CONVERGE_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from puppet_converge.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("query_package")
    async def query_package(self, name, provider=None):
        ...

    # Or use context manager for sections:
    async with timed_section("apply", resource="Service[puppetmaster]"):
        ...
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager, contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Optional

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("puppet_converge.perf")
main_logger = logging.getLogger("puppet_converge")


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("PUPPET_CONVERGE_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".puppet-converge" / "converge.log"
    path_str = os.environ.get("PUPPET_CONVERGE_LOG_FILE", str(default_path))
    return Path(path_str)


def setup_logging(level: Optional[int] = None, log_to_file: bool = True) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (INFO+ by default, respects PUPPET_CONVERGE_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for timing metrics (file only)
    """
    log_level = level if level is not None else get_log_level()
    max_size_mb = int(os.environ.get("PUPPET_CONVERGE_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("PUPPET_CONVERGE_LOG_BACKUPS", "5"))

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(main_format)

    main_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    main_logger.handlers.clear()
    main_logger.addHandler(console_handler)

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.handlers.clear()
    perf_logger.propagate = False

    if not log_to_file:
        main_logger.info(f"Logging initialized: level={logging.getLevelName(log_level)}")
        return

    log_file = get_log_file()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)
    main_logger.addHandler(file_handler)

    perf_log_file = log_file.parent / "converge-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)
    perf_logger.addHandler(perf_handler)

    main_logger.info(f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}")
    perf_logger.info(f"Performance logging to: {perf_log_file}")


def _log_timing(operation: str, subject: Optional[str], start: float, error: Optional[BaseException]) -> None:
    elapsed = (time.perf_counter() - start) * 1000  # ms
    line = f"{operation:20s} | {subject or 'N/A':30s} | {elapsed:8.2f}ms"
    if error is None:
        perf_logger.info(f"{line} | OK")
    else:
        perf_logger.warning(f"{line} | FAIL: {error}")


def timed(operation: str, subject: Optional[str] = None):
    """Decorator to log execution time of sync/async functions.

    Args:
        operation: Name of the operation (e.g., "install_package")
        subject: Optional subject; defaults to ``self.host_id`` when the
            decorated method's instance has one

    Usage:
        @timed("install_package")
        async def install_package(self, name, version, provider):
            ...
    """
    def decorator(func: Callable) -> Callable:
        def _subject(args) -> Optional[str]:
            if subject is None and args and hasattr(args[0], "host_id"):
                return args[0].host_id
            return subject

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _log_timing(operation, _subject(args), start, e)
                raise
            _log_timing(operation, _subject(args), start, None)
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _log_timing(operation, _subject(args), start, e)
                raise
            _log_timing(operation, _subject(args), start, None)
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, resource: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Usage:
        async with timed_section("apply", resource="Package[puppet]"):
            await handler.apply(...)
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""
    label = f"{resource} | {extra_str}" if extra_str else resource
    try:
        yield
    except Exception as e:
        _log_timing(operation, label, start, e)
        raise
    _log_timing(operation, label, start, None)


@contextmanager
def timed_section_sync(operation: str, resource: Optional[str] = None, **extra):
    """Sync context manager for timing code sections."""
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""
    label = f"{resource} | {extra_str}" if extra_str else resource
    try:
        yield
    except Exception as e:
        _log_timing(operation, label, start, e)
        raise
    _log_timing(operation, label, start, None)
