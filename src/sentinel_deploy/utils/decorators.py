"""Logging, timing and retry decorators shared by the deployment steps."""
import time
import logging
import functools
from typing import Any, Callable, Optional, TypeVar, cast

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


def log_execution_time(func: F) -> F:
    """Log how long a deployment step took, and whether it raised."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(f"{func.__qualname__} failed after {time.monotonic() - started:.2f}s: {e}")
            raise
        logger.info(f"{func.__qualname__} completed in {time.monotonic() - started:.2f}s")
        return result
    return cast(F, wrapper)


def log_operation(description: str):
    """Decorator for timing and logging a named deployment step."""
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger.info(f"Starting: {description}")
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
                duration = time.time() - start_time
                logger.info(f"Completed: {description} in {duration:.2f}s")
                return result
            except Exception as e:
                duration = time.time() - start_time
                logger.error(f"Failed: {description} after {duration:.2f}s - {str(e)}")
                raise
        return cast(F, wrapper)
    return decorator


def retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
          exceptions: tuple = (Exception,), logger_name: Optional[str] = None,
          max_delay: Optional[float] = None,
          describe: Optional[Callable[..., str]] = None):
    """Retry a call with exponential backoff.

    Args:
        max_attempts: Total number of calls, including the first
        delay: Seconds to wait before the second call
        backoff: Multiplier applied to the wait after every failed call
        exceptions: Exception types that trigger another attempt
        logger_name: Logger to report on (defaults to this module's)
        max_delay: Upper bound for a single wait
        describe: Builds the label used in log lines from the call arguments,
            e.g. the rendered az command; defaults to the function name
    """
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            label = describe(*args, **kwargs) if describe else func.__name__
            wait = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        retry_logger.error(f"Giving up on {label} after {max_attempts} attempts: {e}")
                        raise
                    if max_delay is not None:
                        wait = min(wait, max_delay)
                    retry_logger.warning(
                        f"{label}: {e} (attempt {attempt}/{max_attempts}), retrying in {wait:.2f}s"
                    )
                    time.sleep(wait)
                    wait *= backoff
        return cast(F, wrapper)

    return decorator
