"""Decorators and small helpers shared by the balancer and the store.
"""
import functools
import logging
import time
from collections.abc import Iterable

logger = logging.getLogger(__name__)

__all__ = ['log_duration', 'retry_with_backoff', 'unique']


def log_duration(operation_name: str = None):
    """Decorator to log how long a call took.

    Args:
        operation_name: Name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            start = time.time()
            result = func(*args, **kwargs)
            logger.info(f'{name} completed in {int((time.time() - start) * 1000)}ms')
            return result
        return wrapper
    return decorator


def retry_with_backoff(max_attempts: int = 5, base_delay: float = 1.0, operation_name: str = None,
                       exceptions: tuple = (Exception,)):
    """Decorator to retry a call with exponential backoff.

    Only the listed exception types trigger a retry; anything else
    propagates on the first attempt.

    Args:
        max_attempts: Maximum attempts, including the first
        base_delay: Base delay in seconds (doubles each retry)
        operation_name: Name for logging (defaults to function name)
        exceptions: Exception types that trigger a retry

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(f'{name} failed after {max_attempts} attempts: {e}')
                        raise
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.warning(f'{name} attempt {attempt}/{max_attempts} failed: {e}, retrying in {delay:.1f}s')
                    time.sleep(delay)
        return wrapper
    return decorator


def unique(items: Iterable) -> list:
    """Drop duplicates, keeping first occurrence order.
    """
    return list(dict.fromkeys(items))
