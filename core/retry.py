"""
Retry decorator module
"""
from __future__ import annotations
import time
import random
from functools import wraps
from typing import Tuple, Type, Callable, Any, Optional

from botocore.exceptions import BotoCoreError, ClientError


THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "LimitExceededException",
})

# Never worth a second attempt: the answer will not change.
FINAL_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "NotFoundException",
    "NoSuchEntity",
    "InvalidGrantIdException",
    "InvalidArnException",
    "ValidationException",
})


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str((exc.response or {}).get("Error", {}).get("Code", ""))
    return ""


def _http_status(exc: BaseException) -> int:
    if isinstance(exc, ClientError):
        meta = (exc.response or {}).get("ResponseMetadata", {}) or {}
        try:
            return int(meta.get("HTTPStatusCode", 0) or 0)
        except (TypeError, ValueError):
            return 0
    return 0


def is_retryable_client_error(exc: BaseException) -> bool:
    """True for throttling, 5xx and transport errors; False for denial/not-found."""
    if isinstance(exc, BotoCoreError):
        return True
    if not isinstance(exc, ClientError):
        return False
    code = _error_code(exc)
    if code in FINAL_CODES:
        return False
    if code in THROTTLING_CODES:
        return True
    return _http_status(exc) >= 500 or code in {
        "InternalFailure", "InternalError", "ServiceUnavailable", "KMSInternalException",
        "DependencyTimeoutException",
    }


def give_up_on_final_errors(exc: BaseException) -> bool:
    """Inverse of :func:`is_retryable_client_error`, for the ``giveup`` hook."""
    return not is_retryable_client_error(exc)


def retry_with_backoff(
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    tries: int = 5,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter: bool = True,
    logger: Optional[Any] = None,
    giveup: Optional[Callable[[BaseException], bool]] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator to retry a function with exponential backoff and optional jitter.

    Args:
        exceptions (tuple): Exceptions to catch and retry on.
        tries (int): Total attempts, including the first one.
        base_delay (float): First sleep in seconds; doubled after each attempt.
        max_delay (float): Upper bound for a single sleep (before jitter).
        jitter (bool): Whether to add random jitter to delay.
        logger: Optional logger for retry/exhaustion messages.
        giveup (callable): When it returns True for a caught exception, the
            exception is re-raised at once without further attempts.
    """
    def _decorate(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def _wrapped(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            delay = base_delay
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as exc:  # pylint: disable=broad-except
                    if giveup is not None and giveup(exc):
                        raise
                    attempt += 1
                    if attempt >= tries:
                        if logger:
                            logger.error("Retries exhausted for %s: %s", func.__name__, exc)
                        raise
                    sleep_for = min(delay, max_delay)
                    if jitter:
                        sleep_for += random.uniform(0, sleep_for / 2.0)
                    if logger:
                        logger.warning(
                            "Retrying %s in %.2fs (attempt %d/%d) due to: %s",
                            func.__name__, sleep_for, attempt, tries, exc
                        )
                    time.sleep(sleep_for)
                    delay *= 2.0
        return _wrapped
    return _decorate


# Shorthand used around AWS calls: retry transient failures only.
aws_retry = retry_with_backoff(
    exceptions=(ClientError, BotoCoreError),
    giveup=give_up_on_final_errors,
)
