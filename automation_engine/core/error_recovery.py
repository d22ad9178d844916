"""Retry helpers for transient failures and component health checks."""

import random
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, Tuple, Type

from .clock import utc_now
from .exceptions import StorageError, TransientError, WorkflowEngineError
from .logging import ErrorRecoveryLogger, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """How often and how patiently an operation is retried.

    Engine errors are retried when they are marked ``recoverable``; any
    other exception only when it is one of ``retryable``.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable: Tuple[Type[Exception], ...] = (TransientError, StorageError)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        if attempt >= max(1, self.max_attempts):
            return False
        if isinstance(error, WorkflowEngineError):
            return error.recoverable
        return isinstance(error, self.retryable)

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1``."""
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() / 2
        return delay


def retry_call(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call ``func`` until it succeeds or ``config`` stops retrying."""
    recovery_logger = ErrorRecoveryLogger(func.__name__)
    attempt = 0
    while True:
        attempt += 1
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    recovery_logger.log_recovery_failure(func.__name__, e, attempt)
                raise
            recovery_logger.log_recovery_attempt(func.__name__, e, attempt, config.max_attempts)
            delay = config.delay_for(attempt)
            if delay > 0:
                time.sleep(delay)
            continue
        if attempt > 1:
            recovery_logger.log_recovery_success(func.__name__, attempt)
        return result


def with_retry(config: RetryConfig = RetryConfig()):
    """Decorator form of ``retry_call``."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return retry_call(func, config, *args, **kwargs)
        return wrapper
    return decorator


class HealthChecker:
    """Named component checks run on demand by the health endpoint.

    A check passes when it returns; a dict result is merged into its report
    and a string becomes the report message.
    """

    def __init__(self):
        self.checks: Dict[str, Callable[[], Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable[[], Any]):
        self.checks[name] = check_func
        logger.debug(f"Registered health check: {name}")

    def run_check(self, name: str) -> Dict[str, Any]:
        check = self.checks.get(name)
        if check is None:
            return {"status": "error", "message": f"Health check '{name}' not found",
                    "timestamp": utc_now().isoformat()}

        started = time.monotonic()
        try:
            outcome = check()
        except Exception as e:
            report = {"status": "unhealthy", "message": str(e), "error_type": type(e).__name__}
        else:
            report = {"status": "healthy",
                      "message": outcome if isinstance(outcome, str) else "Check passed"}
            if isinstance(outcome, dict):
                report.update(outcome)
        report["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
        report["timestamp"] = utc_now().isoformat()

        self.last_results[name] = report
        return report

    def run_all_checks(self) -> Dict[str, Any]:
        results = {name: self.run_check(name) for name in list(self.checks)}
        healthy = all(result["status"] == "healthy" for result in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": utc_now().isoformat(),
        }


health_checker = HealthChecker()
