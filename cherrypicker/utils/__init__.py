"""
Utility modules for the cherry-pick bot.
"""

from cherrypicker.utils.logging import (
    get_logger,
    setup_logging,
    log_trigger_event,
    log_branch_outcome,
    log_api_call,
    log_error_with_context,
)
from cherrypicker.utils.resilience import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    retry_with_backoff,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "log_trigger_event",
    "log_branch_outcome",
    "log_api_call",
    "log_error_with_context",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "retry_with_backoff",
]
