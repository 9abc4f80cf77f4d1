"""
Structured JSON logging for the cherry-pick bot.

Every record is one JSON object per line. The fields that identify the work
being done (repository, source pull request, target branch, trigger kind) are
promoted to the top level so log queries can filter on them; any other
``extra`` lands under ``context``.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional

from cherrypicker.models.cherry_pick import BranchOutcome, OutcomeStatus

CONTEXT_FIELDS = ("repository", "source_number", "target_branch", "event_kind")

# Libraries that log every HTTP request or git invocation at INFO
QUIET_LOGGERS = ("urllib3", "azure", "msrest", "git", "httpx")

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        document: Dict[str, Any] = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context: Dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in CONTEXT_FIELDS:
                document[key] = value
            elif key not in _RECORD_ATTRS:
                context[key] = value
        if context:
            document["context"] = context

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            document["error"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "stack_trace": "".join(traceback.format_exception(*record.exc_info)),
            }

        document["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }
        return json.dumps(document, default=str)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Adapter that stamps its context onto every record.

    Per-call ``extra`` values win over the adapter's context.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def with_context(self, **context: Any) -> "ContextLoggerAdapter":
        """Return a sibling adapter whose context also holds ``context``."""
        return ContextLoggerAdapter(self.logger, {**self.extra, **context})


def setup_logging(log_level: str = "INFO") -> None:
    """Send JSON records at ``log_level`` and above to stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler.setLevel(log_level)

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers = [handler]

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, **context: Any) -> ContextLoggerAdapter:
    """
    Get a context-aware logger for a module.

    Example:
        logger = get_logger(__name__, repository="proj/repo", source_number=2)
        logger.info("Parsing triggers")  # includes repository and source_number
    """
    return ContextLoggerAdapter(logging.getLogger(name), context)


def log_trigger_event(
    logger: logging.LoggerAdapter,
    repository: str,
    source_number: int,
    event_kind: str,
) -> None:
    """Log reception of a cherry-pick trigger."""
    logger.info(
        f"Cherry-pick trigger received: {event_kind}",
        extra={
            "repository": repository,
            "source_number": source_number,
            "event_kind": event_kind,
        },
    )


def log_branch_outcome(logger: logging.LoggerAdapter, outcome: BranchOutcome) -> None:
    """
    Log the terminal state of one target branch.

    Failures are logged at WARNING, everything else at INFO so that silent
    drops stay visible to operators.
    """
    extra: Dict[str, Any] = {
        "target_branch": outcome.target_branch,
        "status": outcome.status.value,
    }
    if outcome.number is not None:
        extra["number"] = outcome.number
    if outcome.reason is not None:
        extra["reason"] = outcome.reason.value
    if outcome.cause is not None:
        extra["cause"] = outcome.cause.value
    if outcome.detail:
        extra["detail"] = outcome.detail

    level = logging.WARNING if outcome.status == OutcomeStatus.FAILED else logging.INFO
    logger.log(level, f"Branch {outcome.target_branch}: {outcome.status.value}", extra=extra)


def log_api_call(
    logger: logging.LoggerAdapter,
    service: str,
    endpoint: str,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
) -> None:
    """Log a review API call at DEBUG, or at ERROR when ``error`` is given."""
    extra: Dict[str, Any] = {"service": service, "endpoint": endpoint}
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    if error is None:
        logger.debug(f"{service} {endpoint} ok", extra=extra)
        return
    extra["error"] = error
    logger.error(f"{service} {endpoint} failed: {error}", extra=extra)


def log_error_with_context(
    logger: logging.LoggerAdapter,
    message: str,
    error: Exception,
    **context: Any,
) -> None:
    """Log error with full stack trace and context."""
    logger.error(message, extra=context, exc_info=error)
