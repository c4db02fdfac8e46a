"""structlog setup for InboxJanitor.

The server renders one JSON object per line; the CLI renders colored
key=value lines. Every engine run (a sync step, a classification pass, a
delete batch) binds its id with ``bind_run`` so all entries it produces,
including the LLM request log rows, can be joined on ``run_id``.

Usage:
    from inbox_janitor.core.logging import bind_run, get_logger

    logger = get_logger(__name__)

    bind_run(run.id, account_id=account.id)
    logger.info("sync_step_started", resumed=True)
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

_run_id: ContextVar[str | None] = ContextVar("run_id", default=None)
_account_id: ContextVar[str | None] = ContextVar("account_id", default=None)

# Event keys whose values must never reach a log sink
SECRET_KEYS = frozenset({"refresh_token", "access_token", "client_secret", "api_key", "authorization"})
REDACTED = "[redacted]"

# Libraries that log every HTTP round trip at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "urllib3", "apscheduler")


def bind_run(run_id: str | None, account_id: str | None = None) -> None:
    """Tag subsequent log entries in this context with a run (and account).

    Pass None to clear.
    """
    _run_id.set(run_id)
    _account_id.set(account_id)


def current_run_id() -> str | None:
    return _run_id.get()


def _add_run_context(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    run_id = _run_id.get()
    if run_id is not None:
        event_dict.setdefault("run_id", run_id)
    account_id = _account_id.get()
    if account_id is not None:
        event_dict.setdefault("account_id", account_id)
    return event_dict


def _redact_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines for the server, console rendering for the CLI
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_run_context,
        _redact_secrets,
    ]
    if json_output:
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Logger for a module; event names are snake_case, details go in kwargs."""
    return structlog.get_logger(name)
