"""
Logging setup for crm-sync.

Every component takes a structlog logger at construction time and falls
back to ``structlog.get_logger(__name__)``. ``configure_logging`` runs
once from the CLI; the ``log_*`` helpers are the shared log points for
remote calls and contact sub-record actions.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.typing import FilteringBoundLogger


def _get_settings():
    from .settings import settings
    return settings()


def service_context(service_name: str, environment: str):
    """Processor stamping every event with the service name and environment."""

    def add_service_context(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        event_dict.setdefault("environment", environment)
        return event_dict

    return add_service_context


def configure_logging(log_level: str = None, log_format: str = None) -> None:
    """
    Route structlog events for a CLI run to stdout.

    ``json`` renders one object per line for log shipping; ``text`` is
    the colored console form for interactive runs. CLI results are also
    printed to stdout, so keep the JSON format when piping output.

    Args:
        log_level: ``--log-level`` value; defaults to LOG_LEVEL
        log_format: ``--log-format`` value; defaults to LOG_FORMAT
    """
    config = _get_settings()
    level = getattr(logging, log_level or config.log_level)
    format_type = log_format or config.log_format

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = [
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        service_context(config.service_name, config.environment),
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None) -> FilteringBoundLogger:
    """Module-level logger for the CLI; components take theirs by injection."""
    return structlog.get_logger(name)


def log_api_call(
    logger: FilteringBoundLogger,
    method: str,
    endpoint: str,
    status_code: Optional[int] = None,
    duration_ms: Optional[float] = None,
    **extra_context
) -> None:
    """
    Log a completed remote API call.

    The level follows the status code: 5xx and transport failures
    (status 0) are errors, 4xx warnings, everything else info.
    """
    context = {
        "method": method,
        "endpoint": endpoint,
        **extra_context
    }

    if status_code is not None:
        context["status_code"] = status_code

    if duration_ms is not None:
        context["duration_ms"] = round(duration_ms, 2)

    if status_code is not None and (status_code == 0 or status_code >= 500):
        logger.error("API call failed", **context)
    elif status_code and status_code >= 400:
        logger.warning("API call client error", **context)
    else:
        logger.info("API call completed", **context)


def log_contact_action(
    logger: FilteringBoundLogger,
    constituent_id: Any,
    kind: str,
    action: str,
    record_id: Any = None,
    success: bool = True,
    **extra_context
) -> None:
    """
    Log a contact sub-record action (skip, update, add, delete).

    Failed actions are logged as errors with enough context (constituent,
    record type, record id) to replay them by hand.
    """
    context = {
        "constituent_id": constituent_id,
        "kind": kind,
        "action": action,
        **extra_context
    }

    if record_id is not None:
        context["record_id"] = record_id

    if success:
        logger.info("Contact record action", **context)
    else:
        logger.error("Contact record action failed", **context)
