"""
Structured logging for the billing engine.

The API, the CLI and the Celery worker all log through structlog on top of
the stdlib root logger, so every entry point shares one output format.
"""

import logging
import sys

import structlog

from vendzz.billing.settings import Settings, get_settings

audit_logger = structlog.get_logger("vendzz.billing.audit")


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog from the ``observability`` settings."""
    observability = (settings or get_settings()).observability

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=observability.log_level.upper(),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if observability.enable_correlation_ids:
        processors.insert(
            0,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )
    if observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_audit_event(
    action: str,
    tenant_id: str,
    resource_type: str,
    resource_id: str,
    actor: str = "system",
    **context,
) -> None:
    """Record who changed which billing record."""
    audit_logger.info(
        action,
        audit_tenant_id=tenant_id,
        audit_resource=f"{resource_type}:{resource_id}",
        audit_actor=actor,
        **context,
    )
