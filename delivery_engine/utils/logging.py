"""Structured logging configuration."""

import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from delivery_engine.config import get_settings


def setup_logging() -> None:
    """Configure structured logging for the application."""
    settings = get_settings()

    log_level = getattr(logging, settings.log_level)
    handler = logging.StreamHandler(sys.stdout)

    if settings.log_format == "json":
        formatter: logging.Formatter = jsonlogger.JsonFormatter(
            fmt="%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(
        service="delivery-engine", environment=settings.environment
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class DispatchLogger:
    """Specialized logger for dispatch decisions and delivery state changes."""

    def __init__(self, component: str):
        self.component = component
        self.logger = get_logger(component)

    def log_transition(
        self,
        delivery_id: Any,
        from_status: str,
        to_status: str,
        actor: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Log an accepted delivery status transition."""
        self.logger.info(
            "delivery_transition",
            component=self.component,
            delivery_id=str(delivery_id),
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            **kwargs,
        )

    def log_assignment(
        self,
        delivery_id: Any,
        success: bool,
        rider_id: Any | None = None,
        score: float | None = None,
        reason: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Log the outcome of one assignment attempt."""
        log_data: dict[str, Any] = {
            "component": self.component,
            "delivery_id": str(delivery_id),
            "success": success,
        }

        if rider_id is not None:
            log_data["rider_id"] = str(rider_id)
        if score is not None:
            log_data["score"] = round(score, 2)
        if reason is not None:
            log_data["reason"] = reason

        log_data.update(kwargs)
        if success:
            self.logger.info("assignment_attempt", **log_data)
        else:
            self.logger.warning("assignment_attempt", **log_data)

    def log_reconciliation_gap(
        self,
        delivery_id: Any,
        rider_id: Any | None,
        attempted: str,
        timestamp: Any,
        **kwargs: Any,
    ) -> None:
        """Log a possibly partial rider/delivery write for the repair sweep."""
        self.logger.error(
            "reconciliation_gap",
            component=self.component,
            delivery_id=str(delivery_id),
            rider_id=str(rider_id) if rider_id else None,
            attempted=attempted,
            timestamp=str(timestamp),
            **kwargs,
        )

    def log_error(
        self,
        error: str,
        delivery_id: Any | None = None,
        **kwargs: Any,
    ) -> None:
        """Log an error."""
        self.logger.error(
            "dispatch_error",
            component=self.component,
            delivery_id=str(delivery_id) if delivery_id else None,
            error=error,
            **kwargs,
        )
