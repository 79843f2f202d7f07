"""Utility modules."""

from delivery_engine.utils.logging import DispatchLogger, get_logger, setup_logging
from delivery_engine.utils.tracing import AssignmentTracer

__all__ = ["setup_logging", "get_logger", "DispatchLogger", "AssignmentTracer"]
