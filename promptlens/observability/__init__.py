"""
Observability module - Logging, Metrics, and Tracing.
"""

from promptlens.observability.logging import get_logger, log_context, setup_logging
from promptlens.observability.metrics import metrics
from promptlens.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
