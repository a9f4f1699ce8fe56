"""Shared utilities package."""

from mediabatch.shared.logging import setup_logger, get_logger, parse_level
from mediabatch.shared.retry import RetryStrategy, is_transient
from mediabatch.shared.metrics import MetricsCollector

__all__ = [
    "setup_logger",
    "get_logger",
    "parse_level",
    "RetryStrategy",
    "is_transient",
    "MetricsCollector",
]
