"""
Monitoring and metrics infrastructure for the shielded pool.

This package provides:
- Session-owned metrics collection (counters, gauges, histograms)
- Structured logging with JSON output and secret redaction

Usage:
    from monitoring import MetricsCollector, get_logger

    metrics = MetricsCollector()
    metrics.increment("deposits_total", labels={"pool": pool_address})
    with metrics.timer("proof_generation_ms"):
        ...

    logger = get_logger(__name__)
    logger.info("Deposit confirmed", extra={"leaf_index": 41})
"""

from monitoring.logging import (
    LoggingContext,
    configure_logging,
    get_logger,
    redact_sensitive_data,
)
from monitoring.metrics import MetricsCollector

__all__ = [
    "MetricsCollector",
    "LoggingContext",
    "get_logger",
    "configure_logging",
    "redact_sensitive_data",
]
