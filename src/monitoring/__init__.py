"""
Monitoring for the zkTLS snapshot pipeline.

This package provides:
- In-process metrics (counters, gauges, histograms) for capture, publish
  and orchestration runs
- Structured logging with JSON output and secret redaction

Usage:
    import logging

    from monitoring import metrics

    metrics.increment("capture_attempts_total", labels={"backend": "notary"})

    logger = logging.getLogger("orchestrator")
    logger.info("Run started", extra={"provider": "github"})
"""

from monitoring.logging import LoggingContext, configure_logging
from monitoring.metrics import MetricsCollector, metrics

__all__ = [
    "MetricsCollector",
    "metrics",
    "configure_logging",
    "LoggingContext",
]
