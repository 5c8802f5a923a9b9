"""Monitoring: structured logging, Prometheus metrics and health checks."""
from checkout_engine.monitoring.logging import setup_logging
from checkout_engine.monitoring.metrics import MetricsCollector, metrics

__all__ = ["MetricsCollector", "metrics", "setup_logging"]
