"""Logging and metrics."""
from impact_settlement.monitoring.logging import get_logger, settlement_context, setup_logging
from impact_settlement.monitoring.metrics import MetricsCollector, metrics

__all__ = ["MetricsCollector", "get_logger", "metrics", "settlement_context", "setup_logging"]
