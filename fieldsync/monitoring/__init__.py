"""
Monitoring Module

Provides Prometheus metrics for the scheduler.
"""

from fieldsync.monitoring.metrics import Metrics, get_metrics

__all__ = [
    "Metrics",
    "get_metrics",
]
