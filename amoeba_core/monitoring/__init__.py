"""
Monitoring
==========

Queue metrics and traffic-light readiness.
"""

from amoeba_core.monitoring.health import (
    CheckFunc,
    HealthCheck,
    HealthStatus,
    QuickHealth,
    ReadinessService,
    SystemReadiness,
    aggregate,
    credentials_check,
    storage_check,
)
from amoeba_core.monitoring.metrics import GenerationStats, JobMetricsCollector, QueueMetrics

__all__ = [
    "CheckFunc",
    "HealthCheck",
    "HealthStatus",
    "QuickHealth",
    "ReadinessService",
    "SystemReadiness",
    "aggregate",
    "credentials_check",
    "storage_check",
    "GenerationStats",
    "JobMetricsCollector",
    "QueueMetrics",
]
