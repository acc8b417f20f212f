"""
certsigner — Observability Infrastructure

Structured logging and counter metrics.
"""

from certsigner.telemetry.logging import setup_logging
from certsigner.telemetry.metrics import MetricCollector

__all__ = ["setup_logging", "MetricCollector"]
