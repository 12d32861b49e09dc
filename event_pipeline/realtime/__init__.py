"""
Realtime metrics: fast-store engine and drift reconciliation
"""
from .engine import MetricValue, RealtimeMetricsEngine, build_metric_key, parse_metric_key
from .reconciler import RealtimeReconciler, ReconcileResult

__all__ = [
    "MetricValue",
    "RealtimeMetricsEngine",
    "RealtimeReconciler",
    "ReconcileResult",
    "build_metric_key",
    "parse_metric_key",
]
