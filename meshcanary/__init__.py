"""Metric-gated canary rollouts for Istio-routed workloads."""
from meshcanary.controller import (AbortReason, RolloutController, RolloutReport,
                                   RolloutState, RolloutStatus)
from meshcanary.metrics import MetricsClient, MetricSample, PrometheusErrorRate
from meshcanary.plan import ROLLBACK, RolloutPlan, WeightPair
from meshcanary.virtualservice import InMemoryStore, TrafficSplitStore, VirtualServiceStore

__version__ = "0.1.0"

__all__ = [
    "AbortReason", "InMemoryStore", "MetricSample", "MetricsClient", "PrometheusErrorRate",
    "ROLLBACK", "RolloutController", "RolloutPlan", "RolloutReport", "RolloutState",
    "RolloutStatus", "TrafficSplitStore", "VirtualServiceStore", "WeightPair",
]
