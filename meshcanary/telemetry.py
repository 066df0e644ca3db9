"""Transition reporting: every state change is logged and, optionally, exported."""
import logging
from dataclasses import dataclass
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, start_http_server

from meshcanary.plan import WeightPair

logger = logging.getLogger("meshcanary.rollout")

# transition kinds
START = "start"
RESUME = "resume"
ADVANCE = "advance"
HOLD = "hold"
FETCH_FAILED = "fetch_failed"
ROLLBACK = "rollback"
COMPLETE = "complete"
ABORT = "abort"
CANCEL = "cancel"


@dataclass(frozen=True)
class Transition:
    kind: str
    route: str
    stage_index: int
    weights: Optional[WeightPair]
    error_rate: Optional[float] = None
    detail: str = ""


class LogReporter:
    def __call__(self, t: Transition):
        rate = "n/a" if t.error_rate is None else f"{t.error_rate:.4f}"
        level = logging.WARNING if t.kind in (ROLLBACK, ABORT, FETCH_FAILED) else logging.INFO
        logger.log(level, "%s route=%s stage=%d error_rate=%s weights=%s%s",
                   t.kind, t.route, t.stage_index, rate, t.weights,
                   f" ({t.detail})" if t.detail else "")


class PrometheusReporter:
    """Gauges for the live rollout, scraped from ``/metrics``."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.stage = Gauge("meshcanary_stage_index", "Current rollout stage index",
                           ["route"], registry=registry)
        self.weight = Gauge("meshcanary_weight_percent", "Last applied traffic weight",
                            ["route", "revision"], registry=registry)
        self.error_rate = Gauge("meshcanary_canary_error_rate", "Last observed canary error rate",
                                ["route"], registry=registry)
        self.transitions = Counter("meshcanary_transitions", "Rollout transitions by kind",
                                   ["route", "kind"], registry=registry)

    def __call__(self, t: Transition):
        self.transitions.labels(route=t.route, kind=t.kind).inc()
        self.stage.labels(route=t.route).set(t.stage_index)
        if t.weights is not None:
            self.weight.labels(route=t.route, revision="stable").set(t.weights.stable)
            self.weight.labels(route=t.route, revision="canary").set(t.weights.canary)
        if t.error_rate is not None:
            self.error_rate.labels(route=t.route).set(t.error_rate)

    @staticmethod
    def serve(port: int, registry: CollectorRegistry = REGISTRY):
        start_http_server(port, registry=registry)
        logger.info("serving rollout metrics on :%d/metrics", port)
