"""Canary rollout controller.

One controller drives one rollout of one route. Stage 0 is applied when the
run starts; after that every tick takes one error-rate sample for the canary
and makes at most one weight write:

* metrics unreachable  -> no write; the run aborts after ``max_fetch_failures``
  consecutive failures (an invalid sample counts as one)
* query rejected       -> roll back to 100/0 and abort
* no traffic observed  -> hold: re-apply the current stage
* error rate >= limit  -> roll back to 100/0 and abort
* last stage reached   -> complete
* otherwise            -> advance one stage

Collaborator calls run on a single worker thread so each one can be bounded
by ``call_timeout`` while writes still reach the API server in issue order.
"""
import logging
import threading
import time
from concurrent import futures
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional

from tenacity import (Retrying, before_sleep_log, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from meshcanary import telemetry
from meshcanary.errors import (InvalidSampleError, MeshCanaryError, NoDataError,
                               QueryRejected, RouteNotFound, TrafficSplitError,
                               TransientFetchError, TransientWriteError, WriteConflict)
from meshcanary.metrics import MetricsClient, MetricSample
from meshcanary.plan import ROLLBACK, RolloutPlan, WeightPair, nearest_stage
from meshcanary.virtualservice import TrafficSplitStore

logger = logging.getLogger(__name__)


class RolloutStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self is not RolloutStatus.RUNNING


class AbortReason(str, Enum):
    THRESHOLD_BREACHED = "threshold_breached"
    METRICS_UNAVAILABLE = "metrics_unavailable"
    QUERY_REJECTED = "query_rejected"
    NO_DATA = "no_data"
    WRITE_CONFLICT = "write_conflict"
    WRITE_FAILED = "write_failed"
    ROUTE_NOT_FOUND = "route_not_found"
    CANCELLED = "cancelled"
    ERROR = "error"


def _reason_for(e: TrafficSplitError) -> AbortReason:
    if isinstance(e, RouteNotFound):
        return AbortReason.ROUTE_NOT_FOUND
    if isinstance(e, WriteConflict):
        return AbortReason.WRITE_CONFLICT
    return AbortReason.WRITE_FAILED


@dataclass
class RolloutState:
    started_at: float
    stage_index: int = 0
    status: RolloutStatus = RolloutStatus.RUNNING
    last_error_rate: Optional[float] = None
    applied: Optional[WeightPair] = None  # last pair the store acknowledged
    ticks: int = 0
    fetch_failures: int = 0
    hold_ticks: int = 0
    reason: Optional[AbortReason] = None
    error: Optional[BaseException] = None
    rollback_error: Optional[BaseException] = None
    finished_at: Optional[float] = None


@dataclass(frozen=True)
class RolloutReport:
    route: str
    status: RolloutStatus
    weights: Optional[WeightPair]
    stage_index: int
    last_error_rate: Optional[float]
    ticks: int
    started_at: float
    finished_at: Optional[float]
    reason: Optional[AbortReason] = None
    error: Optional[BaseException] = None
    rollback_error: Optional[BaseException] = None

    @property
    def rollback_confirmed(self) -> bool:
        return self.weights == ROLLBACK and self.rollback_error is None

    def summary(self) -> str:
        parts = [f"route={self.route}", f"status={self.status.value}",
                 f"weights={self.weights}", f"stage={self.stage_index}"]
        if self.last_error_rate is not None:
            parts.append(f"error_rate={self.last_error_rate:.4f}")
        if self.reason is not None:
            parts.append(f"reason={self.reason.value}")
        if self.error is not None:
            parts.append(f"error={self.error}")
        if self.rollback_error is not None:
            parts.append(f"rollback_failed={self.rollback_error}")
        return " ".join(parts)

    def to_dict(self) -> dict:
        return {
            "route": self.route,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "weights": None if self.weights is None else
            {"stable": self.weights.stable, "canary": self.weights.canary},
            "stage_index": self.stage_index,
            "last_error_rate": self.last_error_rate,
            "ticks": self.ticks,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": None if self.error is None else str(self.error),
            "rollback_error": None if self.rollback_error is None else str(self.rollback_error),
        }


Reporter = Callable[[telemetry.Transition], None]


class RolloutController:
    def __init__(self, plan: RolloutPlan, metrics: MetricsClient, store: TrafficSplitStore,
                 reporters: Optional[Iterable[Reporter]] = None, call_timeout: float = 30.0,
                 max_fetch_failures: int = 5, write_attempts: int = 3,
                 write_backoff: float = 1.0, max_hold_ticks: int = 0):
        plan.validate()
        if max_fetch_failures < 1 or write_attempts < 1:
            raise ValueError("max_fetch_failures and write_attempts must be at least 1")
        self.plan = plan
        self.metrics = metrics
        self.store = store
        self.reporters: List[Reporter] = list(reporters) if reporters is not None \
            else [telemetry.LogReporter()]
        self.call_timeout = call_timeout
        self.max_fetch_failures = max_fetch_failures
        self.write_attempts = write_attempts
        self.write_backoff = write_backoff
        self.max_hold_ticks = max_hold_ticks
        self.state: Optional[RolloutState] = None
        self._cancel = threading.Event()
        self._rollback_requested = False
        self._executor: Optional[futures.ThreadPoolExecutor] = None

    # -- external control ---------------------------------------------------

    def cancel(self, rollback: bool = False):
        """Stop at the next tick boundary; weights stay as last applied unless ``rollback``."""
        if rollback:
            self._rollback_requested = True
        self._cancel.set()

    def rollback(self):
        self.cancel(rollback=True)

    def close(self):
        """Release the I/O worker. A later start() or tick() gets a fresh one."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    # -- collaborator calls -------------------------------------------------

    def _bounded(self, fn, *args):
        if self._executor is None:
            self._executor = futures.ThreadPoolExecutor(max_workers=1,
                                                        thread_name_prefix="meshcanary-io")
        return self._executor.submit(fn, *args).result(timeout=self.call_timeout)

    def _fetch(self) -> MetricSample:
        try:
            sample = self._bounded(self.metrics.error_rate, self.plan.canary_revision,
                                   self.plan.metric_window)
        except futures.TimeoutError:
            raise TransientFetchError(
                f"metrics query exceeded {self.call_timeout}s") from None
        if not isinstance(sample, MetricSample):
            raise InvalidSampleError(f"metrics client returned {sample!r}, not a MetricSample")
        return sample

    def _retrying(self) -> Retrying:
        return Retrying(stop=stop_after_attempt(self.write_attempts),
                        wait=wait_exponential(multiplier=self.write_backoff, max=30),
                        retry=retry_if_exception_type(TransientWriteError),
                        before_sleep=before_sleep_log(logger, logging.WARNING),
                        reraise=True)

    def _apply_once(self, weights: WeightPair):
        try:
            self._bounded(self.store.apply_weights, self.plan.route, weights)
        except futures.TimeoutError:
            raise TransientWriteError(
                self.plan.route, f"weight write exceeded {self.call_timeout}s") from None

    def _read_once(self) -> WeightPair:
        try:
            return self._bounded(self.store.read_weights, self.plan.route)
        except futures.TimeoutError:
            raise TransientWriteError(
                self.plan.route, f"weight read exceeded {self.call_timeout}s") from None

    def _read(self) -> WeightPair:
        return self._retrying()(self._read_once)

    def _write(self, weights: WeightPair):
        try:
            self._retrying()(self._apply_once, weights)
        except WriteConflict as e:
            live = self._read()
            logger.warning("%s; live weights are %s, retrying %s once", e, live, weights)
            self.state.applied = live
            self._retrying()(self._apply_once, weights)
        self.state.applied = weights

    # -- transitions --------------------------------------------------------

    def _emit(self, kind: str, detail: str = ""):
        st = self.state
        t = telemetry.Transition(kind=kind, route=self.plan.route, stage_index=st.stage_index,
                                 weights=st.applied, error_rate=st.last_error_rate, detail=detail)
        for report in self.reporters:
            report(t)

    def _finish(self, status: RolloutStatus) -> RolloutStatus:
        self.state.status = status
        self.state.finished_at = time.time()
        return status

    def _rollback(self) -> bool:
        try:
            self._write(ROLLBACK)
        except Exception as e:
            self.state.rollback_error = e
            logger.error("rollback of %s to %s failed: %s", self.plan.route, ROLLBACK, e)
            return False
        self._emit(telemetry.ROLLBACK)
        return True

    def _abort(self, reason: AbortReason, error: Optional[BaseException] = None,
               detail: str = "") -> RolloutStatus:
        st = self.state
        st.reason = reason
        st.error = error
        if reason is not AbortReason.CANCELLED:
            self._rollback()
        self._finish(RolloutStatus.ABORTED)
        self._emit(telemetry.CANCEL if reason is AbortReason.CANCELLED else telemetry.ABORT,
                   detail or (str(error) if error else reason.value))
        return st.status

    def _at_boundary(self) -> Optional[RolloutStatus]:
        if not self._cancel.is_set():
            return None
        if self._rollback_requested:
            self.state.reason = AbortReason.CANCELLED
            self._rollback()
            self._finish(RolloutStatus.ROLLED_BACK)
            self._emit(telemetry.CANCEL, "operator rollback")
            return self.state.status
        return self._abort(AbortReason.CANCELLED, detail="cancelled by operator")

    def _hold(self, detail: str) -> RolloutStatus:
        st = self.state
        st.hold_ticks += 1
        try:
            self._write(self.plan.stages[st.stage_index])
        except TrafficSplitError as e:
            return self._abort(_reason_for(e), e)
        if self.max_hold_ticks and st.hold_ticks >= self.max_hold_ticks:
            return self._abort(AbortReason.NO_DATA,
                               detail=f"no canary traffic for {st.hold_ticks} ticks")
        self._emit(telemetry.HOLD, detail)
        return st.status

    # -- lifecycle ----------------------------------------------------------

    def start(self, resume: bool = False) -> RolloutState:
        """Apply the opening weights: stage 0, or the stage nearest the live split."""
        self.state = RolloutState(started_at=time.time())
        try:
            if resume:
                live = self._read()
                self.state.applied = live
                self.state.stage_index = nearest_stage(self.plan.stages, live)
                target = self.plan.stages[self.state.stage_index]
                if live != target:
                    self._write(target)
                self._emit(telemetry.RESUME, f"live weights were {live}")
            else:
                self._write(self.plan.stages[0])
                self._emit(telemetry.START)
        except TrafficSplitError as e:
            self._abort(_reason_for(e), e)
        return self.state

    def tick(self) -> RolloutStatus:
        st = self.state
        if st is None:
            raise RuntimeError("rollout has not been started")
        if st.status.terminal:
            return st.status
        cancelled = self._at_boundary()
        if cancelled is not None:
            return cancelled
        st.ticks += 1
        plan = self.plan

        try:
            sample = self._fetch()
        except TransientFetchError as e:
            st.fetch_failures += 1
            if st.fetch_failures >= self.max_fetch_failures:
                return self._abort(AbortReason.METRICS_UNAVAILABLE, e)
            self._emit(telemetry.FETCH_FAILED,
                       f"{e} ({st.fetch_failures}/{self.max_fetch_failures})")
            return st.status
        except NoDataError as e:
            st.fetch_failures = 0
            return self._hold(str(e))
        except QueryRejected as e:
            return self._abort(AbortReason.QUERY_REJECTED, e)
        st.fetch_failures = 0
        if not sample.has_traffic:
            return self._hold("no requests observed")
        st.hold_ticks = 0
        st.last_error_rate = sample.error_rate

        if sample.error_rate >= plan.error_threshold:
            return self._abort(
                AbortReason.THRESHOLD_BREACHED,
                detail=f"error rate {sample.error_rate:.4f} >= {plan.error_threshold}")

        try:
            if st.stage_index == plan.last_index:
                if st.applied != plan.final:
                    self._write(plan.final)
                self._finish(RolloutStatus.COMPLETED)
                self._emit(telemetry.COMPLETE)
                return st.status
            self._write(plan.stages[st.stage_index + 1])
        except TrafficSplitError as e:
            return self._abort(_reason_for(e), e)
        st.stage_index += 1
        self._emit(telemetry.ADVANCE)
        return st.status

    def run(self, resume: bool = False) -> RolloutReport:
        try:
            self.start(resume=resume)
            while not self.state.status.terminal:
                # an early wake-up means cancel(); tick() handles it at the boundary
                self._cancel.wait(self.plan.poll_interval)
                self.tick()
        except Exception as e:
            if self.state is None or self.state.status.terminal:
                raise
            if not isinstance(e, MeshCanaryError):
                logger.exception("rollout of %s failed unexpectedly", self.plan.route)
            self._abort(AbortReason.ERROR, e)
        finally:
            self.close()
        return self.report()

    def report(self) -> RolloutReport:
        st = self.state
        if st is None:
            raise RuntimeError("rollout has not been started")
        return RolloutReport(route=self.plan.route, status=st.status, weights=st.applied,
                             stage_index=st.stage_index, last_error_rate=st.last_error_rate,
                             ticks=st.ticks, started_at=st.started_at,
                             finished_at=st.finished_at, reason=st.reason, error=st.error,
                             rollback_error=st.rollback_error)
