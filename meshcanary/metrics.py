"""Canary error-rate source.

The controller only sees ``MetricsClient.error_rate``; ``PrometheusErrorRate``
implements it against the Prometheus HTTP API using the Istio request
counter, where every sidecar reports ``istio_requests_total`` labelled with
the destination service, the destination revision and the response code.
"""
import logging
import math
from dataclasses import dataclass
from typing import Optional

import requests

from meshcanary.errors import InvalidSampleError, NoDataError, QueryRejected, TransientFetchError

logger = logging.getLogger(__name__)

DEFAULT_METRIC = "istio_requests_total"
DEFAULT_REVISION_LABEL = "destination_version"
DEFAULT_ERROR_CODES = "5.."


@dataclass(frozen=True)
class MetricSample:
    error_rate: float
    sample_count: int

    def __post_init__(self):
        rate = self.error_rate
        # NaN compares false against any threshold, so it would read as healthy
        if isinstance(rate, bool) or not isinstance(rate, (int, float)) \
                or not math.isfinite(rate) or not 0.0 <= rate <= 1.0:
            raise InvalidSampleError(f"error rate {rate!r} is not a fraction in [0, 1]")
        if isinstance(self.sample_count, bool) or not isinstance(self.sample_count, int) \
                or self.sample_count < 0:
            raise InvalidSampleError(f"sample count {self.sample_count!r} is not a non-negative integer")

    @property
    def has_traffic(self) -> bool:
        return self.sample_count > 0


class MetricsClient:
    """Contract: fraction of failed requests to a revision over a trailing window.

    Raises ``TransientFetchError`` when the backend cannot be reached and
    ``NoDataError`` when the window holds no requests at all.
    """

    def error_rate(self, revision: str, window: float) -> MetricSample:
        raise NotImplementedError


def _range(window: float) -> str:
    return f"{max(1, int(round(window)))}s"


class PrometheusErrorRate(MetricsClient):
    def __init__(self, url: str, service: str, revision_label: str = DEFAULT_REVISION_LABEL,
                 error_codes: str = DEFAULT_ERROR_CODES, metric: str = DEFAULT_METRIC,
                 token: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.url = url.rstrip("/")
        self.service = service
        self.revision_label = revision_label
        self.error_codes = error_codes
        self.metric = metric
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def selector(self, revision: str, errors_only: bool = False) -> str:
        labels = [f'destination_service="{self.service}"', f'{self.revision_label}="{revision}"']
        if errors_only:
            labels.append(f'response_code=~"{self.error_codes}"')
        return "{" + ",".join(labels) + "}"

    def query_for(self, revision: str, window: float, errors_only: bool = False) -> str:
        return (f"sum(increase({self.metric}{self.selector(revision, errors_only)}"
                f"[{_range(window)}]))")

    def _instant(self, query: str) -> Optional[float]:
        try:
            r = self.session.get(f"{self.url}/api/v1/query", params={"query": query},
                                 timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientFetchError(f"prometheus unreachable: {e}") from e
        if r.status_code >= 500 or r.status_code in (408, 429):
            raise TransientFetchError(f"prometheus returned HTTP {r.status_code}")
        if r.status_code >= 400:
            # bad_data (400), execution (422) or auth: the same query fails every time
            raise QueryRejected(f"prometheus rejected query {query!r} "
                                f"with HTTP {r.status_code}: {_error_detail(r)}")
        try:
            data = r.json()
        except ValueError as e:
            raise TransientFetchError(f"prometheus sent a non-JSON body: {e}") from e
        if not isinstance(data, dict) or data.get("status") != "success":
            detail = data.get("error", data) if isinstance(data, dict) else data
            raise TransientFetchError(f"prometheus query failed: {detail}")
        try:
            result = data["data"]["result"]
            if not result:
                return None
            return float(result[0]["value"][1])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise TransientFetchError(f"malformed prometheus response: {e!r}") from e

    def error_rate(self, revision: str, window: float) -> MetricSample:
        total = self._instant(self.query_for(revision, window))
        if total is None or math.isnan(total) or total <= 0:
            raise NoDataError(f"no requests to revision {revision!r} in the last {_range(window)}")
        if math.isinf(total):
            raise TransientFetchError(f"request count for revision {revision!r} is {total}")
        errors = self._instant(self.query_for(revision, window, errors_only=True))
        if errors is None or math.isnan(errors):
            errors = 0.0
        rate = min(1.0, max(0.0, errors / total))
        logger.debug("revision %s: %.1f errors / %.1f requests", revision, errors, total)
        return MetricSample(error_rate=rate, sample_count=math.ceil(total))


def _error_detail(r) -> str:
    try:
        return str(r.json().get("error", ""))
    except (ValueError, AttributeError):
        return ""
