import copy

import pytest
from kubernetes.client.rest import ApiException

from meshcanary.metrics import MetricsClient, MetricSample
from meshcanary.plan import ROLLBACK, RolloutPlan, WeightPair
from meshcanary.virtualservice import InMemoryStore

ROUTE = "reviews"


class ScriptedMetrics(MetricsClient):
    """Replays samples in order.

    Floats become samples with 100 requests, exceptions are raised and callables
    are invoked at fetch time, so a sample that fails validation fails inside the client.
    """

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def error_rate(self, revision, window):
        self.calls.append((revision, window))
        if not self.script:
            raise AssertionError("metrics script exhausted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item()
        if isinstance(item, MetricSample):
            return item
        return MetricSample(error_rate=item, sample_count=100)


class FlakyStore(InMemoryStore):
    """InMemoryStore that raises queued exceptions before applying writes."""

    def __init__(self, routes=None, failures=()):
        super().__init__(routes)
        self.failures = list(failures)
        self.attempts = []
        self.reads = 0

    def apply_weights(self, route, weights):
        self.attempts.append(weights)
        if self.failures:
            raise self.failures.pop(0)
        super().apply_weights(route, weights)

    def read_weights(self, route):
        self.reads += 1
        return super().read_weights(route)


class FakeCustomObjects:
    """Enough of CustomObjectsApi to exercise JSON patches against stored objects."""

    def __init__(self, objects=None):
        self.objects = objects or {}
        self.patches = []
        self.errors = []

    def _raise_queued(self):
        if self.errors:
            raise self.errors.pop(0)

    def get_namespaced_custom_object(self, group, version, namespace, plural, name, **kwargs):
        self._raise_queued()
        try:
            return copy.deepcopy(self.objects[(plural, namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def patch_namespaced_custom_object(self, group, version, namespace, plural, name, body,
                                       **kwargs):
        self.patches.append({"group": group, "version": version, "namespace": namespace,
                             "plural": plural, "name": name, "body": body, "kwargs": kwargs})
        self._raise_queued()
        key = (plural, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        for op in body:
            assert op["op"] == "replace"
            target = self.objects[key]
            parts = op["path"].strip("/").split("/")
            for p in parts[:-1]:
                target = target[int(p)] if isinstance(target, list) else target.setdefault(p, {})
            target[parts[-1]] = op["value"]
        return copy.deepcopy(self.objects[key])


def virtual_service(stable=100, canary=0):
    return {
        "apiVersion": "networking.istio.io/v1alpha3",
        "kind": "VirtualService",
        "metadata": {"name": ROUTE, "namespace": "istio-test"},
        "spec": {
            "hosts": [ROUTE],
            "http": [{"route": [
                {"destination": {"host": ROUTE, "subset": "v1"}, "weight": stable},
                {"destination": {"host": ROUTE, "subset": "v2"}, "weight": canary},
            ]}],
        },
    }


@pytest.fixture
def plan():
    return RolloutPlan(route=ROUTE, stable_revision="v1", canary_revision="v2",
                       stages=[WeightPair(90, 10), WeightPair(50, 50), WeightPair(0, 100)],
                       error_threshold=0.05, poll_interval=0.01, metric_window=60)


@pytest.fixture
def store():
    return FlakyStore({ROUTE: ROLLBACK})


@pytest.fixture
def transitions():
    return []
