import pytest
import urllib3
from kubernetes.client.rest import ApiException

from conftest import ROUTE, FakeCustomObjects, virtual_service
from meshcanary.errors import ConfigError, RouteNotFound, TransientWriteError, WriteConflict
from meshcanary.plan import ROLLBACK, WeightPair
from meshcanary.virtualservice import DestinationRuleTuner, InMemoryStore, VirtualServiceStore

NS = "istio-test"


@pytest.fixture
def api():
    return FakeCustomObjects({("virtualservices", NS, ROUTE): virtual_service()})


@pytest.fixture
def vs(api):
    return VirtualServiceStore(api, NS, timeout=5.0)


def test_apply_sends_json_patch_for_both_weights(api, vs):
    vs.apply_weights(ROUTE, WeightPair(90, 10))
    (call,) = api.patches
    assert call["group"] == "networking.istio.io"
    assert call["version"] == "v1alpha3"
    assert call["plural"] == "virtualservices"
    assert call["namespace"] == NS
    assert call["body"] == [
        {"op": "replace", "path": "/spec/http/0/route/0/weight", "value": 90},
        {"op": "replace", "path": "/spec/http/0/route/1/weight", "value": 10},
    ]
    assert call["kwargs"] == {"_request_timeout": 5.0}
    assert vs.read_weights(ROUTE) == WeightPair(90, 10)


def test_apply_is_idempotent(api, vs):
    vs.apply_weights(ROUTE, WeightPair(50, 50))
    once = api.objects[("virtualservices", NS, ROUTE)]
    vs.apply_weights(ROUTE, WeightPair(50, 50))
    assert api.objects[("virtualservices", NS, ROUTE)] == once
    assert api.patches[0]["body"] == api.patches[1]["body"]


def test_patch_leaves_destinations_alone(api, vs):
    vs.apply_weights(ROUTE, WeightPair(0, 100))
    route = api.objects[("virtualservices", NS, ROUTE)]["spec"]["http"][0]["route"]
    assert [d["destination"]["subset"] for d in route] == ["v1", "v2"]


def test_custom_destination_indexes():
    obj = virtual_service()
    obj["spec"]["http"].insert(0, {"match": [{"headers": {"end-user": {"exact": "qa"}}}],
                                   "route": [{"destination": {"host": ROUTE, "subset": "v2"}}]})
    obj["spec"]["http"][1]["route"].reverse()
    api = FakeCustomObjects({("virtualservices", NS, ROUTE): obj})
    vs = VirtualServiceStore(api, NS, http_index=1, stable_index=1, canary_index=0)
    vs.apply_weights(ROUTE, WeightPair(70, 30))
    assert [op["path"] for op in api.patches[0]["body"]] == [
        "/spec/http/1/route/1/weight", "/spec/http/1/route/0/weight"]
    assert vs.read_weights(ROUTE) == WeightPair(70, 30)


def test_same_destination_for_both_revisions_is_rejected(api):
    with pytest.raises(ConfigError):
        VirtualServiceStore(api, NS, stable_index=1, canary_index=1)


def test_read_fills_missing_weight_with_remainder(api, vs):
    del api.objects[("virtualservices", NS, ROUTE)]["spec"]["http"][0]["route"][1]["weight"]
    api.objects[("virtualservices", NS, ROUTE)]["spec"]["http"][0]["route"][0]["weight"] = 80
    assert vs.read_weights(ROUTE) == WeightPair(80, 20)


def test_read_single_destination_is_all_stable(api, vs):
    api.objects[("virtualservices", NS, ROUTE)]["spec"]["http"][0]["route"] = [
        {"destination": {"host": ROUTE, "subset": "v1"}, "weight": 100}]
    assert vs.read_weights(ROUTE) == ROLLBACK


def test_read_without_weights_or_routes_is_config_error(api, vs):
    route = api.objects[("virtualservices", NS, ROUTE)]["spec"]["http"][0]["route"]
    for d in route:
        del d["weight"]
    with pytest.raises(ConfigError):
        vs.read_weights(ROUTE)
    api.objects[("virtualservices", NS, ROUTE)]["spec"]["http"] = []
    with pytest.raises(ConfigError):
        vs.read_weights(ROUTE)


def test_missing_virtualservice(vs):
    with pytest.raises(RouteNotFound) as info:
        vs.apply_weights("ratings", ROLLBACK)
    assert info.value.route == "ratings"
    with pytest.raises(RouteNotFound):
        vs.read_weights("ratings")


@pytest.mark.parametrize("error,expected", [
    (ApiException(status=409, reason="Conflict"), WriteConflict),
    (ApiException(status=503, reason="Service Unavailable"), TransientWriteError),
    (ApiException(status=429, reason="Too Many Requests"), TransientWriteError),
    (urllib3.exceptions.ReadTimeoutError(None, "/", "read timed out"), TransientWriteError),
    (urllib3.exceptions.ProtocolError("connection reset"), TransientWriteError),
])
def test_api_errors_are_classified(api, vs, error, expected):
    api.errors.append(error)
    with pytest.raises(expected):
        vs.apply_weights(ROUTE, WeightPair(90, 10))
    assert vs.read_weights(ROUTE) == ROLLBACK


def test_other_api_errors_propagate(api, vs):
    api.errors.append(ApiException(status=422, reason="Unprocessable Entity"))
    with pytest.raises(ApiException):
        vs.apply_weights(ROUTE, WeightPair(90, 10))


def test_destination_rule_load_balancer():
    api = FakeCustomObjects({("destinationrules", NS, ROUTE): {"spec": {"host": ROUTE}}})
    DestinationRuleTuner(api, NS).set_load_balancer(ROUTE, "least_conn")
    (call,) = api.patches
    assert call["plural"] == "destinationrules"
    assert call["body"] == [{"op": "replace", "path": "/spec/trafficPolicy/loadBalancer/simple",
                             "value": "LEAST_CONN"}]
    assert api.objects[("destinationrules", NS, ROUTE)]["spec"]["trafficPolicy"] == {
        "loadBalancer": {"simple": "LEAST_CONN"}}


def test_destination_rule_rejects_unknown_policy():
    api = FakeCustomObjects()
    with pytest.raises(ConfigError):
        DestinationRuleTuner(api, NS).set_load_balancer(ROUTE, "FASTEST")
    assert api.patches == []


def test_destination_rule_circuit_breaker():
    api = FakeCustomObjects({("destinationrules", NS, ROUTE): {"spec": {"host": ROUTE}}})
    DestinationRuleTuner(api, NS).set_connection_limit(ROUTE, 1)
    pool = api.objects[("destinationrules", NS, ROUTE)]["spec"]["trafficPolicy"]["connectionPool"]
    assert pool == {"tcp": {"maxConnections": 1},
                    "http": {"http1MaxPendingRequests": 1, "maxRequestsPerConnection": 1}}
    with pytest.raises(ConfigError):
        DestinationRuleTuner(api, NS).set_connection_limit(ROUTE, 0)


def test_in_memory_store_records_writes():
    store = InMemoryStore({ROUTE: ROLLBACK})
    store.apply_weights(ROUTE, WeightPair(90, 10))
    store.apply_weights(ROUTE, WeightPair(90, 10))
    assert store.read_weights(ROUTE) == WeightPair(90, 10)
    assert store.writes == [(ROUTE, WeightPair(90, 10))] * 2
    with pytest.raises(RouteNotFound):
        store.apply_weights("ratings", ROLLBACK)
    with pytest.raises(RouteNotFound):
        store.read_weights("ratings")
