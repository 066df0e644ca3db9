"""Traffic-split storage on Istio custom resources.

Weights live on a VirtualService's first HTTP route: destination 0 carries
the stable revision, destination 1 the canary. Writes are RFC 6902 JSON
patches that replace exactly those two ``weight`` fields, so applying the
same pair twice leaves the object unchanged.
"""
import logging
from typing import Dict, List, Optional

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from meshcanary.errors import (ConfigError, RouteNotFound, TransientWriteError,
                               WriteConflict)
from meshcanary.plan import WeightPair

logger = logging.getLogger(__name__)

ISTIO_GROUP = "networking.istio.io"
DEFAULT_VERSION = "v1alpha3"
LB_POLICIES = ("ROUND_ROBIN", "LEAST_CONN", "LEAST_REQUEST", "RANDOM", "PASSTHROUGH")


class TrafficSplitStore:
    """Contract for reading and replacing a route's stable/canary weights."""

    def apply_weights(self, route: str, weights: WeightPair) -> None:
        raise NotImplementedError

    def read_weights(self, route: str) -> WeightPair:
        raise NotImplementedError


def _translate(e, name):
    """Map a client failure onto the package's write taxonomy."""
    if isinstance(e, ApiException):
        if e.status == 404:
            return RouteNotFound(name, "object not found")
        if e.status == 409:
            return WriteConflict(name, f"concurrent modification: {e.reason}")
        if e.status == 429 or (e.status or 0) >= 500:
            return TransientWriteError(name, f"API server returned {e.status} {e.reason}")
        return None
    if isinstance(e, urllib3.exceptions.HTTPError):
        return TransientWriteError(name, f"transport failure: {e}")
    return None


class _IstioObjects:
    plural = ""

    def __init__(self, api: client.CustomObjectsApi, namespace: str,
                 version: str = DEFAULT_VERSION, timeout: float = 10.0):
        self.api = api
        self.namespace = namespace
        self.version = version
        self.timeout = timeout

    def _patch(self, name: str, ops: List[Dict]):
        # a list body makes the client send application/json-patch+json
        try:
            return self.api.patch_namespaced_custom_object(
                ISTIO_GROUP, self.version, self.namespace, self.plural, name, ops,
                _request_timeout=self.timeout)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            mapped = _translate(e, name)
            if mapped is None:
                raise
            raise mapped from e

    def _get(self, name: str) -> Dict:
        try:
            return self.api.get_namespaced_custom_object(
                ISTIO_GROUP, self.version, self.namespace, self.plural, name,
                _request_timeout=self.timeout)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            mapped = _translate(e, name)
            if mapped is None:
                raise
            raise mapped from e


class VirtualServiceStore(_IstioObjects, TrafficSplitStore):
    plural = "virtualservices"

    def __init__(self, api, namespace, version=DEFAULT_VERSION, timeout=10.0,
                 http_index=0, stable_index=0, canary_index=1):
        super().__init__(api, namespace, version, timeout)
        if stable_index == canary_index:
            raise ConfigError("stable and canary must be different route destinations")
        self.http_index = http_index
        self.stable_index = stable_index
        self.canary_index = canary_index

    def weight_path(self, destination: int) -> str:
        return f"/spec/http/{self.http_index}/route/{destination}/weight"

    def patch_for(self, weights: WeightPair) -> List[Dict]:
        return [
            {"op": "replace", "path": self.weight_path(self.stable_index), "value": weights.stable},
            {"op": "replace", "path": self.weight_path(self.canary_index), "value": weights.canary},
        ]

    def apply_weights(self, route, weights):
        self._patch(route, self.patch_for(weights))
        logger.info("virtualservice %s/%s weights set to %s", self.namespace, route, weights)

    def read_weights(self, route):
        obj = self._get(route)
        try:
            destinations = obj["spec"]["http"][self.http_index]["route"]
        except (KeyError, IndexError, TypeError):
            raise ConfigError(f"virtualservice {route} has no http[{self.http_index}].route") from None

        def weight_of(i) -> Optional[int]:
            return destinations[i].get("weight") if i < len(destinations) else 0

        stable, canary = weight_of(self.stable_index), weight_of(self.canary_index)
        # istio gives an unweighted destination the remainder of 100
        if stable is None and canary is None:
            raise ConfigError(f"virtualservice {route} destinations carry no weights")
        if stable is None:
            stable = 100 - canary
        elif canary is None:
            canary = 100 - stable
        return WeightPair(int(stable), int(canary))


class DestinationRuleTuner(_IstioObjects):
    """Load-balancer and connection-pool knobs on a DestinationRule."""

    plural = "destinationrules"

    def set_load_balancer(self, name: str, policy: str):
        policy = policy.upper()
        if policy not in LB_POLICIES:
            raise ConfigError(f"unknown load balancer policy {policy!r}; expected one of {LB_POLICIES}")
        self._patch(name, [{"op": "replace", "path": "/spec/trafficPolicy/loadBalancer/simple",
                            "value": policy}])
        logger.info("destinationrule %s/%s load balancer set to %s", self.namespace, name, policy)

    def set_connection_limit(self, name: str, limit: int):
        """Circuit breaker: one limit for TCP connections, pending and per-connection requests."""
        if limit < 1:
            raise ConfigError(f"connection limit must be positive, got {limit}")
        paths = ("/spec/trafficPolicy/connectionPool/tcp/maxConnections",
                 "/spec/trafficPolicy/connectionPool/http/http1MaxPendingRequests",
                 "/spec/trafficPolicy/connectionPool/http/maxRequestsPerConnection")
        self._patch(name, [{"op": "replace", "path": p, "value": limit} for p in paths])
        logger.info("destinationrule %s/%s connection limit set to %d", self.namespace, name, limit)


class InMemoryStore(TrafficSplitStore):
    """Dict-backed store for dry runs; keeps every write in ``writes``."""

    def __init__(self, routes: Optional[Dict[str, WeightPair]] = None):
        self.routes = dict(routes or {})
        self.writes = []

    def apply_weights(self, route, weights):
        if route not in self.routes:
            raise RouteNotFound(route, "object not found")
        self.routes[route] = weights
        self.writes.append((route, weights))
        logger.info("[dry-run] %s weights set to %s", route, weights)

    def read_weights(self, route):
        try:
            return self.routes[route]
        except KeyError:
            raise RouteNotFound(route, "object not found") from None
