"""Static rollout configuration.

Sources, later ones winning: built-in defaults, a YAML file, ``MESHCANARY_*``
environment variables, command-line flags. The merged mapping is checked
against ``SCHEMA`` before any plan or client is built from it.
"""
import copy
import logging
import os
from typing import Any, Dict, Mapping, Optional

import yaml
from jsonschema import Draft7Validator
from kubernetes import client
from kubernetes import config as kube_config

from meshcanary.errors import ConfigError, PlanValidationError
from meshcanary.metrics import DEFAULT_ERROR_CODES, DEFAULT_REVISION_LABEL, PrometheusErrorRate
from meshcanary.plan import RolloutPlan, parse_duration, parse_stages
from meshcanary.virtualservice import DEFAULT_VERSION, DestinationRuleTuner, VirtualServiceStore

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "namespace": "default",
    "poll_interval": "30s",
    "metric_window": "1m",
    "call_timeout": 30.0,
    "max_fetch_failures": 5,
    "write_attempts": 3,
    "write_backoff": 1.0,
    "max_hold_ticks": 0,
    "metrics_port": 0,
    "kube_context": None,
    "prometheus": {
        "url": "http://prometheus.istio-system:9090",
        "revision_label": DEFAULT_REVISION_LABEL,
        "error_codes": DEFAULT_ERROR_CODES,
        "timeout": 10.0,
    },
    "virtualservice": {
        "version": DEFAULT_VERSION,
        "http_index": 0,
        "stable_index": 0,
        "canary_index": 1,
    },
}

_duration = {"anyOf": [{"type": "number", "exclusiveMinimum": 0}, {"type": "string"}]}
_weight = {"type": "integer", "minimum": 0, "maximum": 100}
_stage = {"anyOf": [
    {"type": "string"},
    {"type": "array", "items": _weight, "minItems": 2, "maxItems": 2},
    {"type": "object", "properties": {"stable": _weight, "canary": _weight},
     "required": ["stable", "canary"]},
]}
_index = {"type": "integer", "minimum": 0}

SCHEMA = {
    "type": "object",
    "properties": {
        "route": {"type": "string", "minLength": 1},
        "namespace": {"type": "string", "minLength": 1},
        "stable_revision": {"type": "string", "minLength": 1},
        "canary_revision": {"type": "string", "minLength": 1},
        "stages": {"anyOf": [{"type": "string"}, {"type": "array", "items": _stage, "minItems": 1}]},
        "error_threshold": {"type": "number", "exclusiveMinimum": 0, "exclusiveMaximum": 1},
        "poll_interval": _duration,
        "metric_window": _duration,
        "call_timeout": {"type": "number", "exclusiveMinimum": 0},
        "max_fetch_failures": {"type": "integer", "minimum": 1},
        "write_attempts": {"type": "integer", "minimum": 1},
        "write_backoff": {"type": "number", "minimum": 0},
        "max_hold_ticks": {"type": "integer", "minimum": 0},
        "metrics_port": {"type": "integer", "minimum": 0, "maximum": 65535},
        "kube_context": {"type": ["string", "null"]},
        "prometheus": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "minLength": 1},
                "service": {"type": "string", "minLength": 1},
                "revision_label": {"type": "string", "minLength": 1},
                "error_codes": {"type": "string", "minLength": 1},
                "token": {"type": ["string", "null"]},
                "timeout": {"type": "number", "exclusiveMinimum": 0},
            },
            "additionalProperties": False,
        },
        "virtualservice": {
            "type": "object",
            "properties": {
                "version": {"type": "string"},
                "http_index": _index,
                "stable_index": _index,
                "canary_index": _index,
            },
            "additionalProperties": False,
        },
    },
    "required": ["route", "stable_revision", "canary_revision", "stages", "error_threshold"],
    "additionalProperties": False,
}

# env var -> (key path, converter)
ENV_OVERRIDES = {
    "MESHCANARY_ROUTE": (("route",), str),
    "MESHCANARY_NAMESPACE": (("namespace",), str),
    "MESHCANARY_STABLE_REVISION": (("stable_revision",), str),
    "MESHCANARY_CANARY_REVISION": (("canary_revision",), str),
    "MESHCANARY_STAGES": (("stages",), str),
    "MESHCANARY_ERROR_THRESHOLD": (("error_threshold",), float),
    "MESHCANARY_POLL_INTERVAL": (("poll_interval",), str),
    "MESHCANARY_METRIC_WINDOW": (("metric_window",), str),
    "MESHCANARY_CALL_TIMEOUT": (("call_timeout",), float),
    "MESHCANARY_MAX_FETCH_FAILURES": (("max_fetch_failures",), int),
    "MESHCANARY_WRITE_ATTEMPTS": (("write_attempts",), int),
    "MESHCANARY_WRITE_BACKOFF": (("write_backoff",), float),
    "MESHCANARY_MAX_HOLD_TICKS": (("max_hold_ticks",), int),
    "MESHCANARY_METRICS_PORT": (("metrics_port",), int),
    "MESHCANARY_KUBE_CONTEXT": (("kube_context",), str),
    "PROM_URL": (("prometheus", "url"), str),
    "MESHCANARY_PROMETHEUS_URL": (("prometheus", "url"), str),
    "MESHCANARY_PROMETHEUS_SERVICE": (("prometheus", "service"), str),
    "MESHCANARY_PROMETHEUS_TOKEN": (("prometheus", "token"), str),
    "MESHCANARY_ERROR_CODES": (("prometheus", "error_codes"), str),
}


def _set(cfg: Dict, path, value):
    for key in path[:-1]:
        cfg = cfg.setdefault(key, {})
    cfg[path[-1]] = value


def merge(base: Dict, override: Mapping) -> Dict:
    out = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), dict):
            out[k] = merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def read_file(path: str) -> Dict:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"config {path} is not valid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must be a mapping, got {type(data).__name__}")
    return data


def from_env(env: Mapping[str, str]) -> Dict:
    out: Dict = {}
    for var, (path, convert) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            _set(out, path, convert(raw))
        except ValueError:
            raise ConfigError(f"{var}={raw!r} is not a valid {convert.__name__}") from None
    return out


PLAN_KEYS = tuple(SCHEMA["required"])


def validate(cfg: Mapping, required=PLAN_KEYS):
    schema = dict(SCHEMA, required=list(required))
    errors = sorted(Draft7Validator(schema).iter_errors(cfg), key=lambda e: [str(p) for p in e.path])
    if errors:
        lines = [f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors]
        raise ConfigError("invalid configuration:\n  " + "\n  ".join(lines))


def load(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None,
         overrides: Optional[Mapping] = None, required=PLAN_KEYS) -> Dict:
    cfg = copy.deepcopy(DEFAULTS)
    if path:
        cfg = merge(cfg, read_file(path))
    cfg = merge(cfg, from_env(os.environ if env is None else env))
    if overrides:
        cfg = merge(cfg, {k: v for k, v in overrides.items() if v is not None})
    validate(cfg, required)
    prom = cfg["prometheus"]
    if not prom.get("service") and cfg.get("route"):
        # istio's destination_service is the route's in-mesh host
        prom["service"] = f"{cfg['route']}.{cfg['namespace']}.svc.cluster.local"
    return cfg


def build_plan(cfg: Mapping) -> RolloutPlan:
    try:
        return RolloutPlan(route=cfg["route"], stable_revision=cfg["stable_revision"],
                           canary_revision=cfg["canary_revision"],
                           stages=parse_stages(cfg["stages"]),
                           error_threshold=float(cfg["error_threshold"]),
                           poll_interval=parse_duration(cfg["poll_interval"]),
                           metric_window=parse_duration(cfg["metric_window"]))
    except PlanValidationError as e:
        raise ConfigError(f"invalid rollout plan: {e}") from e


def build_metrics(cfg: Mapping) -> PrometheusErrorRate:
    prom = cfg["prometheus"]
    return PrometheusErrorRate(prom["url"], prom["service"], revision_label=prom["revision_label"],
                               error_codes=prom["error_codes"], token=prom.get("token"),
                               timeout=prom["timeout"])


def kube_api(context: Optional[str] = None) -> client.CustomObjectsApi:
    try:
        if os.getenv("KUBERNETES_SERVICE_HOST"):
            logger.debug("loading in-cluster kubernetes config")
            kube_config.load_incluster_config()
        else:
            logger.debug("loading kubeconfig (context=%s)", context or "current")
            kube_config.load_kube_config(context=context)  # respects KUBECONFIG
    except kube_config.ConfigException as e:
        raise ConfigError(f"cannot load kubernetes credentials: {e}") from e
    return client.CustomObjectsApi()


def build_store(cfg: Mapping, api: Optional[client.CustomObjectsApi] = None) -> VirtualServiceStore:
    vs = cfg["virtualservice"]
    return VirtualServiceStore(api or kube_api(cfg.get("kube_context")), cfg["namespace"],
                               version=vs["version"], timeout=cfg["call_timeout"],
                               http_index=vs["http_index"], stable_index=vs["stable_index"],
                               canary_index=vs["canary_index"])


def build_tuner(cfg: Mapping, api: Optional[client.CustomObjectsApi] = None) -> DestinationRuleTuner:
    return DestinationRuleTuner(api or kube_api(cfg.get("kube_context")), cfg["namespace"],
                                version=cfg["virtualservice"]["version"],
                                timeout=cfg["call_timeout"])
