import json

import pytest
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException

from conftest import ROUTE, FakeCustomObjects, ScriptedMetrics, virtual_service
from meshcanary import cli, config
from meshcanary.errors import NoDataError
from meshcanary.plan import WeightPair
from meshcanary.virtualservice import DestinationRuleTuner, InMemoryStore

RUN = ["run", "--route", ROUTE, "-n", "istio-test", "--stable-revision", "v1",
       "--canary-revision", "v2", "--stages", "90:10,50:50,0:100", "--error-threshold", "0.05",
       "--poll-interval", "0.01"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in list(config.ENV_OVERRIDES) + ["MESHCANARY_CONFIG", "MESHCANARY_LOG_LEVEL"]:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def metrics(monkeypatch):
    scripted = ScriptedMetrics([])
    monkeypatch.setattr(config, "build_metrics", lambda cfg: scripted)
    return scripted


def test_dry_run_completes(metrics, capsys):
    metrics.script = [0.0, NoDataError("quiet"), 0.01, 0.0]
    assert cli.main(RUN + ["--dry-run", "--json"]) == cli.EXIT_COMPLETED
    report = json.loads(capsys.readouterr().out)
    assert report["status"] == "completed"
    assert report["weights"] == {"stable": 0, "canary": 100}
    assert report["ticks"] == 4


def test_dry_run_breach_exits_aborted(metrics, capsys):
    metrics.script = [0.0, 0.3]
    assert cli.main(RUN + ["--dry-run"]) == cli.EXIT_ABORTED
    out = capsys.readouterr().out
    assert "status=aborted" in out
    assert "reason=threshold_breached" in out
    assert "weights=100/0" in out


def test_run_against_store(metrics, monkeypatch):
    store = InMemoryStore({ROUTE: WeightPair(100, 0)})
    monkeypatch.setattr(config, "build_store", lambda cfg: store)
    metrics.script = [0.0, 0.0, 0.0]
    assert cli.main(RUN) == cli.EXIT_COMPLETED
    assert [w for _, w in store.writes] == [WeightPair(90, 10), WeightPair(50, 50),
                                             WeightPair(0, 100)]


def test_missing_plan_is_config_error(metrics):
    assert cli.main(["run", "--route", ROUTE]) == cli.EXIT_CONFIG
    assert metrics.calls == []


def test_invalid_stages_is_config_error(metrics):
    args = list(RUN)
    args[args.index("--stages") + 1] = "90:10,80:10"
    assert cli.main(args) == cli.EXIT_CONFIG


def test_status_and_rollback(monkeypatch, capsys):
    store = InMemoryStore({ROUTE: WeightPair(50, 50)})
    monkeypatch.setattr(config, "build_store", lambda cfg: store)
    assert cli.main(["status", "--route", ROUTE]) == 0
    assert capsys.readouterr().out.strip() == f"{ROUTE}: stable=50 canary=50"
    assert cli.main(["rollback", "--route", ROUTE]) == 0
    assert store.read_weights(ROUTE) == WeightPair(100, 0)


def test_status_for_missing_route(monkeypatch):
    monkeypatch.setattr(config, "build_store", lambda cfg: InMemoryStore())
    assert cli.main(["status", "--route", ROUTE]) == cli.EXIT_ABORTED


def test_status_requires_route():
    assert cli.main(["status"]) == cli.EXIT_CONFIG


def test_destination_rule_commands(monkeypatch):
    api = FakeCustomObjects({("destinationrules", "istio-test", ROUTE): {"spec": {}}})
    monkeypatch.setattr(config, "build_tuner",
                        lambda cfg: DestinationRuleTuner(api, cfg["namespace"]))
    assert cli.main(["lb", "-n", "istio-test", ROUTE, "random"]) == 0
    assert cli.main(["circuit-breaker", "-n", "istio-test", ROUTE, "10"]) == 0
    policy = api.objects[("destinationrules", "istio-test", ROUTE)]["spec"]["trafficPolicy"]
    assert policy["loadBalancer"] == {"simple": "RANDOM"}
    assert policy["connectionPool"]["tcp"] == {"maxConnections": 10}


def test_unknown_lb_policy_is_rejected_by_parser():
    with pytest.raises(SystemExit):
        cli.main(["lb", ROUTE, "fastest"])


def test_unloadable_kubeconfig_is_config_error(monkeypatch):
    def no_kubeconfig(context=None):
        raise kube_config.ConfigException("Invalid kube-config file. No configuration found.")

    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.setattr(kube_config, "load_kube_config", no_kubeconfig)
    assert cli.main(["status", "--route", ROUTE]) == cli.EXIT_CONFIG
    assert cli.main(["lb", ROUTE, "random"]) == cli.EXIT_CONFIG


@pytest.mark.parametrize("argv", [
    ["status", "-n", "istio-test", "--route", ROUTE],
    ["rollback", "-n", "istio-test", "--route", ROUTE],
    ["lb", "-n", "istio-test", ROUTE, "random"],
    ["circuit-breaker", "-n", "istio-test", ROUTE, "10"],
])
def test_unmapped_api_errors_exit_aborted(monkeypatch, argv):
    api = FakeCustomObjects({("virtualservices", "istio-test", ROUTE): virtual_service(),
                             ("destinationrules", "istio-test", ROUTE): {"spec": {}}})
    api.errors.append(ApiException(status=403, reason="Forbidden"))
    monkeypatch.setattr(config, "kube_api", lambda context=None: api)
    assert cli.main(argv) == cli.EXIT_ABORTED
    assert api.errors == []
