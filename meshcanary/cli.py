"""Command line: ``meshcanary run|status|rollback|lb|circuit-breaker``."""
import argparse
import json
import logging
import os
import signal
import sys

from kubernetes.client.rest import ApiException

from meshcanary import config
from meshcanary.controller import RolloutController, RolloutStatus
from meshcanary.errors import ConfigError, MeshCanaryError
from meshcanary.plan import ROLLBACK, WeightPair
from meshcanary.telemetry import LogReporter, PrometheusReporter
from meshcanary.virtualservice import LB_POLICIES, InMemoryStore

logger = logging.getLogger("meshcanary")

EXIT_COMPLETED = 0
EXIT_ABORTED = 1
EXIT_ROLLED_BACK = 2
EXIT_CONFIG = 3

_STATUS_EXIT = {
    RolloutStatus.COMPLETED: EXIT_COMPLETED,
    RolloutStatus.ABORTED: EXIT_ABORTED,
    RolloutStatus.ROLLED_BACK: EXIT_ROLLED_BACK,
}


def _common(p):
    p.add_argument("-c", "--config", default=os.getenv("MESHCANARY_CONFIG"),
                   help="YAML rollout configuration")
    p.add_argument("--route", help="VirtualService name")
    p.add_argument("-n", "--namespace")
    p.add_argument("--log-level", default=os.getenv("MESHCANARY_LOG_LEVEL", "INFO"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="meshcanary",
                                     description="Metric-gated canary rollout for Istio routes")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="drive a rollout to completion or rollback")
    _common(run)
    run.add_argument("--stable-revision")
    run.add_argument("--canary-revision")
    run.add_argument("--stages", help='comma separated stable:canary pairs, e.g. "90:10,50:50,0:100"')
    run.add_argument("--error-threshold", type=float)
    run.add_argument("--poll-interval", help="seconds or 30s / 2m")
    run.add_argument("--metric-window", help="seconds or 30s / 2m")
    run.add_argument("--prometheus-url")
    run.add_argument("--metrics-port", type=int, help="serve rollout gauges on this port")
    run.add_argument("--resume", action="store_true",
                     help="continue from the stage nearest the live weights")
    run.add_argument("--dry-run", action="store_true",
                     help="evaluate live metrics but keep weights in memory")
    run.add_argument("--json", action="store_true", help="print the final report as JSON")

    status = sub.add_parser("status", help="print the live stable/canary weights")
    _common(status)

    rollback = sub.add_parser("rollback", help="send all traffic back to the stable revision")
    _common(rollback)

    lb = sub.add_parser("lb", help="set a DestinationRule load balancer policy")
    _common(lb)
    lb.add_argument("name", help="DestinationRule name")
    lb.add_argument("policy", type=str.upper, choices=LB_POLICIES)

    cb = sub.add_parser("circuit-breaker", help="set DestinationRule connection pool limits")
    _common(cb)
    cb.add_argument("name", help="DestinationRule name")
    cb.add_argument("limit", type=int)
    return parser


def _overrides(args) -> dict:
    out = {"route": args.route, "namespace": args.namespace}
    if args.command == "run":
        out.update({
            "stable_revision": args.stable_revision,
            "canary_revision": args.canary_revision,
            "stages": args.stages,
            "error_threshold": args.error_threshold,
            "poll_interval": args.poll_interval,
            "metric_window": args.metric_window,
            "metrics_port": args.metrics_port,
        })
        if args.prometheus_url:
            out["prometheus"] = {"url": args.prometheus_url}
    return out


def _install_signal_handlers(controller: RolloutController) -> dict:
    def stop(signum, frame):
        logger.warning("received %s; stopping at the next tick boundary",
                       signal.Signals(signum).name)
        controller.cancel()
    return {sig: signal.signal(sig, stop) for sig in (signal.SIGTERM, signal.SIGINT)}


def cmd_run(args, cfg) -> int:
    plan = config.build_plan(cfg)
    metrics = config.build_metrics(cfg)
    if args.dry_run:
        store = InMemoryStore({plan.route: ROLLBACK})
    else:
        store = config.build_store(cfg)
    reporters = [LogReporter()]
    if cfg["metrics_port"]:
        prom = PrometheusReporter()
        prom.serve(cfg["metrics_port"])
        reporters.append(prom)
    controller = RolloutController(plan, metrics, store, reporters=reporters,
                                   call_timeout=cfg["call_timeout"],
                                   max_fetch_failures=cfg["max_fetch_failures"],
                                   write_attempts=cfg["write_attempts"],
                                   write_backoff=cfg["write_backoff"],
                                   max_hold_ticks=cfg["max_hold_ticks"])
    previous = _install_signal_handlers(controller)
    logger.info("rolling out %s/%s: %s -> %s over stages %s (threshold %.4f)",
                cfg["namespace"], plan.route, plan.stable_revision, plan.canary_revision,
                ",".join(str(s) for s in plan.stages), plan.error_threshold)
    try:
        report = controller.run(resume=args.resume)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.summary())
    if report.rollback_error is not None:
        logger.error("rollback may not have taken effect: %s", report.rollback_error)
    return _STATUS_EXIT[report.status]


def _print_weights(route, w: WeightPair):
    print(f"{route}: stable={w.stable} canary={w.canary}")


def cmd_status(args, cfg) -> int:
    store = config.build_store(cfg)
    _print_weights(cfg["route"], store.read_weights(cfg["route"]))
    return 0


def cmd_rollback(args, cfg) -> int:
    store = config.build_store(cfg)
    store.apply_weights(cfg["route"], ROLLBACK)
    _print_weights(cfg["route"], ROLLBACK)
    return 0


def cmd_lb(args, cfg) -> int:
    config.build_tuner(cfg).set_load_balancer(args.name, args.policy)
    return 0


def cmd_circuit_breaker(args, cfg) -> int:
    config.build_tuner(cfg).set_connection_limit(args.name, args.limit)
    return 0


COMMANDS = {
    "run": (cmd_run, config.PLAN_KEYS),
    "status": (cmd_status, ("route",)),
    "rollback": (cmd_rollback, ("route",)),
    "lb": (cmd_lb, ()),
    "circuit-breaker": (cmd_circuit_breaker, ()),
}


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s %(levelname)s %(message)s")
    handler, required = COMMANDS[args.command]
    try:
        cfg = config.load(args.config, overrides=_overrides(args), required=required)
        return handler(args, cfg)
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_CONFIG
    except MeshCanaryError as e:
        logger.error("%s failed: %s", args.command, e)
        return EXIT_ABORTED
    except ApiException as e:
        logger.error("%s failed: kubernetes API returned %s %s", args.command, e.status, e.reason)
        return EXIT_ABORTED


if __name__ == "__main__":
    sys.exit(main())
