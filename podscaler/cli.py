# podscaler/cli.py
"""
podscaler command line

    podscaler simulate   -m manifests/ --utilization 0.8,0.9,0.95,0.3,0.2
    podscaler simulate   -m manifests/ --trace trace.yaml --json
    podscaler render-hpa -m manifests/flask-deployment.yaml
    podscaler render-hpa --workload flask-app --min 2 --max 8 --target 60
    podscaler serve      -m manifests/ --port 8000

A trace file is a YAML list of steps. Each step maps a workload to either
one utilization ratio (applied to all of its Running instances) or a
mapping of instance -> ratio:

    - {flask-app: 0.8, mongodb: 0.4}
    - {flask-app: {flask-app-1a2b3: 0.9}}
"""

from __future__ import annotations

import sys
import json
import asyncio
import argparse
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from podscaler.config import Settings, load_settings
from podscaler.control_plane import ControlPlane
from podscaler.errors import ManifestError, PodscalerError
from podscaler.manifests import ManifestBundle, load_manifests, render_hpa
from podscaler.metrics_source import StaticMetricSource
from podscaler.models import ScalingPolicy
from podscaler.runtime import SimulatedRuntime
from podscaler.utils.logger import configure_logging, get_logger
from podscaler.utils.time_utils import ManualClock

LOG = get_logger("podscaler.cli")


# -------------------------
# simulate
# -------------------------
def load_trace(path: str) -> List[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            steps = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as e:
        raise ManifestError(f"cannot read trace {path}: {e}") from e
    if not isinstance(steps, list) or not all(isinstance(s, dict) for s in steps):
        raise ManifestError(f"trace {path} must be a list of mappings")
    return steps


def uniform_trace(workloads: Sequence[str], values: Sequence[float]) -> List[Dict[str, Any]]:
    return [{name: v for name in workloads} for v in values]


def _step_values(plane: ControlPlane, step: Mapping[str, Any]) -> Dict[str, float]:
    values: Dict[str, float] = {}
    for name, util in step.items():
        wl = plane.get(name)
        if isinstance(util, Mapping):
            values.update({str(k): float(v) for k, v in util.items()})
        else:
            for identity in wl.target.running_names():
                values[identity] = float(util)
    return values


async def run_simulation(bundle: ManifestBundle,
                         steps: Sequence[Mapping[str, Any]],
                         settings: Optional[Settings] = None,
                         step_seconds: Optional[float] = None,
                         startup_delay: float = 0.0) -> List[Dict[str, Any]]:
    """
    Drive every workload of the bundle through the trace on a manual clock.
    Returns one row per (step, workload) decision.
    """
    settings = settings or Settings()
    step_seconds = settings.tick_interval if step_seconds is None else step_seconds
    clock = ManualClock()
    source = StaticMetricSource()
    plane = ControlPlane(settings, source=source, runtime=SimulatedRuntime(startup_delay=startup_delay), clock=clock)
    plane.register_bundle(bundle)
    rows: List[Dict[str, Any]] = []
    await plane.start(loops=False)
    try:
        for i, step in enumerate(steps):
            source.set_all(_step_values(plane, step))
            await plane.poller.poll_once()
            for name, decision in (await plane.tick_all()).items():
                row = decision.to_dict()
                row["step"] = i
                row["running"] = len(plane.get(name).target.running_names())
                rows.append(row)
            clock.advance(step_seconds)
    finally:
        await plane.stop()
    return rows


def _print_rows(rows: List[Dict[str, Any]], as_json: bool) -> None:
    if as_json:
        print(json.dumps(rows, indent=2, default=str))
        return
    print(f"{'step':>4} {'t':>7} {'workload':<20} {'util':>6} {'cur':>4} {'des':>4} {'action':<11} {'state':<11} reason")
    for r in rows:
        util = "-" if r["utilization"] is None else f"{r['utilization']:.2f}"
        print(f"{r['step']:>4} {r['at']:>7.0f} {r['workload']:<20} {util:>6} {r['current']:>4} "
              f"{r['desired']:>4} {r['action']:<11} {r['state']:<11} {r['reason']}")


def cmd_simulate(args) -> int:
    settings = load_settings(**_setting_overrides(args))
    bundle = load_manifests(args.manifests or settings.manifests)
    if not bundle.workloads:
        print("no workloads found in manifests", file=sys.stderr)
        return 2
    if args.trace:
        steps = load_trace(args.trace)
    else:
        values = [float(v) for v in args.utilization.split(",") if v.strip()]
        steps = uniform_trace(sorted(bundle.workloads), values)
    rows = asyncio.run(run_simulation(bundle, steps, settings, step_seconds=args.step_seconds))
    _print_rows(rows, args.json)
    return 0


# -------------------------
# render-hpa
# -------------------------
def cmd_render_hpa(args) -> int:
    settings = load_settings(**_setting_overrides(args))
    docs = []
    if args.manifests:
        bundle = load_manifests(args.manifests)
        for name, spec in sorted(bundle.workloads.items()):
            policy = bundle.policy_for(name) or settings.default_policy()
            docs.append(render_hpa(name, policy, kind=spec.kind, namespace=args.namespace or spec.namespace))
    elif args.workload:
        policy = ScalingPolicy(
            target_utilization=args.target if args.target is not None else settings.target_utilization,
            min_replicas=args.min if args.min is not None else settings.min_replicas,
            max_replicas=args.max if args.max is not None else settings.max_replicas,
            scale_up_cooldown=settings.scale_up_cooldown,
            scale_down_cooldown=settings.scale_down_cooldown,
        )
        docs.append(render_hpa(args.workload, policy, kind=args.kind, namespace=args.namespace or "default"))
    else:
        print("render-hpa needs --manifests or --workload", file=sys.stderr)
        return 2
    print("---\n".join(docs), end="")
    return 0


# -------------------------
# serve
# -------------------------
def cmd_serve(args) -> int:
    from podscaler.main import run_uvicorn
    overrides = _setting_overrides(args)
    if args.manifests:
        overrides["manifests"] = args.manifests
    if args.k8s:
        overrides["k8s_enabled"] = True
    overrides["host"] = args.host
    overrides["port"] = args.port
    run_uvicorn(load_settings(**overrides), start_loops=not args.no_loops)
    return 0


# -------------------------
# Parser
# -------------------------
def _setting_overrides(args) -> Dict[str, Any]:
    return {
        "tick_interval": getattr(args, "tick_interval", None),
        "metric_window": getattr(args, "window", None),
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="podscaler", description="Resource-aware autoscaler and stateful volume manager")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--json-logs", action="store_true", help="JSON log lines")
    sub = parser.add_subparsers(dest="cmd")
    sub.required = True

    sim = sub.add_parser("simulate", help="Run the controller against a scripted utilization trace")
    sim.add_argument("-m", "--manifests", nargs="+", help="Manifest files or directories")
    sim.add_argument("--trace", help="YAML trace file")
    sim.add_argument("--utilization", default="0.8,0.8,0.8,0.3,0.3,0.3",
                     help="Comma separated ratios applied to every workload, one per step")
    sim.add_argument("--step-seconds", type=float, default=None, help="Simulated seconds per step (default: tick interval)")
    sim.add_argument("--tick-interval", default=None)
    sim.add_argument("--window", type=int, default=None, help="Samples per instance used for smoothing")
    sim.add_argument("--json", action="store_true")
    sim.set_defaults(func=cmd_simulate)

    hpa = sub.add_parser("render-hpa", help="Print autoscaling/v2 HPA manifests")
    hpa.add_argument("-m", "--manifests", nargs="+")
    hpa.add_argument("--workload")
    hpa.add_argument("--kind", default="Deployment", choices=["Deployment", "StatefulSet"])
    hpa.add_argument("--namespace", default=None)
    hpa.add_argument("--min", type=int, default=None)
    hpa.add_argument("--max", type=int, default=None)
    hpa.add_argument("--target", type=float, default=None)
    hpa.set_defaults(func=cmd_render_hpa)

    serve = sub.add_parser("serve", help="Run the HTTP API (uvicorn)")
    serve.add_argument("-m", "--manifests", nargs="+")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--k8s", action="store_true", help="Drive a real cluster")
    serve.add_argument("--no-loops", action="store_true", help="Only tick on API request")
    serve.add_argument("--tick-interval", default=None)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    # keep simulate/render-hpa stdout clean unless asked
    level = args.log_level or (None if args.cmd == "serve" else "WARNING")
    configure_logging(level=level, json_logs=args.json_logs or None, force=True)
    try:
        return args.func(args)
    except PodscalerError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
