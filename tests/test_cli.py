"""
CLI tests: render-hpa output, simulate end to end, error exit codes.
"""

import json

import pytest
import yaml

from podscaler.cli import main, run_simulation, uniform_trace
from podscaler.config import Settings
from podscaler.manifests import parse_manifests

DEPLOYMENT = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 1
  selector:
    matchLabels: {app: web}
  template:
    metadata:
      labels: {app: web}
    spec:
      containers:
        - name: web
          image: nginx
          resources:
            requests: {cpu: 100m, memory: 64Mi}
"""

WEB_HPA = """
apiVersion: autoscaling/v1
kind: HorizontalPodAutoscaler
metadata:
  name: web-hpa
spec:
  scaleTargetRef: {apiVersion: apps/v1, kind: Deployment, name: web}
  minReplicas: 1
  maxReplicas: 4
  targetCPUUtilizationPercentage: 50
"""


def test_render_hpa_for_single_workload(capsys):
    rc = main(["render-hpa", "--workload", "api", "--min", "2", "--max", "8", "--target", "60"])
    assert rc == 0
    doc = yaml.safe_load(capsys.readouterr().out)
    assert doc["apiVersion"] == "autoscaling/v2"
    assert doc["metadata"]["name"] == "api-hpa"
    assert doc["spec"]["minReplicas"] == 2
    assert doc["spec"]["maxReplicas"] == 8
    assert doc["spec"]["metrics"][0]["resource"]["target"]["averageUtilization"] == 60


def test_render_hpa_from_manifests(capsys, manifests_dir):
    assert main(["render-hpa", "-m", str(manifests_dir)]) == 0
    docs = list(yaml.safe_load_all(capsys.readouterr().out))
    by_target = {d["spec"]["scaleTargetRef"]["name"]: d for d in docs}
    assert set(by_target) == {"flask-app", "mongodb"}
    assert by_target["mongodb"]["spec"]["scaleTargetRef"]["kind"] == "StatefulSet"
    assert by_target["mongodb"]["spec"]["maxReplicas"] == 3


def test_render_hpa_needs_a_source(capsys):
    assert main(["render-hpa"]) == 2
    assert "needs" in capsys.readouterr().err


def test_simulate_json(capsys, manifests_dir):
    rc = main(["simulate", "-m", str(manifests_dir), "--utilization", "0.95,0.95", "--json"])
    assert rc == 0
    rows = json.loads(capsys.readouterr().out)
    first = {r["workload"]: r for r in rows if r["step"] == 0}
    assert first["mongodb"]["action"] == "scale_up"
    assert first["mongodb"]["desired"] == 2
    assert first["flask-app"]["action"] == "scale_up"
    assert {r["step"] for r in rows} == {0, 1}


def test_simulate_table(capsys, manifests_dir):
    assert main(["simulate", "-m", str(manifests_dir), "--utilization", "0.5"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].split()[:3] == ["step", "t", "workload"]
    assert len(out) == 3


def test_simulate_unknown_workload_in_trace(tmp_path, capsys, manifests_dir):
    trace = tmp_path / "trace.yaml"
    trace.write_text("- {redis: 0.9}\n")
    assert main(["simulate", "-m", str(manifests_dir), "--trace", str(trace)]) == 1
    assert "redis" in capsys.readouterr().err


def test_simulate_bad_trace_file(tmp_path, capsys, manifests_dir):
    trace = tmp_path / "trace.yaml"
    trace.write_text("flask-app: 0.9\n")
    assert main(["simulate", "-m", str(manifests_dir), "--trace", str(trace)]) == 1
    assert "list of mappings" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_run_simulation_scales_up_then_down():
    bundle = parse_manifests(DEPLOYMENT)
    settings = Settings(scale_up_cooldown=0, scale_down_cooldown=30, tick_interval=15, metric_window=1)
    steps = uniform_trace(["web"], [1.0, 1.0, 0.3, 0.3, 0.3])
    rows = await run_simulation(bundle, steps, settings)
    assert [r["step"] for r in rows] == [0, 1, 2, 3, 4]
    assert rows[0]["action"] == "scale_up" and rows[0]["desired"] == 2
    assert rows[1]["desired"] == 4
    assert rows[1]["running"] == 4
    assert rows[2]["action"] == "scale_down" and rows[2]["desired"] == 3
    assert rows[3]["action"] == "hold"
    assert rows[4]["action"] == "scale_down" and rows[4]["desired"] == 2
    assert rows[-1]["running"] == 2


@pytest.mark.asyncio
async def test_run_simulation_per_instance_values():
    bundle = parse_manifests(DEPLOYMENT + "---\n" + WEB_HPA)
    assert bundle.policy_for("web").max_replicas == 4
    rows = await run_simulation(bundle, [{"web": {"nope": 0.9}}], Settings())
    assert rows[0]["action"] == "hold"
    assert rows[0]["reporting"] == 0
