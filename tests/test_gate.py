"""Environment gate: rules, ordering, binding, rollout and smoke tests."""

import pytest

from conftest import SHA, FakeTarget, make_context, static_prober
from shipci.artifacts import artifact_refs
from shipci.dsl import environment, probe, rule
from shipci.errors import GateFailure
from shipci.gate import (
    DryRunTarget,
    EnvironmentGate,
    KubectlTarget,
    bind,
    deployment_ready,
    match_rule,
    rewrite_images,
)
from shipci.ledger import InMemoryLedger, PromotionRecord
from shipci.locks import LocalLocks
from shipci.model import FAILURE, SKIPPED, SUCCESS

COMPONENTS = ["frontend", "backend", "ml-service"]


def staging(**kwargs):
    return environment(
        "staging",
        rule(events="push", branches="develop"),
        rule(events="workflow_dispatch", inputs={"environment": "staging"}),
        workloads=COMPONENTS,
        base_url="https://staging.example.com",
        smoke=[probe("/api/health", name="health")],
        **kwargs,
    )


def production(**kwargs):
    return environment(
        "production",
        rule(events="push", branches="main"),
        rule(events="workflow_dispatch", inputs={"environment": "production"}),
        requires=["staging"],
        workloads=COMPONENTS,
        base_url="https://example.com",
        smoke=[probe("/api/health", name="health")],
        **kwargs,
    )


@pytest.fixture()
def target():
    return FakeTarget()


@pytest.fixture()
def prober():
    return static_prober(200)


@pytest.fixture()
def gate(target, prober, clock):
    return EnvironmentGate(target, InMemoryLedger(), prober=prober, sleep=clock.sleep, clock=clock,
                           rollout_timeout=30, poll_interval=5)


def refs(ctx):
    return artifact_refs(ctx, COMPONENTS)


def test_rule_mismatch_has_no_side_effects(gate, target, prober, push_main):
    called = []
    result = gate.promote(staging(), refs(push_main), push_main, before_deploy=called.append)
    assert result.status == SKIPPED
    assert not result.applied
    assert called == []
    assert target.applied == []
    assert prober.calls == []
    assert gate.ledger.history("staging") == []


def test_first_matching_rule_wins(push_develop):
    env = staging()
    assert match_rule(env, push_develop) == env.rules[0]
    dispatch = make_context("workflow_dispatch", "main", inputs={"environment": "staging"})
    assert match_rule(env, dispatch) == env.rules[1]
    assert match_rule(env, make_context("workflow_dispatch", "main", inputs={"environment": "production"})) is None


def test_successful_promotion(gate, target, prober, push_develop):
    result = gate.promote(staging(), refs(push_develop), push_develop, run_id="r1")
    assert result.status == SUCCESS
    assert result.applied
    short = SHA[:7]
    assert target.applied == [("staging", [f"ghcr.io/acme/image-processor/{c}:sha-{short}" for c in COMPONENTS])]
    assert prober.calls == ["https://staging.example.com/api/health"]
    record = gate.ledger.latest("staging", SHA)
    assert (record.status, record.run_id) == (SUCCESS, "r1")


def test_rollout_polls_until_ready(target, prober, clock, push_develop):
    target.ready_after = 2
    gate = EnvironmentGate(target, prober=prober, sleep=clock.sleep, clock=clock, rollout_timeout=30, poll_interval=5)
    result = gate.promote(staging(), refs(push_develop), push_develop)
    assert result.status == SUCCESS
    assert target.polls == 3
    assert clock.sleeps == [5, 5]


def test_rollout_timeout(clock, prober, push_develop):
    target = FakeTarget(never_ready=["backend"])
    gate = EnvironmentGate(target, prober=prober, sleep=clock.sleep, clock=clock, rollout_timeout=10, poll_interval=3)
    result = gate.promote(staging(), refs(push_develop), push_develop)
    assert result.status == FAILURE
    assert result.kind == "rollout_timeout"
    assert result.applied
    assert "backend" in result.message
    assert clock.sleeps == [3, 3, 3, 1]
    # smoke tests never ran
    assert prober.calls == []
    assert gate.ledger.latest("staging", SHA).kind == "rollout_timeout"


def test_environment_timeout_overrides_gate_default(clock, prober, push_develop):
    target = FakeTarget(never_ready=["backend"])
    gate = EnvironmentGate(target, prober=prober, sleep=clock.sleep, clock=clock, rollout_timeout=600, poll_interval=5)
    result = gate.promote(staging(rollout_timeout=4, poll_interval=2), refs(push_develop), push_develop)
    assert result.kind == "rollout_timeout"
    assert clock.sleeps == [2, 2]


def test_smoke_failure_is_distinct_and_not_rolled_back(target, clock, push_develop):
    gate = EnvironmentGate(target, prober=static_prober(503), sleep=clock.sleep, clock=clock)
    result = gate.promote(staging(), refs(push_develop), push_develop)
    assert result.status == FAILURE
    assert result.kind == "smoke_test"
    assert result.applied
    assert len(target.applied) == 1
    assert result.probes[0]["ok"] is False
    assert result.probes[0]["status"] == 503


def test_smoke_probe_transport_error(target, clock, push_develop):
    gate = EnvironmentGate(target, prober=static_prober(None, error="connection refused"), sleep=clock.sleep,
                           clock=clock)
    result = gate.promote(staging(), refs(push_develop), push_develop)
    assert result.kind == "smoke_test"
    assert "connection refused" in result.message


def test_production_requires_staging_for_same_sha(gate, target, push_main):
    result = gate.promote(production(), refs(push_main), push_main)
    assert result.status == FAILURE
    assert result.kind == "promotion_order"
    assert not result.applied
    assert target.applied == []
    assert "never promoted" in result.message


def test_production_after_staging_success(gate, target, push_main):
    gate.ledger.record(PromotionRecord(environment="staging", artifact=SHA, status=SUCCESS))
    result = gate.promote(production(), refs(push_main), push_main)
    assert result.status == SUCCESS
    assert target.applied[0][0] == "production"


def test_production_blocked_when_latest_staging_failed(gate, push_main):
    gate.ledger.record(PromotionRecord(environment="staging", artifact=SHA, status=SUCCESS))
    gate.ledger.record(PromotionRecord(environment="staging", artifact=SHA, status=FAILURE, kind="smoke_test"))
    result = gate.promote(production(), refs(push_main), push_main)
    assert result.kind == "promotion_order"
    assert "last promotion failure" in result.message


def test_staging_success_for_other_sha_does_not_count(gate, push_main):
    gate.ledger.record(PromotionRecord(environment="staging", artifact="f" * 40, status=SUCCESS))
    result = gate.promote(production(), refs(push_main), push_main)
    assert result.kind == "promotion_order"


def test_manual_dispatch_bypasses_order(gate, target):
    ctx = make_context("workflow_dispatch", "main", inputs={"environment": "production"})
    result = gate.promote(production(), refs(ctx), ctx)
    assert result.status == SUCCESS
    assert target.applied[0][0] == "production"


def test_binding_is_scoped_and_resolved():
    env = staging(secrets={"AWS_SECRET_ACCESS_KEY": "${STAGING_KEY}"}, variables={"AWS_REGION": "${REGION}"})
    binding = bind(env, {"STAGING_KEY": "k", "REGION": "eu-west-1", "PROD_KEY": "p"})
    assert binding.as_env() == {"AWS_REGION": "eu-west-1", "AWS_SECRET_ACCESS_KEY": "k"}
    assert binding.secret_values() == ("k",)


def test_missing_binding_fails_before_steps(gate, target, push_develop):
    gate.environ = {}
    called = []
    result = gate.promote(staging(secrets={"TOKEN": "${DEPLOY_TOKEN}"}), refs(push_develop), push_develop,
                          before_deploy=called.append)
    assert result.kind == "binding"
    assert "DEPLOY_TOKEN" in result.message
    assert called == []
    assert target.applied == []


def test_before_deploy_failure_stops_apply(gate, target, push_develop):
    result = gate.promote(staging(), refs(push_develop), push_develop, before_deploy=lambda binding: FAILURE)
    assert result.status == FAILURE
    assert result.kind == "steps"
    assert target.applied == []
    assert gate.ledger.latest("staging", SHA).status == FAILURE


def test_before_deploy_receives_binding(gate, push_develop):
    gate.environ = {"DEPLOY_TOKEN": "t0k"}
    seen = []

    def before(binding):
        seen.append(binding.as_env())
        return SUCCESS

    gate.promote(staging(secrets={"TOKEN": "${DEPLOY_TOKEN}"}), refs(push_develop), push_develop, before_deploy=before)
    assert seen == [{"TOKEN": "t0k"}]


def test_lock_timeout(target, prober, push_develop):
    locks = LocalLocks(timeout=0.05)
    gate = EnvironmentGate(target, locks=locks, prober=prober)
    with locks.hold("staging"):
        result = gate.promote(staging(), refs(push_develop), push_develop)
    assert result.status == FAILURE
    assert result.kind == "lock_timeout"
    assert target.applied == []


def test_dry_run_target(push_develop):
    dry = DryRunTarget()
    gate = EnvironmentGate(dry, prober=static_prober(200))
    result = gate.promote(staging(), refs(push_develop), push_develop)
    assert result.status == SUCCESS
    assert dry.applied[0][0] == "staging"
    assert result.rollout == {c: True for c in COMPONENTS}


# ---------------------------------------------------------------------
# kubernetes helpers
# ---------------------------------------------------------------------

MANIFEST = """\
apiVersion: apps/v1
kind: Deployment
spec:
  template:
    spec:
      containers:
        - name: backend
          image: ghcr.io/acme/image-processor/backend:latest
        - name: proxy
          image: "nginx:1.25"
"""


def test_rewrite_images_pins_components_only(push_develop):
    out = rewrite_images(MANIFEST, refs(push_develop))
    assert f"image: ghcr.io/acme/image-processor/backend:sha-{SHA[:7]}" in out
    assert 'image: "nginx:1.25"' in out
    assert ":latest" not in out
    assert out.count("\n") == MANIFEST.count("\n")


@pytest.mark.parametrize(
    "doc, ready",
    [
        ({"spec": {"replicas": 2}, "status": {"updatedReplicas": 2, "replicas": 2, "availableReplicas": 2,
                                              "readyReplicas": 2}}, True),
        ({"spec": {"replicas": 2}, "status": {"updatedReplicas": 1, "replicas": 2, "availableReplicas": 2,
                                              "readyReplicas": 2}}, False),
        ({"spec": {"replicas": 2}, "status": {"updatedReplicas": 2, "replicas": 3, "availableReplicas": 2,
                                              "readyReplicas": 2}}, False),
        ({"metadata": {"generation": 4}, "spec": {"replicas": 1},
          "status": {"observedGeneration": 3, "updatedReplicas": 1, "replicas": 1, "availableReplicas": 1,
                     "readyReplicas": 1}}, False),
        ({"spec": {"replicas": 1}, "status": {}}, False),
    ],
)
def test_deployment_ready(doc, ready):
    assert deployment_ready(doc) is ready


def test_kubectl_target_missing_binary(tmp_path):
    (tmp_path / "k8s").mkdir()
    (tmp_path / "k8s" / "backend.yaml").write_text(MANIFEST)
    env = staging(manifests="k8s", namespace="image-processor-staging")
    kubectl = KubectlTarget(kubectl=str(tmp_path / "no-kubectl"), workdir=tmp_path)
    with pytest.raises(GateFailure) as exc:
        kubectl.apply(env, refs(make_context()), bind(env, {}))
    assert exc.value.kind == "deploy"
    assert "not found" in exc.value.message


def test_kubectl_target_without_manifests(tmp_path):
    env = staging(manifests="missing")
    with pytest.raises(GateFailure, match="no manifests found"):
        KubectlTarget(workdir=tmp_path).apply(env, [], bind(env, {}))
