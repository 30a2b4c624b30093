"""Job graph compilation and execution."""

import threading
import time

import pytest

from conftest import SHA, FakeTarget, make_context, static_prober
from shipci.actions import ActionOutcome, default_actions
from shipci.artifacts import InMemoryRegistry
from shipci.dsl import environment, job, probe, rule, sh, uses, wf
from shipci.errors import ConfigurationError, CyclicDependencyError
from shipci.gate import EnvironmentGate
from shipci.ledger import InMemoryLedger
from shipci.model import BLOCKED, CANCELLED, FAILURE, PENDING, SKIPPED, SUCCESS
from shipci.runner import StepRunner
from shipci.scheduler import CancelToken, Scheduler, aggregate, compile, run

COMPONENTS = ["frontend", "backend", "ml-service"]


def _runner(tmp_path, actions=None):
    return StepRunner(tmp_path, actions=actions, registry=InMemoryRegistry(), prober=static_prober(200))


def _gate(target=None, **kwargs):
    return EnvironmentGate(target or FakeTarget(), InMemoryLedger(), prober=static_prober(200), **kwargs)


def lint_test_build(failing_lint=None):
    lint_cmd = "true"
    if failing_lint:
        lint_cmd = f'[ "$MATRIX_COMPONENT" != "{failing_lint}" ]'
    return wf(
        "image-processing",
        job("lint", sh("Lint", lint_cmd), matrix={"component": COMPONENTS}),
        job("test", sh("Test", "true"), needs="lint"),
        job("build", sh("Build", "echo building $MATRIX_COMPONENT"), needs="test", matrix={"component": COMPONENTS}),
    )


# ---------------------------------------------------------------------
# compile
# ---------------------------------------------------------------------

def test_cycle_is_rejected_with_path():
    p = wf("p", job("a", sh("x", "true"), needs="b"), job("b", sh("x", "true"), needs="a"))
    with pytest.raises(CyclicDependencyError) as exc:
        compile(p, make_context())
    assert exc.value.cycle == ["a", "b", "a"]
    assert "a -> b -> a" in str(exc.value)


def test_self_dependency_is_a_cycle():
    p = wf("p", job("a", sh("x", "true"), needs="a"))
    with pytest.raises(CyclicDependencyError):
        compile(p, make_context())


def test_validation_collects_every_problem():
    p = wf(
        "p",
        job("a", sh("x", "true"), needs="ghost"),
        job("b", uses("y", "no/such-action")),
        job("c", sh("z", "true"), when="matrix.component == 'x'"),
        job("d", sh("w", "true"), environment="qa"),
    )
    with pytest.raises(ConfigurationError) as exc:
        compile(p, make_context())
    text = str(exc.value)
    assert "unknown job 'ghost'" in text
    assert "unknown action 'no/such-action'" in text
    assert "undeclared matrix axis 'component'" in text
    assert "undeclared environment 'qa'" in text


def test_duplicate_job_names_rejected():
    p = wf("p", job("a", sh("x", "true")), job("a", sh("y", "true")))
    with pytest.raises(ConfigurationError, match="duplicate job names"):
        compile(p, make_context())


def test_template_referencing_unknown_axis_rejected():
    p = wf("p", job("a", sh("x", "echo ${{ matrix.python }}")))
    with pytest.raises(ConfigurationError, match="matrix axis 'python'"):
        compile(p, make_context())


def test_plan_order_and_edges():
    plan = compile(lint_test_build(), make_context())
    ids = [plan.instances[i].id for i in plan.order]
    assert ids == [
        "lint (frontend)", "lint (backend)", "lint (ml-service)",
        "test",
        "build (frontend)", "build (backend)", "build (ml-service)",
    ]
    test_idx = plan.by_job["test"][0]
    assert plan.deps[test_idx] == plan.by_job["lint"]
    assert plan.instances[test_idx].status == BLOCKED
    assert plan.instances[0].status == PENDING


def test_compile_time_condition_skips_instances():
    p = wf(
        "p",
        job("test", sh("t", "true")),
        job("build", sh("b", "true"), needs="test", when="github.event_name == 'push'"),
    )
    plan = compile(p, make_context("pull_request", "feature/x", base_branch="main"))
    build = plan.instances[plan.by_job["build"][0]]
    assert build.status == SKIPPED
    assert "condition is false" in build.reason


def test_untriggered_event_skips_everything():
    p = wf("p", job("a", sh("x", "true")), push=["main"])
    plan = compile(p, make_context("push", "hotfix/1"))
    assert [i.status for i in plan.instances] == [SKIPPED]
    report = run(plan, runner=StepRunner(), max_workers=1)
    assert report.statuses() == {"a": SKIPPED}


# ---------------------------------------------------------------------
# run
# ---------------------------------------------------------------------

def test_all_green(tmp_path):
    report = run(compile(lint_test_build(), make_context()), runner=_runner(tmp_path), max_workers=4)
    assert report.status == SUCCESS
    assert set(report.statuses().values()) == {SUCCESS}
    assert len(report.instances) == 7


def test_failed_matrix_instance_propagates_forward(tmp_path):
    report = run(
        compile(lint_test_build(failing_lint="backend"), make_context()),
        runner=_runner(tmp_path),
        max_workers=3,
    )
    statuses = report.statuses()
    assert statuses["lint (backend)"] == FAILURE
    # siblings are independent
    assert statuses["lint (frontend)"] == SUCCESS
    assert statuses["lint (ml-service)"] == SUCCESS
    assert statuses["test"] == SKIPPED
    assert {statuses[f"build ({c})"] for c in COMPONENTS} == {SKIPPED}
    assert report.status == FAILURE

    by_id = report.by_id()
    assert "lint failure" in by_id["test"].reason
    failed = by_id["lint (backend)"]
    assert failed.first_failure.name == "Lint"
    assert failed.failure_kind == "step"
    assert failed.to_dict()["first_failure"]["exit_code"] == 1


def test_same_terminal_states_on_every_run(tmp_path):
    results = [
        run(compile(lint_test_build(failing_lint="frontend"), make_context()), runner=_runner(tmp_path), max_workers=w)
        .statuses()
        for w in (1, 2, 4, 4)
    ]
    assert all(r == results[0] for r in results)


def test_single_worker_runs_in_plan_order(tmp_path):
    plan = compile(lint_test_build(), make_context())
    expected = [plan.instances[i].id for i in plan.order]
    report = run(plan, runner=_runner(tmp_path), max_workers=1)
    assert report.order == expected


def test_concurrency_bound(tmp_path):
    active = 0
    peak = 0
    lock = threading.Lock()
    actions = default_actions()

    @actions.register("busy")
    def _busy(params, ctx):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
        return ActionOutcome(ok=True)

    p = wf("p", *[job(f"j{i}", uses("busy", "busy")) for i in range(6)])
    report = run(compile(p, make_context(), actions=actions), runner=_runner(tmp_path, actions), max_workers=2)
    assert report.status == SUCCESS
    assert 1 <= peak <= 2


def test_dependency_never_starts_before_upstream_is_terminal(tmp_path):
    log = tmp_path / "log"
    p = wf(
        "p",
        job("a", sh("a", f"sleep 0.1; echo a >> {log}")),
        job("b", sh("b", f"echo b >> {log}"), needs="a"),
        job("c", sh("c", f"echo c >> {log}"), needs="b"),
    )
    run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=4)
    assert log.read_text().split() == ["a", "b", "c"]


def test_always_and_failure_opt_in(tmp_path):
    p = wf(
        "p",
        job("test", sh("t", "exit 1")),
        job("deploy", sh("d", "true"), needs="test"),
        job("notify", sh("n", "echo test=${{ needs.test.result }}"), needs="test", when="always()"),
        job("triage", sh("t", "true"), needs="test", when="failure()"),
        job("green", sh("g", "true"), needs="test", when="needs.test.result == 'success'"),
    )
    report = run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=2)
    statuses = report.statuses()
    assert statuses == {
        "test": FAILURE,
        "deploy": SKIPPED,
        "notify": SUCCESS,
        "triage": SUCCESS,
        "green": SKIPPED,
    }
    assert report.by_id()["notify"].steps[0].stdout.strip() == "test=failure"


def test_needs_result_condition_still_requires_every_dependency(tmp_path):
    p = wf(
        "p",
        job("a", sh("a", "exit 1")),
        job("b", sh("b", "true")),
        job("c", sh("c", "true"), needs=["a", "b"], when="needs.b.result == 'success'"),
        job("d", sh("d", "true"), needs=["a", "b"], when="always() && needs.b.result == 'success'"),
    )
    report = run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=1)
    c = report.by_id()["c"]
    assert c.status == SKIPPED
    assert c.steps == []
    assert "dependency did not succeed: a failure" in c.reason
    assert report.by_id()["d"].status == SUCCESS


def test_step_outputs_and_env_exports_flow_to_later_steps(tmp_path):
    p = wf(
        "p",
        job(
            "build",
            sh("meta", 'echo "image=ghcr.io/acme/$MATRIX_COMPONENT" >> "$SHIPCI_OUTPUT"; '
                       'echo "TAG=sha-abc" >> "$SHIPCI_ENV"', id="meta"),
            sh("push", 'echo "${{ steps.meta.outputs.image }}:$TAG"'),
            sh("only-backend", "echo yes", when="steps.meta.outputs.image == 'ghcr.io/acme/backend'"),
            matrix={"component": ["frontend", "backend"]},
        ),
    )
    report = run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=1)
    backend = report.by_id()["build (backend)"]
    assert backend.steps[0].outputs == {"image": "ghcr.io/acme/backend"}
    assert backend.steps[1].stdout.strip() == "ghcr.io/acme/backend:sha-abc"
    assert backend.steps[2].status == SUCCESS
    frontend = report.by_id()["build (frontend)"]
    assert frontend.steps[1].stdout.strip() == "ghcr.io/acme/frontend:sha-abc"
    assert frontend.steps[2].status == SKIPPED


def test_action_outputs_are_addressable_by_step_id(tmp_path):
    p = wf(
        "p",
        job(
            "build",
            uses("publish", "artifact/publish", id="publish", component="backend"),
            sh("show", "echo ${{ steps.publish.outputs.image }}"),
        ),
    )
    report = run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=1)
    assert report.by_id()["build"].steps[1].stdout.strip() == f"ghcr.io/acme/image-processor/backend:sha-{SHA[:7]}"


def test_step_output_reference_must_name_an_earlier_step():
    p = wf(
        "p",
        job(
            "build",
            sh("push", "docker push ${{ steps.meta.outputs.image }}"),
            sh("meta", "true", id="meta"),
        ),
        job("deploy", sh("x", "true"), needs="build", when="steps.meta.outputs.image != ''"),
    )
    with pytest.raises(ConfigurationError) as exc:
        compile(p, make_context())
    text = str(exc.value)
    assert "step 'build / push'" in text
    assert "step 'meta' which is not an earlier step of its job" in text
    assert "job 'deploy'" in text


def test_step_ids_must_be_unique_and_well_formed():
    p = wf("p", job("a", sh("one", "true", id="x"), sh("two", "true", id="x"), sh("three", "true", id="bad id")))
    with pytest.raises(ConfigurationError) as exc:
        compile(p, make_context())
    text = str(exc.value)
    assert "reuses id 'x'" in text
    assert "invalid id 'bad id'" in text


def test_ignored_step_failure_keeps_job_green(tmp_path):
    p = wf(
        "p",
        job("scan", sh("trivy", "true"), sh("snyk", "exit 2", ignore_failure=True), sh("after", "true")),
    )
    report = run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=1)
    inst = report.by_id()["scan"]
    assert inst.status == SUCCESS
    assert [s.name for s in inst.steps] == ["trivy", "snyk", "after"]
    assert inst.steps[1].ignored


def test_first_failing_step_stops_the_instance(tmp_path):
    p = wf("p", job("a", sh("one", "true"), sh("two", "exit 4"), sh("three", "true")))
    report = run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=1)
    inst = report.by_id()["a"]
    assert inst.status == FAILURE
    assert [s.name for s in inst.steps] == ["one", "two"]


def test_job_environment_variables(tmp_path):
    p = wf(
        "p",
        job(
            "build",
            sh("env", 'echo "$CI $SHIPCI_SHA $MATRIX_COMPONENT $STAGE"'),
            matrix={"component": ["backend"]},
            env={"STAGE": "${{ matrix.component }}-build"},
        ),
    )
    report = run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=1)
    assert report.by_id()["build (backend)"].steps[0].stdout.split() == ["true", SHA, "backend", "backend-build"]


def test_cancellation_stops_at_step_boundary(tmp_path):
    token = CancelToken()
    actions = default_actions()

    @actions.register("supersede")
    def _supersede(params, ctx):
        token.cancel("superseded by a newer push")
        return ActionOutcome(ok=True)

    p = wf(
        "p",
        job("a", uses("first", "supersede"), sh("second", "true")),
        job("b", sh("x", "true")),
        job("c", sh("y", "true"), needs="a"),
    )
    plan = compile(p, make_context(), actions=actions)
    report = Scheduler(plan, runner=_runner(tmp_path, actions), max_workers=1, cancel=token).run()

    assert report.status == CANCELLED
    assert report.cancel_reason == "superseded by a newer push"
    statuses = report.statuses()
    assert statuses == {"a": CANCELLED, "b": CANCELLED, "c": CANCELLED}
    assert [s.name for s in report.by_id()["a"].steps] == ["first"]


def test_cancel_after_the_last_job_does_not_change_the_outcome(tmp_path):
    class LateCancel(Scheduler):
        def _report(self, started_at, cancelled, cancel_reason):
            # a cancel request landing between the end of the pool loop and the report
            self.cancel.cancel("late request")
            return super()._report(started_at, cancelled, cancel_reason)

    p = wf("p", job("a", sh("x", "true")), job("b", sh("y", "true"), needs="a"))
    report = LateCancel(compile(p, make_context()), runner=_runner(tmp_path), max_workers=1).run()
    assert report.status == SUCCESS
    assert report.cancel_reason is None
    assert report.statuses() == {"a": SUCCESS, "b": SUCCESS}


def test_run_level_fail_fast(tmp_path):
    p = wf("p", job("a", sh("x", "exit 1")), job("b", sh("y", "true")))
    report = run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=1, fail_fast=True)
    assert report.statuses() == {"a": FAILURE, "b": CANCELLED}
    assert report.status == CANCELLED


def test_matrix_fail_fast_cancels_unstarted_siblings_only(tmp_path):
    p = wf(
        "p",
        job(
            "lint",
            sh("x", '[ "$MATRIX_COMPONENT" != frontend ]'),
            matrix={"component": COMPONENTS},
            fail_fast=True,
        ),
        job("docs", sh("d", "true")),
    )
    report = run(compile(p, make_context()), runner=_runner(tmp_path), max_workers=1)
    statuses = report.statuses()
    assert statuses["lint (frontend)"] == FAILURE
    assert statuses["lint (backend)"] == CANCELLED
    assert statuses["lint (ml-service)"] == CANCELLED
    assert statuses["docs"] == SUCCESS
    assert report.status == FAILURE


def test_plan_is_single_use(tmp_path):
    plan = compile(wf("p", job("a", sh("x", "true"))), make_context())
    run(plan, runner=_runner(tmp_path), max_workers=1)
    with pytest.raises(RuntimeError, match="already been run"):
        run(plan, runner=_runner(tmp_path), max_workers=1)


def test_invalid_worker_count():
    plan = compile(wf("p", job("a", sh("x", "true"))), make_context())
    with pytest.raises(ConfigurationError):
        Scheduler(plan, max_workers=0)


def test_aggregate():
    assert aggregate([SUCCESS, FAILURE, CANCELLED]) == FAILURE
    assert aggregate([SUCCESS, CANCELLED, SKIPPED]) == CANCELLED
    assert aggregate([SUCCESS, SKIPPED]) == SKIPPED
    assert aggregate([SUCCESS, SUCCESS]) == SUCCESS


# ---------------------------------------------------------------------
# deploy jobs
# ---------------------------------------------------------------------

def deploy_pipeline(deploy_steps=None, secrets=None, extra_jobs=()):
    staging = environment(
        "staging",
        rule(events="push", branches="develop"),
        secrets=secrets or {},
        workloads=["frontend", "backend"],
        base_url="https://staging.example.com",
        smoke=[probe("/api/health")],
    )
    return wf(
        "p",
        job("build", uses("publish", "artifact/publish"), matrix={"component": ["frontend", "backend"]}),
        job("deploy-staging", *(deploy_steps or [sh("kubeconfig", "true")]), needs="build", environment="staging"),
        job("verify", sh("v", "true"), needs="deploy-staging"),
        *extra_jobs,
        environments=[staging],
    )


def test_deploy_job_promotes_through_gate(tmp_path):
    target = FakeTarget()
    gate = _gate(target)
    report = run(compile(deploy_pipeline(), make_context("push", "develop")), runner=_runner(tmp_path), gate=gate,
                 max_workers=2)
    assert report.status == SUCCESS
    short = SHA[:7]
    assert target.applied == [(
        "staging",
        [f"ghcr.io/acme/image-processor/frontend:sha-{short}", f"ghcr.io/acme/image-processor/backend:sha-{short}"],
    )]
    deploy = report.by_id()["deploy-staging"]
    assert deploy.gate.status == SUCCESS
    assert [s.name for s in deploy.steps] == ["kubeconfig"]
    assert gate.ledger.latest("staging", SHA).status == SUCCESS


def test_rule_mismatch_skips_deploy_without_side_effects(tmp_path):
    target = FakeTarget()
    gate = _gate(target)
    report = run(compile(deploy_pipeline(), make_context("push", "main")), runner=_runner(tmp_path), gate=gate,
                 max_workers=2)
    statuses = report.statuses()
    assert statuses["deploy-staging"] == SKIPPED
    assert statuses["verify"] == SKIPPED
    assert "no promotion rule" in report.by_id()["deploy-staging"].reason
    assert report.by_id()["deploy-staging"].steps == []
    assert target.applied == []
    assert gate.ledger.history("staging") == []
    assert report.status == SUCCESS


def test_deploy_steps_see_environment_secrets_masked(tmp_path):
    gate = _gate(environ={"DEPLOY_TOKEN": "s3cr3t-value"})
    p = deploy_pipeline(
        deploy_steps=[sh("use token", 'echo "token=$SHIPCI_TEST_TOKEN"')],
        secrets={"SHIPCI_TEST_TOKEN": "${DEPLOY_TOKEN}"},
        extra_jobs=[job("other", sh("peek", 'echo "token=[$SHIPCI_TEST_TOKEN]"'))],
    )
    report = run(compile(p, make_context("push", "develop")), runner=_runner(tmp_path), gate=gate, max_workers=1)
    deploy_out = report.by_id()["deploy-staging"].steps[0].stdout
    assert "s3cr3t-value" not in deploy_out
    assert "token=***" in deploy_out
    assert report.by_id()["other"].steps[0].stdout.strip() == "token=[]"


def test_failing_deploy_step_does_not_apply(tmp_path):
    target = FakeTarget()
    gate = _gate(target)
    p = deploy_pipeline(deploy_steps=[sh("kubeconfig", "exit 7")])
    report = run(compile(p, make_context("push", "develop")), runner=_runner(tmp_path), gate=gate, max_workers=1)
    deploy = report.by_id()["deploy-staging"]
    assert deploy.status == FAILURE
    assert deploy.failure_kind == "step"
    assert target.applied == []
    assert report.statuses()["verify"] == SKIPPED


def test_smoke_failure_reported_on_instance(tmp_path):
    target = FakeTarget()
    gate = EnvironmentGate(target, InMemoryLedger(), prober=static_prober(500))
    report = run(compile(deploy_pipeline(), make_context("push", "develop")), runner=_runner(tmp_path), gate=gate,
                 max_workers=1)
    deploy = report.by_id()["deploy-staging"]
    assert deploy.status == FAILURE
    assert deploy.failure_kind == "smoke_test"
    assert deploy.gate.applied
    assert deploy.to_dict()["gate"]["kind"] == "smoke_test"
