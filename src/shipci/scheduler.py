# scheduler.py
from __future__ import annotations

import heapq
import os
import re
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .actions import ActionRegistry, default_actions
from .artifacts import artifact_refs
from .conditions import (
    Node,
    Scope,
    evaluate,
    parse,
    references_outcomes,
    render,
    template_refs,
    uses_status_functions,
    validate,
)
from .context import RunContext, bind_inputs, is_triggered
from .errors import CancellationError, ConfigurationError, CyclicDependencyError
from .gate import DryRunTarget, EnvironmentBinding, EnvironmentGate
from .matrix import expand, matrix_env
from .model import (
    BLOCKED,
    CANCELLED,
    FAILURE,
    RUNNING,
    SKIPPED,
    SUCCESS,
    Job,
    JobInstance,
    Pipeline,
    utcnow,
)
from .report import InstanceReport, RunReport
from .runner import StepRunner
from .ui.console import get_console


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

class CancelToken:
    """Run-level cancellation flag, safe to set from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()


# ----------------------------------------------------------------------
# Plan
# ----------------------------------------------------------------------

@dataclass
class ExecutionPlan:
    """
    Compiled, index-based job graph.

    instances[i].index == i (declaration order, matrix expanded);
    deps[i] / dependents[i] hold instance indices; order is a stable
    topological order (lowest declaration index first among ready nodes).
    A plan is executed at most once.
    """
    pipeline: Pipeline
    context: RunContext
    instances: List[JobInstance]
    deps: List[List[int]]
    dependents: List[List[int]]
    order: List[int]
    by_job: Dict[str, List[int]]
    conditions: Dict[str, Optional[Node]]
    deferred: Set[str]
    executed: bool = False

    def instance(self, instance_id: str) -> JobInstance:
        for inst in self.instances:
            if inst.id == instance_id:
                return inst
        raise KeyError(instance_id)

    def describe(self) -> List[Tuple[str, List[str], str]]:
        """(instance id, dependency ids, planned state) in plan order."""
        rows = []
        for i in self.order:
            inst = self.instances[i]
            state = inst.status
            if inst.status == SKIPPED and inst.reason:
                state = f"skipped: {inst.reason}"
            elif inst.job.name in self.deferred:
                state = f"{state} (condition evaluated at run time)"
            rows.append((inst.id, [self.instances[d].id for d in self.deps[i]], state))
        return rows


# ----------------------------------------------------------------------
# Compilation
# ----------------------------------------------------------------------

_STEP_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


def _validate(pipeline: Pipeline, actions: ActionRegistry) -> Dict[str, Optional[Node]]:
    problems: List[str] = []
    names = [j.name for j in pipeline.jobs]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        problems.append(f"duplicate job names: {dupes}")
    known = set(names)

    for env in pipeline.environments.values():
        for up in env.requires:
            if up not in pipeline.environments:
                problems.append(f"environment '{env.name}' requires unknown environment '{up}'")
        if env.smoke and not env.base_url:
            problems.append(f"environment '{env.name}' declares smoke probes but no base_url")

    conditions: Dict[str, Optional[Node]] = {}
    for job in pipeline.jobs:
        axes = [ax.name for ax in job.matrix]
        if len(set(axes)) != len(axes):
            problems.append(f"job '{job.name}' declares a matrix axis twice")
        for ax in job.matrix:
            if not ax.values:
                problems.append(f"job '{job.name}' matrix axis '{ax.name}' has no values")
        for need in job.needs:
            if need not in known:
                problems.append(f"job '{job.name}' needs unknown job '{need}'. Known jobs: {sorted(known)}")
        if job.environment is not None and job.environment not in pipeline.environments:
            problems.append(f"job '{job.name}' targets undeclared environment '{job.environment}'")
        if not job.steps and job.environment is None:
            problems.append(f"job '{job.name}' has no steps")

        conditions[job.name] = None
        try:
            if job.condition:
                node = parse(job.condition)
                validate(node, owner=job.name, needs=job.needs, known_jobs=known, axes=axes)
                conditions[job.name] = node
            for value in job.env.values():
                _validate_templates(value, job, axes, known)
        except ConfigurationError as e:
            problems.append(f"job '{job.name}': {e}")

        step_ids: List[str] = []
        for step in job.steps:
            owner = f"{job.name} / {step.name}"
            if (step.run is None) == (step.uses is None):
                problems.append(f"step '{owner}' must set exactly one of run/uses")
                continue
            if step.uses is not None and not actions.has(step.uses):
                problems.append(f"step '{owner}' uses unknown action '{step.uses}'. Known: {actions.names()}")
            if step.retries < 0:
                problems.append(f"step '{owner}' has negative retries")
            if step.id is not None and not _STEP_ID_RE.match(step.id):
                problems.append(f"step '{owner}' has invalid id {step.id!r}")
            elif step.id is not None and step.id in step_ids:
                problems.append(f"step '{owner}' reuses id '{step.id}' within job '{job.name}'")
            try:
                if step.condition:
                    validate(parse(step.condition), owner=owner, needs=job.needs, known_jobs=known, axes=axes,
                             steps=step_ids)
                for text in [step.run or "", step.cwd or "", *step.with_.values(), *step.env.values()]:
                    _validate_templates(str(text), job, axes, known, step_ids)
            except ConfigurationError as e:
                problems.append(f"step '{owner}': {e}")
            if step.id is not None:
                step_ids.append(step.id)

    if problems:
        raise ConfigurationError(f"Invalid pipeline '{pipeline.name}'", problems=problems)
    return conditions


def _validate_templates(text: str, job: Job, axes: List[str], known: Set[str], step_ids: Iterable[str] = ()) -> None:
    for ref in template_refs(text):
        if ref.path[0] == "matrix" and ref.path[1] not in axes:
            raise ConfigurationError(f"template references undeclared matrix axis '{ref.path[1]}'")
        if ref.path[0] == "needs" and (ref.path[1] not in known or ref.path[1] not in job.needs):
            raise ConfigurationError(f"template references job '{ref.path[1]}' which is not in its needs")
        if ref.path[0] == "steps" and ref.path[1] not in step_ids:
            raise ConfigurationError(
                f"template references step '{ref.path[1]}' which is not an earlier step of its job"
            )


def find_cycle(jobs: List[Job]) -> Optional[List[str]]:
    """Return one dependency cycle as a name path (first == last), or None."""
    needs = {j.name: list(j.needs) for j in jobs}
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in needs}
    stack: List[str] = []

    def visit(name: str) -> Optional[List[str]]:
        color[name] = GREY
        stack.append(name)
        for dep in needs.get(name, []):
            if dep not in color:
                continue
            if color[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[name] = BLACK
        return None

    for j in jobs:
        if color[j.name] == WHITE:
            found = visit(j.name)
            if found:
                return found
    return None


def _stable_topo_order(deps: List[List[int]], dependents: List[List[int]]) -> List[int]:
    indeg = [len(d) for d in deps]
    ready = [i for i, d in enumerate(indeg) if d == 0]
    heapq.heapify(ready)
    order: List[int] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for child in dependents[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(ready, child)
    return order


def compile(pipeline: Pipeline, context: RunContext, *, actions: Optional[ActionRegistry] = None) -> ExecutionPlan:
    """
    Validate a pipeline and turn it into an ExecutionPlan for one run.

    Raises ConfigurationError (CyclicDependencyError for cycles) before
    anything executes.
    """
    conditions = _validate(pipeline, actions or default_actions())

    cycle = find_cycle(list(pipeline.jobs))
    if cycle:
        raise CyclicDependencyError(cycle)

    context = bind_inputs(pipeline, context)

    instances: List[JobInstance] = []
    by_job: Dict[str, List[int]] = {}
    for job in pipeline.jobs:
        expanded = expand(job, start_index=len(instances))
        by_job[job.name] = [inst.index for inst in expanded]
        instances.extend(expanded)

    deps: List[List[int]] = [[] for _ in instances]
    dependents: List[List[int]] = [[] for _ in instances]
    for inst in instances:
        for need in inst.job.needs:
            # a need on a matrix job means every one of its instances
            for d in by_job[need]:
                if d not in deps[inst.index]:
                    deps[inst.index].append(d)
                    dependents[d].append(inst.index)

    deferred = {name for name, node in conditions.items() if node is not None and references_outcomes(node)}

    triggered = is_triggered(pipeline.triggers, context)
    for inst in instances:
        if not triggered:
            inst.transition(SKIPPED, f"{context.event} on '{context.branch}' is not a configured trigger")
            continue
        node = conditions[inst.job.name]
        if node is not None and inst.job.name not in deferred:
            if not evaluate(node, context, matrix=inst.matrix):
                inst.transition(SKIPPED, f"condition is false: {inst.job.condition}")
                continue
        if deps[inst.index]:
            inst.transition(BLOCKED)

    return ExecutionPlan(
        pipeline=pipeline,
        context=context,
        instances=instances,
        deps=deps,
        dependents=dependents,
        order=_stable_topo_order(deps, dependents),
        by_job=by_job,
        conditions=conditions,
        deferred=deferred,
    )


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

def aggregate(statuses: List[str]) -> str:
    """Outcome of a (possibly matrix-expanded) job as seen by its dependents."""
    if FAILURE in statuses:
        return FAILURE
    if CANCELLED in statuses:
        return CANCELLED
    if SKIPPED in statuses:
        return SKIPPED
    return SUCCESS


class Scheduler:
    """
    Runs an ExecutionPlan.

    Ready instances go to a bounded thread pool in declaration order;
    an instance becomes ready the moment all of its dependencies are
    terminal and its condition (or the implicit "all succeeded" rule)
    allows it. Failures propagate forward as skips.
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        *,
        runner: Optional[StepRunner] = None,
        gate: Optional[EnvironmentGate] = None,
        max_workers: Optional[int] = None,
        fail_fast: bool = False,
        cancel: Optional[CancelToken] = None,
        run_id: Optional[str] = None,
    ):
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        if max_workers < 1:
            raise ConfigurationError(f"max_workers must be >= 1, got {max_workers}")

        self.plan = plan
        self.runner = runner or StepRunner()
        self.gate = gate or EnvironmentGate(DryRunTarget())
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.cancel = cancel or CancelToken()
        self.run_id = run_id or uuid.uuid4().hex[:12]

        self._remaining = [len(d) for d in plan.deps]
        self._ready: List[int] = []
        self._started: List[str] = []
        self._halted_jobs: Set[str] = set()

    # ------------------------------------------------------------------
    # bookkeeping

    def _outcomes(self, job: Job) -> Dict[str, str]:
        plan = self.plan
        return {
            need: aggregate([plan.instances[i].status for i in plan.by_job[need]])
            for need in job.needs
        }

    def _settle(self, idx: int) -> None:
        """idx reached a terminal state: release or skip its dependents."""
        for child in self.plan.dependents[idx]:
            self._remaining[child] -= 1
            if self._remaining[child] == 0:
                self._resolve(child)

    def _resolve(self, idx: int) -> None:
        inst = self.plan.instances[idx]
        if inst.is_terminal:
            return
        if self.cancel.is_set():
            self._finish_unstarted(idx, CANCELLED, self.cancel.reason)
            return
        if inst.job.name in self._halted_jobs:
            self._finish_unstarted(idx, CANCELLED, "a sibling matrix instance failed (fail-fast)")
            return

        outcomes = self._outcomes(inst.job)
        node = self.plan.conditions.get(inst.job.name)
        # only always() / success() / failure() / cancelled() lift the all-dependencies-succeeded rule
        if node is None or not uses_status_functions(node):
            blocked = [f"{name} {status}" for name, status in outcomes.items() if status != SUCCESS]
            if blocked:
                self._finish_unstarted(idx, SKIPPED, f"dependency did not succeed: {', '.join(blocked)}")
                return
        if inst.job.name in self.plan.deferred:
            if not evaluate(node, self.plan.context, matrix=inst.matrix, needs=outcomes):
                self._finish_unstarted(idx, SKIPPED, f"condition is false: {inst.job.condition}")
                return
        heapq.heappush(self._ready, idx)

    def _finish_unstarted(self, idx: int, status: str, reason: Optional[str]) -> None:
        inst = self.plan.instances[idx]
        inst.transition(status, reason)
        get_console().print_job_skipped(inst.id, f"{status}: {reason}")
        self._settle(idx)

    # ------------------------------------------------------------------
    # execution

    def run(self) -> RunReport:
        plan = self.plan
        if plan.executed:
            raise RuntimeError("ExecutionPlan has already been run; compile a new one")
        plan.executed = True

        console = get_console()
        started_at = utcnow()

        # settle compile-time skips first; settling may resolve later instances
        for idx in [i for i in plan.order if plan.instances[i].is_terminal]:
            console.print_job_skipped(plan.instances[idx].id, f"skipped: {plan.instances[idx].reason}")
            self._settle(idx)
        for idx in plan.order:
            if not plan.deps[idx] and not plan.instances[idx].is_terminal:
                self._resolve(idx)

        in_flight: Dict[Future, int] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while self._ready or in_flight:
                try:
                    self._submit_ready(pool, in_flight)
                    if not in_flight:
                        continue
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.cancel.cancel("interrupted")
                    continue
                for fut in sorted(done, key=lambda f: in_flight[f]):
                    self._complete(fut, in_flight.pop(fut))

        # a cancel arriving after this point cannot change the outcome
        cancelled = self.cancel.is_set()
        cancel_reason = self.cancel.reason if cancelled else None

        # anything still unresolved (cancelled run) ends up cancelled
        for inst in plan.instances:
            if not inst.is_terminal:
                inst.transition(CANCELLED, cancel_reason or "run ended before the job could start")

        return self._report(started_at, cancelled, cancel_reason)

    def _submit_ready(self, pool: ThreadPoolExecutor, in_flight: Dict[Future, int]) -> None:
        plan = self.plan
        while self._ready and len(in_flight) < self.max_workers:
            idx = heapq.heappop(self._ready)
            inst = plan.instances[idx]
            if self.cancel.is_set():
                self._finish_unstarted(idx, CANCELLED, self.cancel.reason)
                continue
            if inst.job.name in self._halted_jobs:
                self._finish_unstarted(idx, CANCELLED, "a sibling matrix instance failed (fail-fast)")
                continue
            if inst.job.environment is not None:
                environment = plan.pipeline.environments[inst.job.environment]
                if self.gate.authorize(environment, plan.context) is None:
                    self._finish_unstarted(
                        idx,
                        SKIPPED,
                        f"no promotion rule of '{environment.name}' matches "
                        f"{plan.context.event} on '{plan.context.branch}'",
                    )
                    continue

            inst.transition(RUNNING)
            self._started.append(inst.id)
            get_console().print_job_start(inst.id)
            in_flight[pool.submit(self._execute, inst)] = idx

    def _complete(self, fut: Future, idx: int) -> None:
        inst = self.plan.instances[idx]
        console = get_console()
        try:
            status, reason = fut.result()
        except Exception as e:
            status, reason = FAILURE, f"internal error: {type(e).__name__}: {e}"
            console.print_exception(e)

        inst.transition(status, reason)
        if status == SUCCESS:
            console.print_success(inst.id)
        elif status == FAILURE:
            console.print_failure(inst.id, reason or "failed", is_job=True)
            if inst.job.fail_fast:
                self._halted_jobs.add(inst.job.name)
            if self.fail_fast:
                self.cancel.cancel(f"fail-fast: {inst.id} failed")
        self._settle(idx)

    def _base_env(self, inst: JobInstance, scope: Scope) -> Dict[str, str]:
        ctx = self.plan.context
        env = {
            "CI": "true",
            "SHIPCI": "true",
            "SHIPCI_RUN_ID": self.run_id,
            "SHIPCI_EVENT": ctx.event,
            "SHIPCI_REF": ctx.ref,
            "SHIPCI_BRANCH": ctx.branch,
            "SHIPCI_SHA": ctx.sha,
            "SHIPCI_JOB": inst.job.name,
        }
        for name, value in ctx.inputs.items():
            env[f"INPUT_{name.upper().replace('-', '_')}"] = value
        env.update({k: render(v, scope) for k, v in self.plan.pipeline.env.items()})
        env.update({k: render(v, scope) for k, v in inst.job.env.items()})
        env.update(matrix_env(inst.matrix))
        return env

    def _execute(self, inst: JobInstance) -> Tuple[str, Optional[str]]:
        """Worker thread: run one instance. Returns (terminal status, reason)."""
        try:
            if inst.job.environment is None:
                scope = Scope(self.plan.context, dict(inst.matrix), self._outcomes(inst.job))
                return self._run_steps(inst, scope, self._base_env(inst, scope), ())
            return self._deploy(inst)
        except CancellationError as e:
            return CANCELLED, e.reason

    def _deploy(self, inst: JobInstance) -> Tuple[str, Optional[str]]:
        plan = self.plan
        scope = Scope(plan.context, dict(inst.matrix), self._outcomes(inst.job))
        env = self._base_env(inst, scope)
        environment = plan.pipeline.environments[inst.job.environment]
        artifacts = artifact_refs(plan.context, plan.pipeline.artifact_components(), self.runner.registry_host)
        step_outcome: Dict[str, Optional[str]] = {}

        def before_deploy(binding: EnvironmentBinding) -> str:
            status, reason = self._run_steps(inst, scope, {**env, **binding.as_env()}, binding.secret_values())
            step_outcome["reason"] = reason
            return status

        get_console().print_gate(inst.id, environment.name, "deploying " + ", ".join(a.reference for a in artifacts))
        result = self.gate.promote(environment, artifacts, plan.context, before_deploy=before_deploy, run_id=self.run_id)
        inst.gate = result
        if result.status == SUCCESS:
            get_console().print_gate(inst.id, environment.name, result.message)
            return SUCCESS, None
        get_console().print_gate(inst.id, environment.name, f"{result.kind}: {result.message}")
        if result.kind == "steps":
            return FAILURE, step_outcome.get("reason")
        return FAILURE, f"{result.kind}: {result.message}"

    def _run_steps(self, inst: JobInstance, scope: Scope, env: Dict[str, str], secrets) -> Tuple[str, Optional[str]]:
        console = get_console()
        env = dict(env)
        outputs: Dict[str, Dict[str, str]] = {}
        for step in inst.job.steps:
            if self.cancel.is_set():
                raise CancellationError(self.cancel.reason or "cancelled")
            console.print_step(inst.id, step.name)
            res = self.runner.run(step, job=inst.id, scope=scope, env=env, secrets=secrets, cancelled=self.cancel.is_set)
            inst.steps.append(res)
            if step.id is not None:
                outputs[step.id] = dict(res.outputs)
                scope = replace(scope, steps=dict(outputs))
            # SHIPCI_ENV exports apply to the remaining steps of this instance
            env.update(res.exports)
            if res.status == SKIPPED:
                console.print_info(f"[{inst.id}] step '{step.name}' skipped ({res.error})")
            elif res.status == FAILURE:
                console.print_failure(f"{inst.id} / {step.name}", res.error or "failed", exit_code=res.exit_code)
                if res.ignored:
                    console.print_info(f"[{inst.id}] failure of '{step.name}' ignored (ignore_failure)")
                    continue
                return FAILURE, f"step '{step.name}' failed (exit={res.exit_code})"
        return SUCCESS, None

    def _report(self, started_at, cancelled: bool, cancel_reason: Optional[str]) -> RunReport:
        plan = self.plan
        statuses = [inst.status for inst in plan.instances]
        if cancelled:
            status = CANCELLED
        elif FAILURE in statuses:
            status = FAILURE
        else:
            status = SUCCESS
        return RunReport(
            run_id=self.run_id,
            pipeline=plan.pipeline.name,
            context=plan.context.summary(),
            status=status,
            started_at=started_at,
            finished_at=utcnow(),
            instances=[InstanceReport.from_instance(plan.instances[i]) for i in plan.order],
            order=list(self._started),
            cancel_reason=cancel_reason,
        )


def run(plan: ExecutionPlan, **kwargs) -> RunReport:
    """run(compile(pipeline, ctx), max_workers=4) -> RunReport"""
    return Scheduler(plan, **kwargs).run()
