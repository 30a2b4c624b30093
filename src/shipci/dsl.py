# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import (
    DispatchInput,
    Environment,
    Job,
    MatrixAxis,
    Pipeline,
    PromotionRule,
    SmokeProbe,
    Step,
    Triggers,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    when: Optional[str] = None,
    ignore_failure: bool = False,
    timeout: Optional[float] = None,
    retries: int = 0,
    id: Optional[str] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env=env or {},
        condition=when,
        ignore_failure=ignore_failure,
        timeout=timeout,
        retries=retries,
        id=id,
    )


def uses(
    name: str,
    action: str,
    *,
    when: Optional[str] = None,
    cwd: str | None = None,
    id: Optional[str] = None,
    **params,
) -> Step:
    """Create a named-action step: uses("Publish", "artifact/publish", component="${{ matrix.component }}")."""
    return Step(
        name=name,
        uses=action,
        with_={k: str(v) for k, v in params.items()},
        cwd=cwd,
        condition=when,
        id=id,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def axis(name: str, values: Iterable[object]) -> MatrixAxis:
    return MatrixAxis(name=name, values=tuple(str(v) for v in values))


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Union[str, Sequence[str], None] = None,
    when: Optional[str] = None,
    matrix: Union[Sequence[MatrixAxis], Mapping[str, Iterable[object]], None] = None,
    environment: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    fail_fast: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    display_name: Optional[str] = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final and environment is None:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    if isinstance(needs, str):
        needs = [needs]
    if isinstance(matrix, Mapping):
        matrix = [axis(k, v) for k, v in matrix.items()]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        condition=when,
        matrix=tuple(matrix or ()),
        environment=environment,
        env={k: str(v) for k, v in (env or {}).items()},
        fail_fast=fail_fast,
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------

def rule(
    *,
    events: Union[str, Sequence[str]] = (),
    branches: Union[str, Sequence[str]] = (),
    inputs: Optional[Dict[str, str]] = None,
) -> PromotionRule:
    if isinstance(events, str):
        events = [events]
    if isinstance(branches, str):
        branches = [branches]
    return PromotionRule(events=tuple(events), branches=tuple(branches), inputs=dict(inputs or {}))


def probe(path: str, *, name: Optional[str] = None, expect: tuple[int, int] = (200, 299), timeout: float = 10.0) -> SmokeProbe:
    return SmokeProbe(name=name or path, path=path, expect_min=expect[0], expect_max=expect[1], timeout=timeout)


def environment(
    name: str,
    *rules: PromotionRule,
    requires: Sequence[str] = (),
    secrets: Optional[Dict[str, str]] = None,
    variables: Optional[Dict[str, str]] = None,
    namespace: Optional[str] = None,
    manifests: Optional[str] = None,
    workloads: Sequence[str] = (),
    base_url: Optional[str] = None,
    smoke: Sequence[SmokeProbe] = (),
    rollout_timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
) -> Environment:
    return Environment(
        name=name,
        rules=tuple(rules),
        requires=tuple(requires),
        secrets=dict(secrets or {}),
        variables=dict(variables or {}),
        namespace=namespace,
        manifests=manifests,
        workloads=tuple(workloads),
        base_url=base_url,
        smoke=tuple(smoke),
        rollout_timeout=rollout_timeout,
        poll_interval=poll_interval,
    )


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Job,
    environments: Sequence[Environment] = (),
    push: Optional[Sequence[str]] = None,
    pull_request: Optional[Sequence[str]] = None,
    dispatch: Optional[Sequence[DispatchInput]] = None,
    env: Optional[Dict[str, str]] = None,
    components: Sequence[str] = (),
) -> Pipeline:
    """
    Pipeline definition helper. Use this name so you can define your own
    def pipeline(): return wf("ci", job(...), job(...)).

    Users can write:
        from shipci.dsl import wf, job, sh

        def pipeline():
            return wf(
                "ci",
                job(...),
                job(...),
            )

    Or use PIPELINE directly:
        PIPELINE = wf("ci", job(...), job(...))

    Leaving push, pull_request and dispatch all unset accepts every event.
    """
    triggers = None
    if push is not None or pull_request is not None or dispatch is not None:
        triggers = Triggers(
            push=tuple(push) if push is not None else None,
            pull_request=tuple(pull_request) if pull_request is not None else None,
            dispatch=tuple(dispatch) if dispatch is not None else None,
        )
    return Pipeline(
        name=name,
        jobs=tuple(jobs),
        environments={e.name: e for e in environments},
        triggers=triggers,
        env={k: str(v) for k, v in (env or {}).items()},
        components=tuple(components),
    )


def dispatch_input(name: str, *options: str, default: Optional[str] = None, required: bool = False) -> DispatchInput:
    return DispatchInput(name=name, options=tuple(options), default=default, required=required)


pipeline = wf  # alias; avoid it if your workflow file defines its own pipeline()
