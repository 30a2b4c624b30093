# loader.py
"""
Pipeline definition loading.

Two formats:

  shipci.yml           declarative, GitHub-Actions shaped; validated with
                       pydantic models, then converted into model objects
  shipci_workflow.py   Python file defining pipeline() or PIPELINE, built
                       with the helpers in shipci.dsl
"""
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
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

Scalar = Union[str, int, float, bool]


def _text(value: Scalar) -> str:
    # YAML turns `true`/`18` into bool/int; steps only ever see strings
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _listify(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


# -------------------- Schemas --------------------

class _Definition(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepDefinition(_Definition):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Scalar] = Field(default_factory=dict, alias="with")
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes")
    timeout: Optional[float] = None
    retries: int = Field(default=0, ge=0)
    retry_backoff: float = Field(default=2.0, alias="retry-backoff", ge=0)
    id: Optional[str] = None


class StrategyDefinition(_Definition):
    matrix: Dict[str, List[Scalar]] = Field(default_factory=dict)
    fail_fast: bool = Field(default=False, alias="fail-fast")


class JobDefinition(_Definition):
    name: Optional[str] = None
    runs_on: Optional[Union[str, List[str]]] = Field(default=None, alias="runs-on")
    needs: Union[str, List[str], None] = None
    if_: Optional[str] = Field(default=None, alias="if")
    strategy: Optional[StrategyDefinition] = None
    environment: Optional[str] = None
    env: Dict[str, Scalar] = Field(default_factory=dict)
    steps: List[StepDefinition] = Field(default_factory=list)


class RuleDefinition(_Definition):
    events: Union[str, List[str], None] = None
    branches: Union[str, List[str], None] = None
    inputs: Dict[str, Scalar] = Field(default_factory=dict)


class ProbeDefinition(_Definition):
    name: Optional[str] = None
    path: str
    expect: List[int] = Field(default_factory=lambda: [200, 299], min_length=2, max_length=2)
    timeout: float = 10.0


class EnvironmentDefinition(_Definition):
    rules: List[RuleDefinition] = Field(default_factory=list)
    requires: Union[str, List[str], None] = None
    secrets: Dict[str, str] = Field(default_factory=dict)
    variables: Dict[str, Scalar] = Field(default_factory=dict)
    namespace: Optional[str] = None
    manifests: Optional[str] = None
    workloads: List[str] = Field(default_factory=list)
    base_url: Optional[str] = Field(default=None, alias="base-url")
    smoke: List[ProbeDefinition] = Field(default_factory=list)
    rollout_timeout: Optional[float] = Field(default=None, alias="rollout-timeout")
    poll_interval: Optional[float] = Field(default=None, alias="poll-interval")


class BranchFilter(_Definition):
    branches: List[str] = Field(default_factory=list)


class InputDefinition(_Definition):
    description: Optional[str] = None
    required: bool = False
    default: Optional[Scalar] = None
    type: Optional[str] = None
    options: List[Scalar] = Field(default_factory=list)


class DispatchDefinition(_Definition):
    inputs: Dict[str, InputDefinition] = Field(default_factory=dict)


class TriggerDefinition(_Definition):
    push: Optional[BranchFilter] = None
    pull_request: Optional[BranchFilter] = None
    workflow_dispatch: Optional[DispatchDefinition] = None

    @field_validator("push", "pull_request", "workflow_dispatch", mode="before")
    @classmethod
    def _empty_is_enabled(cls, v: Any) -> Any:
        # `push:` with no body means "every branch"
        return {} if v is None else v


class PipelineDefinition(_Definition):
    name: str = "pipeline"
    on: Optional[TriggerDefinition] = None
    env: Dict[str, Scalar] = Field(default_factory=dict)
    components: List[str] = Field(default_factory=list)
    environments: Dict[str, EnvironmentDefinition] = Field(default_factory=dict)
    jobs: Dict[str, JobDefinition]


# -------------------- Conversion --------------------

def _step(d: StepDefinition, position: int) -> Step:
    name = d.name or (d.run.splitlines()[0] if d.run else d.uses) or f"step {position}"
    timeout = d.timeout
    if d.timeout_minutes is not None:
        timeout = d.timeout_minutes * 60
    return Step(
        name=name,
        run=d.run,
        uses=d.uses,
        with_={k: _text(v) for k, v in d.with_.items()},
        cwd=d.working_directory,
        env={k: _text(v) for k, v in d.env.items()},
        condition=d.if_,
        ignore_failure=d.continue_on_error,
        timeout=timeout,
        retries=d.retries,
        retry_backoff=d.retry_backoff,
        id=d.id,
    )


def _job(name: str, d: JobDefinition) -> Job:
    strategy = d.strategy or StrategyDefinition()
    return Job(
        name=name,
        steps=tuple(_step(s, i) for i, s in enumerate(d.steps, start=1)),
        needs=tuple(_listify(d.needs)),
        condition=d.if_,
        matrix=tuple(MatrixAxis(axis, tuple(_text(v) for v in values)) for axis, values in strategy.matrix.items()),
        environment=d.environment,
        env={k: _text(v) for k, v in d.env.items()},
        fail_fast=strategy.fail_fast,
        display_name=d.name,
    )


def _environment(name: str, d: EnvironmentDefinition) -> Environment:
    return Environment(
        name=name,
        rules=tuple(
            PromotionRule(
                events=tuple(_listify(r.events)),
                branches=tuple(_listify(r.branches)),
                inputs={k: _text(v) for k, v in r.inputs.items()},
            )
            for r in d.rules
        ),
        requires=tuple(_listify(d.requires)),
        secrets=dict(d.secrets),
        variables={k: _text(v) for k, v in d.variables.items()},
        namespace=d.namespace,
        manifests=d.manifests,
        workloads=tuple(d.workloads),
        base_url=d.base_url,
        smoke=tuple(
            SmokeProbe(
                name=p.name or p.path,
                path=p.path,
                expect_min=p.expect[0],
                expect_max=p.expect[1],
                timeout=p.timeout,
            )
            for p in d.smoke
        ),
        rollout_timeout=d.rollout_timeout,
        poll_interval=d.poll_interval,
    )


def _triggers(d: Optional[TriggerDefinition]) -> Optional[Triggers]:
    if d is None:
        return None
    dispatch = None
    if d.workflow_dispatch is not None:
        dispatch = tuple(
            DispatchInput(
                name=name,
                options=tuple(_text(o) for o in i.options),
                default=_text(i.default) if i.default is not None else None,
                required=i.required,
            )
            for name, i in d.workflow_dispatch.inputs.items()
        )
    return Triggers(
        push=tuple(d.push.branches) if d.push is not None else None,
        pull_request=tuple(d.pull_request.branches) if d.pull_request is not None else None,
        dispatch=dispatch,
    )


def _problems(exc: ValidationError) -> List[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        out.append(f"{loc}: {err['msg']}")
    return out


def pipeline_from_mapping(data: Mapping[str, Any], *, source: str = "<mapping>") -> Pipeline:
    """Validate a raw definition (parsed YAML, JSON request body) into a Pipeline."""
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{source}: pipeline definition must be a mapping, got {type(data).__name__}")

    raw = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean true
    if True in raw and "on" not in raw:
        raw["on"] = raw.pop(True)

    try:
        definition = PipelineDefinition.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pipeline definition in {source}", problems=_problems(e)) from None

    return Pipeline(
        name=definition.name,
        jobs=tuple(_job(name, j) for name, j in definition.jobs.items()),
        environments={name: _environment(name, e) for name, e in definition.environments.items()},
        triggers=_triggers(definition.on),
        env={k: _text(v) for k, v in definition.env.items()},
        components=tuple(definition.components),
    )


def load_yaml(path: str | Path) -> Pipeline:
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {p.name}: {e}") from None
    return pipeline_from_mapping(data or {}, source=p.name)


def load_python(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file.

    The file must define either:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    wf_path = Path(path).expanduser().resolve()
    module_name = f"shipci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    result = None
    fn = globals_dict.get("pipeline")
    if callable(fn) and getattr(fn, "__module__", None) == module_name:
        result = fn()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]

    if not isinstance(result, Pipeline):
        raise ConfigurationError(
            f"{wf_path.name} must define pipeline() -> Pipeline or PIPELINE = Pipeline(...). "
            "Build it with the helpers: `from shipci.dsl import wf, job, sh`."
        )
    return result


def load_pipeline(path: str | Path) -> Pipeline:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Pipeline file not found: {p}")
    if p.suffix in (".yml", ".yaml"):
        return load_yaml(p)
    if p.suffix == ".py":
        return load_python(p)
    raise ConfigurationError(f"Unsupported pipeline file {p.name}: expected .yml, .yaml or .py")


__all__ = [
    "PipelineDefinition",
    "JobDefinition",
    "StepDefinition",
    "EnvironmentDefinition",
    "pipeline_from_mapping",
    "load_pipeline",
    "load_python",
    "load_yaml",
]
