# model.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

# ---------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------

PENDING = "pending"
BLOCKED = "blocked"
RUNNING = "running"
SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"
CANCELLED = "cancelled"

TERMINAL = frozenset({SUCCESS, FAILURE, SKIPPED, CANCELLED})

# forward-only state machine for job instances
_TRANSITIONS: Dict[str, frozenset] = {
    PENDING: frozenset({BLOCKED, RUNNING, SKIPPED, CANCELLED}),
    BLOCKED: frozenset({RUNNING, SKIPPED, CANCELLED}),
    RUNNING: frozenset({SUCCESS, FAILURE, CANCELLED}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------
# Static pipeline definition
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single unit of work inside a job: a shell command or a named action."""
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    condition: Optional[str] = None

    # explicit per-step override: a failure is recorded but does not fail the job
    ignore_failure: bool = False

    timeout: Optional[float] = None
    retries: int = 0
    retry_backoff: float = 2.0

    # referenced as steps.<id>.outputs.<key> by later steps of the job
    id: Optional[str] = None

    @property
    def command(self) -> str:
        """Human readable description of what the step executes."""
        if self.run is not None:
            return self.run
        return f"uses: {self.uses}"


@dataclass(frozen=True)
class MatrixAxis:
    name: str
    values: Tuple[str, ...]


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + trigger condition.

    `needs` holds job *names*; they are resolved into index-based edges
    when the pipeline is compiled.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    condition: Optional[str] = None
    matrix: Tuple[MatrixAxis, ...] = ()
    environment: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    # matrix strategy: cancel unstarted siblings when one instance fails
    fail_fast: bool = False
    display_name: Optional[str] = None


@dataclass(frozen=True)
class PromotionRule:
    """
    One way a run can authorize a deployment.

    Every populated field must match; an empty field matches anything.
    """
    events: Tuple[str, ...] = ()
    branches: Tuple[str, ...] = ()          # glob patterns, e.g. "release/**"
    inputs: Dict[str, str] = field(default_factory=dict)

    @property
    def is_dispatch(self) -> bool:
        return bool(self.inputs)


@dataclass(frozen=True)
class SmokeProbe:
    name: str
    path: str
    expect_min: int = 200
    expect_max: int = 299
    timeout: float = 10.0

    def accepts(self, status: int) -> bool:
        return self.expect_min <= status <= self.expect_max


@dataclass(frozen=True)
class Environment:
    name: str
    rules: Tuple[PromotionRule, ...] = ()
    requires: Tuple[str, ...] = ()
    secrets: Dict[str, str] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    namespace: Optional[str] = None
    manifests: Optional[str] = None
    workloads: Tuple[str, ...] = ()
    base_url: Optional[str] = None
    smoke: Tuple[SmokeProbe, ...] = ()
    rollout_timeout: Optional[float] = None
    poll_interval: Optional[float] = None


@dataclass(frozen=True)
class DispatchInput:
    name: str
    options: Tuple[str, ...] = ()
    default: Optional[str] = None
    required: bool = False


@dataclass(frozen=True)
class Triggers:
    """Which events start the pipeline. `None` means "not configured"."""
    push: Optional[Tuple[str, ...]] = None
    pull_request: Optional[Tuple[str, ...]] = None
    dispatch: Optional[Tuple[DispatchInput, ...]] = None


@dataclass(frozen=True)
class Pipeline:
    name: str
    jobs: Tuple[Job, ...]
    environments: Dict[str, Environment] = field(default_factory=dict)
    triggers: Optional[Triggers] = None
    env: Dict[str, str] = field(default_factory=dict)
    components: Tuple[str, ...] = ()

    def artifact_components(self) -> Tuple[str, ...]:
        """Components promoted by deploy jobs (defaults to any `component` axis)."""
        if self.components:
            return self.components
        for j in self.jobs:
            for ax in j.matrix:
                if ax.name == "component":
                    return ax.values
        return ()


# ---------------------------------------------------------------------
# Run-time results
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: str
    exit_code: Optional[int] = None
    duration: float = 0.0
    stdout: str = ""
    stderr: str = ""
    attempts: int = 0
    error: Optional[str] = None
    ignored: bool = False
    id: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    exports: Dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status == FAILURE and not self.ignored


@dataclass
class GateResult:
    environment: str
    status: str
    kind: Optional[str] = None       # failure kind, see errors.GateFailure
    message: str = ""
    applied: bool = False            # manifests were applied (never rolled back)
    artifacts: List[str] = field(default_factory=list)
    rollout: Dict[str, bool] = field(default_factory=dict)
    probes: List[Dict[str, object]] = field(default_factory=list)


class InvalidTransition(RuntimeError):
    pass


@dataclass
class JobInstance:
    """One schedulable expansion of a Job for a single matrix combination."""
    index: int
    job: Job
    matrix: Dict[str, str] = field(default_factory=dict)
    status: str = PENDING
    reason: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)
    gate: Optional[GateResult] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def id(self) -> str:
        if not self.matrix:
            return self.job.name
        return f"{self.job.name} ({', '.join(self.matrix.values())})"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def transition(self, status: str, reason: Optional[str] = None) -> None:
        with self._lock:
            allowed = _TRANSITIONS.get(self.status, frozenset())
            if status not in allowed:
                raise InvalidTransition(f"{self.id}: {self.status} -> {status} is not allowed")
            self.status = status
            if reason is not None:
                self.reason = reason
            if status == RUNNING:
                self.started_at = utcnow()
            elif status in TERMINAL:
                self.finished_at = utcnow()

    def first_failure(self) -> Optional[StepResult]:
        for s in self.steps:
            if s.failed:
                return s
        return None
