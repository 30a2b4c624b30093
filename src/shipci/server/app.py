# app.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..artifacts import InMemoryRegistry
from ..context import RunContext
from ..errors import ConfigurationError
from ..gate import DryRunTarget, EnvironmentGate, KubectlTarget
from ..ledger import PromotionLedger, open_ledger
from ..loader import pipeline_from_mapping
from ..locks import LocalLocks, RedisLocks
from ..model import utcnow
from ..report import RunReport
from ..runner import StepRunner
from ..scheduler import CancelToken, ExecutionPlan, Scheduler, compile
from ..settings import Settings
from ..ui.console import get_console

RUNNING = "running"

# -------------------- Schemas --------------------

class TriggerRequest(BaseModel):
    event: str = "push"
    ref: str
    sha: str
    base_ref: Optional[str] = None
    inputs: Dict[str, str] = Field(default_factory=dict)
    repository: str = ""
    actor: str = ""


class CreateRunRequest(BaseModel):
    pipeline: Dict[str, Any]
    trigger: TriggerRequest
    max_workers: Optional[int] = Field(default=None, ge=1)
    fail_fast: bool = False


class CreateRunResponse(BaseModel):
    run_id: str
    status: str
    instances: List[str]


class CancelResponse(BaseModel):
    run_id: str
    status: str


# -------------------- Run store --------------------

@dataclass
class RunRecord:
    run_id: str
    plan: ExecutionPlan
    cancel: CancelToken = field(default_factory=CancelToken)
    report: Optional[RunReport] = None
    error: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        if self.report is not None:
            return self.report.to_dict()
        return {
            "run_id": self.run_id,
            "pipeline": self.plan.pipeline.name,
            "context": self.plan.context.summary(),
            "status": RUNNING if self.error is None else "error",
            "error": self.error,
            "cancel_reason": self.cancel.reason,
            "instances": [{"id": i.id, "status": i.status, "reason": i.reason} for i in self.plan.instances],
        }


class RunStore:
    """In-process registry of submitted runs."""

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: RunRecord) -> None:
        with self._lock:
            self._runs[record.run_id] = record

    def get(self, run_id: str) -> RunRecord:
        with self._lock:
            record = self._runs.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return record


# -------------------- App --------------------

def create_app(
    settings: Optional[Settings] = None,
    *,
    gate: Optional[EnvironmentGate] = None,
    runner: Optional[StepRunner] = None,
    ledger: Optional[PromotionLedger] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    if gate is None:
        ledger = ledger if ledger is not None else open_ledger(settings.ledger_url)
        if settings.redis_url:
            locks = RedisLocks.from_url(settings.redis_url, ttl=settings.lock_seconds)
        else:
            locks = LocalLocks()
        gate = EnvironmentGate(
            KubectlTarget(settings.kubectl),
            ledger,
            locks=locks,
            rollout_timeout=settings.rollout_timeout,
            poll_interval=settings.poll_interval,
        )
    runner = runner or StepRunner(
        registry=InMemoryRegistry(), registry_host=settings.registry, default_timeout=settings.step_timeout
    )
    store = RunStore()

    app = FastAPI(title="shipci control plane")
    app.state.store = store
    app.state.gate = gate

    def execute(record: RunRecord, max_workers: int, fail_fast: bool) -> None:
        try:
            record.report = Scheduler(
                record.plan,
                runner=runner,
                gate=gate,
                max_workers=max_workers,
                fail_fast=fail_fast,
                cancel=record.cancel,
                run_id=record.run_id,
            ).run()
        except Exception as e:
            record.error = f"{type(e).__name__}: {e}"
            get_console().print_exception(e)

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=CreateRunResponse, status_code=202)
    def create_run(req: CreateRunRequest, background: BackgroundTasks):
        try:
            pipeline = pipeline_from_mapping(req.pipeline, source="request body")
            context = RunContext.create(
                req.trigger.event,
                req.trigger.ref,
                req.trigger.sha,
                inputs=req.trigger.inputs or None,
                base_branch=req.trigger.base_ref,
                repository=req.trigger.repository,
                actor=req.trigger.actor,
            )
            plan = compile(pipeline, context)
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=str(e))

        record = RunRecord(run_id=uuid.uuid4().hex[:12], plan=plan)
        store.add(record)
        background.add_task(execute, record, req.max_workers or settings.max_workers, req.fail_fast)
        return CreateRunResponse(
            run_id=record.run_id,
            status=RUNNING,
            instances=[plan.instances[i].id for i in plan.order],
        )

    @app.get("/runs/{run_id}")
    def get_run(run_id: str) -> Dict[str, Any]:
        return store.get(run_id).snapshot()

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        record = store.get(run_id)
        if record.report is not None:
            raise HTTPException(status_code=409, detail=f"Run already {record.report.status}")
        record.cancel.cancel(f"cancelled via API at {utcnow().isoformat()}")
        return CancelResponse(run_id=run_id, status="cancelling")

    @app.get("/promotions/{environment}")
    def promotions(environment: str, limit: int = 50) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in gate.ledger.history(environment, limit=limit)]

    return app


def create_dry_run_app(settings: Optional[Settings] = None) -> FastAPI:
    """Control plane that records deployments instead of applying them."""
    settings = settings or Settings.from_env()
    return create_app(settings, gate=EnvironmentGate(DryRunTarget(), open_ledger(settings.ledger_url)))
