# report.py
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .model import FAILURE, GateResult, JobInstance, StepResult


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def _step_dict(s: StepResult) -> Dict[str, Any]:
    return {
        "name": s.name,
        "id": s.id,
        "status": s.status,
        "exit_code": s.exit_code,
        "duration": round(s.duration, 3),
        "attempts": s.attempts,
        "ignored": s.ignored,
        "error": s.error,
        "stdout": s.stdout,
        "stderr": s.stderr,
        "outputs": dict(s.outputs),
    }


@dataclass
class InstanceReport:
    id: str
    job: str
    matrix: Dict[str, str]
    status: str
    reason: Optional[str]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    steps: List[StepResult] = field(default_factory=list)
    gate: Optional[GateResult] = None

    @classmethod
    def from_instance(cls, inst: JobInstance) -> "InstanceReport":
        return cls(
            id=inst.id,
            job=inst.job.name,
            matrix=dict(inst.matrix),
            status=inst.status,
            reason=inst.reason,
            started_at=inst.started_at,
            finished_at=inst.finished_at,
            steps=list(inst.steps),
            gate=inst.gate,
        )

    @property
    def first_failure(self) -> Optional[StepResult]:
        for s in self.steps:
            if s.failed:
                return s
        return None

    @property
    def failure_kind(self) -> Optional[str]:
        """step | <gate failure kind> | None"""
        if self.status != FAILURE:
            return None
        if self.first_failure is not None:
            return "step"
        if self.gate is not None and self.gate.kind:
            return self.gate.kind
        return None

    def to_dict(self) -> Dict[str, Any]:
        first = self.first_failure
        return {
            "id": self.id,
            "job": self.job,
            "matrix": self.matrix,
            "status": self.status,
            "reason": self.reason,
            "failure_kind": self.failure_kind,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "steps": [_step_dict(s) for s in self.steps],
            "first_failure": _step_dict(first) if first is not None else None,
            "gate": asdict(self.gate) if self.gate is not None else None,
        }


@dataclass
class RunReport:
    run_id: str
    pipeline: str
    context: Dict[str, Any]
    status: str
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    instances: List[InstanceReport]
    order: List[str] = field(default_factory=list)   # ids in the order they were started
    cancel_reason: Optional[str] = None

    def by_id(self) -> Dict[str, InstanceReport]:
        return {i.id: i for i in self.instances}

    def statuses(self) -> Dict[str, str]:
        return {i.id: i.status for i in self.instances}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "context": self.context,
            "status": self.status,
            "cancel_reason": self.cancel_reason,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "order": list(self.order),
            "instances": [i.to_dict() for i in self.instances],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=False)
