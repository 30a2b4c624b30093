# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


class ShipCIError(Exception):
    """Base class for every error raised by shipci."""


# ----------------------------------------------------------------------
# Compile-time errors (fatal, block the whole run)
# ----------------------------------------------------------------------

class ConfigurationError(ShipCIError):
    """
    The pipeline definition (or the trigger bound to it) is invalid.

    Raised while loading or compiling a pipeline, before any step executes.
    """

    def __init__(self, message: str, *, problems: Optional[List[str]] = None):
        self.message = message
        self.problems = list(problems or [])
        super().__init__(message)

    def __str__(self) -> str:
        if not self.problems:
            return self.message
        lines = [self.message]
        lines.extend(f"  - {p}" for p in self.problems)
        return "\n".join(lines)


class CyclicDependencyError(ConfigurationError):
    """A cycle exists among the jobs' `needs`."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency between jobs: {' -> '.join(self.cycle)}")


# ----------------------------------------------------------------------
# Run-time errors (local to one job instance)
# ----------------------------------------------------------------------

@dataclass
class StepFailure(ShipCIError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class GateFailure(ShipCIError):
    """
    A deploy gate did not promote.

    kind is one of:
      - "promotion_order"  (a required upstream environment has not promoted this artifact)
      - "deploy"           (manifest apply failed)
      - "rollout_timeout"  (workloads never became ready)
      - "smoke_test"       (rollout succeeded, a probe failed; manifest stays applied)
    """
    environment: str
    kind: str
    message: str
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"environment={self.environment}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class CancellationError(ShipCIError):
    reason: str

    def __str__(self) -> str:
        return f"run cancelled: {self.reason}"


class ArtifactConflictError(ShipCIError):
    """An immutable artifact tag was about to be overwritten."""


class LockTimeout(ShipCIError):
    """An environment deploy lock could not be acquired in time."""
