# context.py
from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatch
from types import MappingProxyType
from typing import Mapping, Optional

from .errors import ConfigurationError
from .model import Pipeline, Triggers

PUSH = "push"
PULL_REQUEST = "pull_request"
WORKFLOW_DISPATCH = "workflow_dispatch"

EVENT_KINDS = (PUSH, PULL_REQUEST, WORKFLOW_DISPATCH)


def branch_from_ref(ref: str) -> str:
    """refs/heads/develop -> develop (bare branch names pass through)."""
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


@dataclass(frozen=True)
class RunContext:
    """
    Immutable description of what triggered the current run.

    Created once via RunContext.create() and carried read-only through
    compilation, scheduling and every gate.
    """
    event: str
    ref: str
    branch: str
    sha: str
    inputs: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    base_branch: Optional[str] = None
    repository: str = ""
    actor: str = ""

    @classmethod
    def create(
        cls,
        event: str,
        ref: str,
        sha: str,
        *,
        inputs: Optional[Mapping[str, str]] = None,
        base_branch: Optional[str] = None,
        repository: str = "",
        actor: str = "",
    ) -> "RunContext":
        if event not in EVENT_KINDS:
            raise ConfigurationError(
                f"Unknown event kind {event!r}. Expected one of: {', '.join(EVENT_KINDS)}"
            )
        if not sha:
            raise ConfigurationError("A commit SHA is required to start a run")
        if inputs and event != WORKFLOW_DISPATCH:
            raise ConfigurationError("Dispatch inputs are only valid for workflow_dispatch runs")

        full_ref = ref if ref.startswith("refs/") else f"refs/heads/{ref}"
        return cls(
            event=event,
            ref=full_ref,
            branch=branch_from_ref(full_ref),
            sha=sha,
            inputs=MappingProxyType({k: str(v) for k, v in (inputs or {}).items()}),
            base_branch=branch_from_ref(base_branch) if base_branch else None,
            repository=repository,
            actor=actor,
        )

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    @property
    def is_dispatch(self) -> bool:
        return self.event == WORKFLOW_DISPATCH

    def summary(self) -> dict:
        return {
            "event": self.event,
            "ref": self.ref,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "sha": self.sha,
            "inputs": dict(self.inputs),
            "repository": self.repository,
        }


# ---------------------------------------------------------------------
# Binding a context to a pipeline's trigger declarations
# ---------------------------------------------------------------------

def bind_inputs(pipeline: Pipeline, context: RunContext) -> RunContext:
    """
    Apply the pipeline's dispatch input declarations to a context.

    Missing inputs take their declared default; values outside the
    declared options are configuration errors.
    """
    triggers = pipeline.triggers
    if not context.is_dispatch or triggers is None or triggers.dispatch is None:
        return context

    declared = {d.name: d for d in triggers.dispatch}
    unknown = sorted(set(context.inputs) - set(declared))
    if unknown:
        raise ConfigurationError(f"Unknown dispatch input(s): {unknown}. Declared: {sorted(declared)}")

    values = dict(context.inputs)
    problems = []
    for name, decl in declared.items():
        if name not in values:
            if decl.default is not None:
                values[name] = decl.default
            elif decl.required:
                problems.append(f"input '{name}' is required")
            continue
        if decl.options and values[name] not in decl.options:
            problems.append(f"input '{name}'={values[name]!r} is not one of {list(decl.options)}")
    if problems:
        raise ConfigurationError("Invalid dispatch inputs", problems=problems)

    return RunContext(
        event=context.event,
        ref=context.ref,
        branch=context.branch,
        sha=context.sha,
        inputs=MappingProxyType(values),
        base_branch=context.base_branch,
        repository=context.repository,
        actor=context.actor,
    )


def is_triggered(triggers: Optional[Triggers], context: RunContext) -> bool:
    """True when the pipeline's `on:` block accepts this event (no block accepts everything)."""
    if triggers is None:
        return True
    if context.event == PUSH:
        return triggers.push is not None and _branch_allowed(triggers.push, context.branch)
    if context.event == PULL_REQUEST:
        target = context.base_branch or context.branch
        return triggers.pull_request is not None and _branch_allowed(triggers.pull_request, target)
    return triggers.dispatch is not None


def _branch_allowed(patterns, branch: str) -> bool:
    # empty list: every branch
    return not patterns or any(fnmatch(branch, p) for p in patterns)
