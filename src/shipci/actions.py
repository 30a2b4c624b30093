# actions.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from .artifacts import ArtifactRegistry, artifact_ref
from .context import RunContext
from .errors import StepFailure
from .probes import Prober, http_probe


@dataclass(frozen=True)
class ActionOutcome:
    ok: bool
    output: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass
class ActionContext:
    """What a named action (`uses:`) can see while it runs."""
    job: str
    step: str
    context: RunContext
    workdir: Path
    matrix: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    registry: Optional[ArtifactRegistry] = None
    registry_host: str = "ghcr.io"
    prober: Prober = http_probe


Action = Callable[[Dict[str, str], ActionContext], ActionOutcome]


class ActionRegistry:
    """Name -> callable table for `uses:` steps."""

    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}

    def register(self, name: str, fn: Optional[Action] = None):
        """Register directly or as a decorator: @actions.register("x")."""
        if fn is not None:
            self._actions[name] = fn
            return fn

        def _decorator(f: Action) -> Action:
            self._actions[name] = f
            return f

        return _decorator

    def has(self, name: str) -> bool:
        return _base_name(name) in self._actions

    def get(self, name: str) -> Action:
        return self._actions[_base_name(name)]

    def names(self) -> list[str]:
        return sorted(self._actions)


def _base_name(name: str) -> str:
    # "checkout@v3" resolves to "checkout"
    return name.split("@", 1)[0]


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def _checkout(params: Dict[str, str], ctx: ActionContext) -> ActionOutcome:
    # the workspace is the checkout; nothing to fetch
    return ActionOutcome(ok=True, output=f"workspace {ctx.workdir} at {ctx.context.sha}")


def _publish_artifact(params: Dict[str, str], ctx: ActionContext) -> ActionOutcome:
    component = params.get("component") or ctx.matrix.get("component")
    if not component:
        raise StepFailure(
            job=ctx.job, step=ctx.step, cmd="uses: artifact/publish", exit_code=1,
            stderr="no component given (set with.component or a `component` matrix axis)",
        )
    if ctx.registry is None:
        raise StepFailure(job=ctx.job, step=ctx.step, cmd="uses: artifact/publish", exit_code=1,
                          stderr="no artifact registry configured")
    ref = artifact_ref(ctx.context, component, params.get("registry") or ctx.registry_host)
    ctx.registry.publish(ref, params.get("digest") or ctx.context.sha)
    return ActionOutcome(ok=True, output=f"published {ref.reference}", outputs={"image": ref.reference})


def _http_health(params: Dict[str, str], ctx: ActionContext) -> ActionOutcome:
    url = params.get("url")
    if not url:
        raise StepFailure(job=ctx.job, step=ctx.step, cmd="uses: http/health", exit_code=1,
                          stderr="with.url is required")
    result = ctx.prober(url, float(params.get("timeout", 10)))
    ok = result.status is not None and 200 <= result.status < 300
    detail = f"{url} -> {result.status if result.status is not None else result.error}"
    return ActionOutcome(ok=ok, output=detail)


def default_actions() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("checkout", _checkout)
    registry.register("actions/checkout", _checkout)
    registry.register("artifact/publish", _publish_artifact)
    registry.register("http/health", _http_health)
    return registry


__all__ = [
    "Action",
    "ActionContext",
    "ActionOutcome",
    "ActionRegistry",
    "default_actions",
]
