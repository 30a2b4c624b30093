# gate.py
"""
Environment gate: the check-and-deploy unit guarding an environment.

promote() runs, in order:

  1. promotion rules      no match -> skipped, zero side effects
  2. deploy lock          one deploy per environment at a time
  3. promotion order      e.g. production needs staging to have promoted this SHA
  4. binding              environment-scoped variables + secrets
  5. pre-deploy steps     the deploy job's own steps (optional callback)
  6. apply                manifests pinned to sha-<short> image tags
  7. rollout              poll until every workload is ready, or time out
  8. smoke tests          HTTP probes against the environment's base URL

A failing smoke test leaves the applied manifests in place; nothing is
rolled back automatically. Every attempt that passes step 1 is written to
the promotion ledger.
"""
from __future__ import annotations

import json
import os
import re
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .artifacts import ArtifactRef
from .context import RunContext
from .errors import GateFailure, LockTimeout
from .ledger import InMemoryLedger, PromotionLedger, PromotionRecord
from .locks import EnvironmentLocks, LocalLocks
from .model import FAILURE, SKIPPED, SUCCESS, Environment, GateResult, PromotionRule
from .probes import Prober, http_probe, join_url


# ---------------------------------------------------------------------
# Environment binding
# ---------------------------------------------------------------------

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(frozen=True)
class EnvironmentBinding:
    """Variables and secrets of exactly one environment."""
    environment: str
    variables: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)

    def as_env(self) -> Dict[str, str]:
        env = dict(self.variables)
        env.update(self.secrets)
        return env

    def secret_values(self) -> Tuple[str, ...]:
        return tuple(v for v in self.secrets.values() if v)


def _resolve(value: str, environ: Mapping[str, str], *, environment: str, name: str) -> str:
    def _sub(m: "re.Match[str]") -> str:
        var = m.group(1)
        if var not in environ:
            raise GateFailure(
                environment=environment,
                kind="binding",
                message=f"'{name}' references unset variable {var}",
            )
        return environ[var]

    return _VAR_RE.sub(_sub, value)


def bind(environment: Environment, environ: Optional[Mapping[str, str]] = None) -> EnvironmentBinding:
    environ = os.environ if environ is None else environ
    variables = {
        k: _resolve(v, environ, environment=environment.name, name=k) for k, v in environment.variables.items()
    }
    secrets = {k: _resolve(v, environ, environment=environment.name, name=k) for k, v in environment.secrets.items()}
    return EnvironmentBinding(environment=environment.name, variables=variables, secrets=secrets)


# ---------------------------------------------------------------------
# Promotion rules
# ---------------------------------------------------------------------

def rule_matches(rule: PromotionRule, context: RunContext) -> bool:
    if rule.events and context.event not in rule.events:
        return False
    if rule.branches and not any(fnmatch(context.branch, p) for p in rule.branches):
        return False
    for name, expected in rule.inputs.items():
        if context.inputs.get(name) != expected:
            return False
    return True


def match_rule(environment: Environment, context: RunContext) -> Optional[PromotionRule]:
    """First rule (in declaration order) that authorizes this run, if any."""
    for rule in environment.rules:
        if rule_matches(rule, context):
            return rule
    return None


# ---------------------------------------------------------------------
# Deployment targets
# ---------------------------------------------------------------------

class DeploymentTarget(Protocol):
    def apply(self, environment: Environment, artifacts: Sequence[ArtifactRef], binding: EnvironmentBinding) -> str: ...

    def rollout_status(self, environment: Environment, binding: EnvironmentBinding) -> Dict[str, bool]: ...


_IMAGE_LINE_RE = re.compile(r"^(?P<prefix>\s*-?\s*image:\s*)(?P<quote>[\"']?)(?P<image>[^\s\"']+)(?P=quote)\s*$")


def _image_name(image: str) -> str:
    # ghcr.io/acme/app/backend:sha-123 -> backend
    repo = image.split("@", 1)[0]
    last = repo.rsplit("/", 1)[-1]
    return last.split(":", 1)[0]


def rewrite_images(manifest: str, artifacts: Sequence[ArtifactRef]) -> str:
    """Pin every `image:` line whose image name is a component to that component's artifact."""
    by_component = {a.component: a for a in artifacts}
    out = []
    for line in manifest.splitlines(keepends=True):
        m = _IMAGE_LINE_RE.match(line.rstrip("\r\n"))
        if m and _image_name(m.group("image")) in by_component:
            ending = line[len(line.rstrip("\r\n")):]
            line = f"{m.group('prefix')}{by_component[_image_name(m.group('image'))].reference}{ending}"
        out.append(line)
    return "".join(out)


def deployment_ready(obj: dict) -> bool:
    """Judge a `kubectl get deployment -o json` document the way `rollout status` does."""
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    meta = obj.get("metadata") or {}
    desired = spec.get("replicas", 1)

    generation = meta.get("generation")
    observed = status.get("observedGeneration")
    if generation is not None and (observed is None or observed < generation):
        return False

    updated = status.get("updatedReplicas", 0)
    if updated < desired:
        return False
    if status.get("replicas", 0) > updated:
        # old replicas still terminating
        return False
    return status.get("availableReplicas", 0) >= desired and status.get("readyReplicas", 0) >= desired


class KubectlTarget:
    """Applies manifests and reads rollout state through the kubectl CLI."""

    def __init__(self, kubectl: str = "kubectl", workdir: str | Path = "."):
        self.kubectl = kubectl
        self.workdir = Path(workdir).resolve()

    def _run(self, args: List[str], environment: Environment, binding: EnvironmentBinding) -> str:
        cmd = [self.kubectl, *args]
        if environment.namespace:
            cmd.extend(["-n", environment.namespace])
        env = os.environ.copy()
        env.update(binding.as_env())
        try:
            proc = subprocess.run(cmd, cwd=str(self.workdir), env=env, text=True, capture_output=True)
        except FileNotFoundError:
            raise GateFailure(
                environment=environment.name,
                kind="deploy",
                message=f"{self.kubectl} not found",
                details={"hint": "Install kubectl or set SHIPCI_KUBECTL."},
            ) from None
        if proc.returncode != 0:
            raise GateFailure(
                environment=environment.name,
                kind="deploy",
                message=f"{' '.join(cmd[:3])} failed (exit={proc.returncode})",
                details={"stderr": proc.stderr[-2000:]},
            )
        return proc.stdout

    def apply(self, environment: Environment, artifacts: Sequence[ArtifactRef], binding: EnvironmentBinding) -> str:
        if not environment.manifests:
            raise GateFailure(environment=environment.name, kind="deploy", message="no manifests directory configured")
        src = self.workdir / environment.manifests
        files = sorted(p for p in src.iterdir() if p.suffix in (".yml", ".yaml")) if src.is_dir() else []
        if not files:
            raise GateFailure(environment=environment.name, kind="deploy", message=f"no manifests found in {src}")

        with tempfile.TemporaryDirectory(prefix=f"shipci-{environment.name}-") as tmp:
            for path in files:
                (Path(tmp) / path.name).write_text(rewrite_images(path.read_text(), artifacts))
            return self._run(["apply", "-f", tmp], environment, binding)

    def rollout_status(self, environment: Environment, binding: EnvironmentBinding) -> Dict[str, bool]:
        status: Dict[str, bool] = {}
        for workload in environment.workloads:
            out = self._run(["get", f"deployment/{workload}", "-o", "json"], environment, binding)
            try:
                status[workload] = deployment_ready(json.loads(out))
            except json.JSONDecodeError:
                status[workload] = False
        return status


class DryRunTarget:
    """Records what would be applied and reports every workload ready."""

    def __init__(self) -> None:
        self.applied: List[Tuple[str, List[str]]] = []

    def apply(self, environment: Environment, artifacts: Sequence[ArtifactRef], binding: EnvironmentBinding) -> str:
        refs = [a.reference for a in artifacts]
        self.applied.append((environment.name, refs))
        return "\n".join(f"would apply {r}" for r in refs)

    def rollout_status(self, environment: Environment, binding: EnvironmentBinding) -> Dict[str, bool]:
        return {w: True for w in environment.workloads}


# ---------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------

# callback running the deploy job's own steps with the binding; returns a status
PreDeploy = Callable[[EnvironmentBinding], str]


class EnvironmentGate:
    def __init__(
        self,
        target: DeploymentTarget,
        ledger: Optional[PromotionLedger] = None,
        *,
        locks: Optional[EnvironmentLocks] = None,
        prober: Prober = http_probe,
        rollout_timeout: float = 600.0,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.target = target
        self.ledger = ledger if ledger is not None else InMemoryLedger()
        self.locks = locks or LocalLocks()
        self.prober = prober
        self.rollout_timeout = rollout_timeout
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.clock = clock
        self.environ = environ

    # ------------------------------------------------------------------

    def authorize(self, environment: Environment, context: RunContext) -> Optional[PromotionRule]:
        return match_rule(environment, context)

    def check_order(self, environment: Environment, context: RunContext, rule: PromotionRule) -> None:
        if rule.is_dispatch and context.is_dispatch:
            # explicit manual dispatch straight to this environment
            return
        for upstream in environment.requires:
            last = self.ledger.latest(upstream, context.sha)
            if last is None or last.status != SUCCESS:
                seen = "never promoted" if last is None else f"last promotion {last.status}"
                raise GateFailure(
                    environment=environment.name,
                    kind="promotion_order",
                    message=f"{upstream} has not successfully promoted {context.short_sha} ({seen})",
                    details={"requires": upstream},
                )

    def promote(
        self,
        environment: Environment,
        artifacts: Sequence[ArtifactRef],
        context: RunContext,
        *,
        before_deploy: Optional[PreDeploy] = None,
        run_id: Optional[str] = None,
    ) -> GateResult:
        refs = [a.reference for a in artifacts]
        rule = self.authorize(environment, context)
        if rule is None:
            return GateResult(
                environment=environment.name,
                status=SKIPPED,
                message=f"no promotion rule of '{environment.name}' matches {context.event} on {context.branch}",
                artifacts=refs,
            )

        result = GateResult(environment=environment.name, status=SUCCESS, artifacts=refs)
        try:
            with self.locks.hold(environment.name):
                self.check_order(environment, context, rule)
                binding = bind(environment, self.environ)

                if before_deploy is not None:
                    outcome = before_deploy(binding)
                    if outcome != SUCCESS:
                        result.status = outcome
                        result.kind = "steps" if outcome == FAILURE else None
                        result.message = "deploy job steps did not succeed"
                        if outcome == FAILURE:
                            self._record(result, context, run_id)
                        return result

                self._deploy(environment, artifacts, binding, result)
        except LockTimeout as e:
            result.status, result.kind, result.message = FAILURE, "lock_timeout", str(e)
            return result
        except GateFailure as e:
            result.status, result.kind, result.message = FAILURE, e.kind, e.message

        self._record(result, context, run_id)
        return result

    # ------------------------------------------------------------------

    def _deploy(
        self,
        environment: Environment,
        artifacts: Sequence[ArtifactRef],
        binding: EnvironmentBinding,
        result: GateResult,
    ) -> None:
        self.target.apply(environment, artifacts, binding)
        result.applied = True
        self._wait_for_rollout(environment, binding, result)
        self._smoke(environment, result)
        result.message = f"promoted {len(artifacts)} artifact(s) to {environment.name}"

    def _wait_for_rollout(self, environment: Environment, binding: EnvironmentBinding, result: GateResult) -> None:
        timeout = environment.rollout_timeout if environment.rollout_timeout is not None else self.rollout_timeout
        interval = environment.poll_interval if environment.poll_interval is not None else self.poll_interval
        deadline = self.clock() + timeout

        while True:
            status = self.target.rollout_status(environment, binding)
            result.rollout = dict(status)
            if all(status.values()):
                return
            remaining = deadline - self.clock()
            if remaining <= 0:
                pending = sorted(w for w, ok in status.items() if not ok)
                raise GateFailure(
                    environment=environment.name,
                    kind="rollout_timeout",
                    message=f"workloads not ready after {timeout:g}s: {', '.join(pending)}",
                )
            self.sleep(min(interval, remaining))

    def _smoke(self, environment: Environment, result: GateResult) -> None:
        for probe in environment.smoke:
            url = join_url(environment.base_url or "", probe.path)
            res = self.prober(url, probe.timeout)
            ok = res.status is not None and probe.accepts(res.status)
            result.probes.append({"name": probe.name, "ok": ok, **res.to_dict()})
            if not ok:
                raise GateFailure(
                    environment=environment.name,
                    kind="smoke_test",
                    message=f"probe '{probe.name}' failed: {url} -> {res.status if res.status is not None else res.error}",
                )

    def _record(self, result: GateResult, context: RunContext, run_id: Optional[str]) -> None:
        if result.status not in (SUCCESS, FAILURE):
            return
        self.ledger.record(
            PromotionRecord(
                environment=result.environment,
                artifact=context.sha,
                status=result.status,
                kind=result.kind,
                run_id=run_id,
            )
        )


__all__ = [
    "DeploymentTarget",
    "DryRunTarget",
    "EnvironmentBinding",
    "EnvironmentGate",
    "KubectlTarget",
    "bind",
    "deployment_ready",
    "match_rule",
    "rewrite_images",
    "rule_matches",
]
