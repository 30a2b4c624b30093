# runner.py
from __future__ import annotations

import os
import shlex
import signal
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Tuple

from .actions import ActionContext, ActionRegistry, default_actions
from .artifacts import ArtifactRegistry
from .conditions import Scope, evaluate, render
from .errors import StepFailure
from .model import FAILURE, SKIPPED, SUCCESS, Step, StepResult
from .probes import Prober, http_probe

OUTPUT_TAIL = 4000
TIMEOUT_EXIT_CODE = 124
MAX_BACKOFF = 60.0

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "flake8": "Install flake8 (e.g., pip install flake8).",
    "black": "Install black (e.g., pip install black).",
    "docker": "Install Docker and ensure the daemon is running.",
    "kubectl": "Install kubectl or set SHIPCI_KUBECTL.",
    "aws": "Install the AWS CLI or fix PATH.",
    "trivy": "Install trivy or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


def compute_backoff(attempt: int, base: float = 2.0) -> float:
    """Exponential backoff before retry number `attempt` (1-based)."""
    return min(MAX_BACKOFF, base * (2 ** (attempt - 1)))


def _tail(text) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-OUTPUT_TAIL:]


def _mask(text: str, secrets: Iterable[str]) -> str:
    for s in secrets:
        if s:
            text = text.replace(s, "***")
    return text


def _tool_hint(cmd: str) -> Optional[str]:
    try:
        first = shlex.split(cmd)[0]
    except (ValueError, IndexError):
        return None
    return TOOL_HINTS.get(os.path.basename(first))


def read_key_values(path: Path) -> Dict[str, str]:
    """
    Parse a step output / env file.

    Lines are `key=value`; `key<<EOF` starts a multi-line value that runs
    until a line holding only the delimiter. Later keys win.
    """
    values: Dict[str, str] = {}
    if not path.exists():
        return values
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delimiter = line.split("<<", 1)
            body = []
            while i < len(lines) and lines[i] != delimiter:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"{path.name}: value of '{key}' is not terminated by '{delimiter}'")
            i += 1
            values[key.strip()] = "\n".join(body)
        elif "=" in line:
            key, value = line.split("=", 1)
            values[key.strip()] = value
        else:
            raise ValueError(f"{path.name}: expected key=value, got {line!r}")
    return values


class StepRunner:
    """
    Executes single steps: shell commands or named actions.

    Output is captured (tails only), the working directory is scoped to
    `workdir / step.cwd`, and the caller-provided environment is layered
    on top of os.environ.
    """

    def __init__(
        self,
        workdir: str | Path = ".",
        *,
        actions: Optional[ActionRegistry] = None,
        registry: Optional[ArtifactRegistry] = None,
        registry_host: str = "ghcr.io",
        prober: Prober = http_probe,
        default_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.workdir = Path(workdir).resolve()
        self.actions = actions or default_actions()
        self.registry = registry
        self.registry_host = registry_host
        self.prober = prober
        self.default_timeout = default_timeout
        self.sleep = sleep

    def run(
        self,
        step: Step,
        *,
        job: str,
        scope: Scope,
        env: Optional[Dict[str, str]] = None,
        secrets: Iterable[str] = (),
        cancelled: Callable[[], bool] = lambda: False,
    ) -> StepResult:
        if step.condition and not evaluate(
            step.condition,
            scope.context,
            matrix=scope.matrix,
            needs=scope.needs,
            cancelled=scope.cancelled,
            steps=scope.steps,
        ):
            return StepResult(name=step.name, id=step.id, status=SKIPPED, error="condition evaluated to false")

        secrets = tuple(secrets)
        step_env = dict(env or {})
        step_env.update({k: render(v, scope) for k, v in step.env.items()})

        with tempfile.TemporaryDirectory(prefix="shipci-step-") as tmp:
            output_file = Path(tmp) / "output"
            env_file = Path(tmp) / "env"
            step_env["SHIPCI_OUTPUT"] = str(output_file)
            step_env["SHIPCI_ENV"] = str(env_file)

            start = time.monotonic()
            attempts = 0
            while True:
                attempts += 1
                # each attempt starts from empty files
                output_file.write_text("")
                env_file.write_text("")
                exit_code, stdout, stderr, error, action_outputs = self._attempt(step, job, scope, step_env)
                if exit_code == 0 or attempts > step.retries or cancelled():
                    break
                self.sleep(compute_backoff(attempts, step.retry_backoff))
            duration = time.monotonic() - start

            try:
                outputs = read_key_values(output_file)
                exports = read_key_values(env_file)
            except ValueError as e:
                outputs, exports = {}, {}
                if exit_code == 0:
                    exit_code, error = 1, f"[{job}] step '{step.name}' wrote a malformed file: {e}"
        outputs.update(action_outputs)

        ok = exit_code == 0
        return StepResult(
            name=step.name,
            id=step.id,
            status=SUCCESS if ok else FAILURE,
            exit_code=exit_code,
            duration=duration,
            stdout=_mask(stdout, secrets),
            stderr=_mask(stderr, secrets),
            attempts=attempts,
            error=None if ok else (_mask(error, secrets) if error else None),
            ignored=(not ok) and step.ignore_failure,
            outputs=outputs,
            exports=exports,
        )

    # ------------------------------------------------------------------

    def _attempt(
        self, step: Step, job: str, scope: Scope, env: Dict[str, str]
    ) -> Tuple[Optional[int], str, str, Optional[str], Dict[str, str]]:
        cwd = (self.workdir / render(step.cwd or ".", scope)).resolve()
        if not cwd.is_dir():
            return None, "", "", f"[{job}] step '{step.name}' cwd not found: {cwd}", {}

        if step.uses is not None:
            return self._run_action(step, job, scope, cwd, env)
        return self._run_shell(step, job, scope, cwd, env)

    def _run_shell(self, step: Step, job: str, scope: Scope, cwd: Path, env: Dict[str, str]):
        cmd = render(step.run or "", scope)
        full_env = os.environ.copy()
        full_env.update(env)
        timeout = step.timeout or self.default_timeout

        # own process group, so a timeout can take down everything the shell started
        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=full_env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            stdout, stderr = proc.communicate()
            return TIMEOUT_EXIT_CODE, _tail(stdout), _tail(stderr), f"timeout: step exceeded {timeout}s", {}
        except BaseException:
            _kill_group(proc)
            proc.wait()
            raise

        error = None
        if proc.returncode != 0:
            error = str(StepFailure(job=job, step=step.name, cmd=cmd, exit_code=proc.returncode))
            hint = _tool_hint(cmd) if proc.returncode == 127 else None
            if hint:
                error = f"{error}\nHint: {hint}"
        return proc.returncode, _tail(stdout), _tail(stderr), error, {}

    def _run_action(self, step: Step, job: str, scope: Scope, cwd: Path, env: Dict[str, str]):
        action = self.actions.get(step.uses)
        params = {k: render(str(v), scope) for k, v in step.with_.items()}
        ctx = ActionContext(
            job=job,
            step=step.name,
            context=scope.context,
            workdir=cwd,
            matrix=dict(scope.matrix),
            env=env,
            registry=self.registry,
            registry_host=self.registry_host,
            prober=self.prober,
        )
        try:
            outcome = action(params, ctx)
        except StepFailure as e:
            return e.exit_code, _tail(e.stdout), _tail(e.stderr), str(e), {}
        except Exception as e:
            # an action blowing up is a failure of this step, not of the run
            return 1, "", _tail(str(e)), f"[{job}] action '{step.uses}' raised {type(e).__name__}: {e}", {}

        if outcome.ok:
            return 0, _tail(outcome.output), "", None, dict(outcome.outputs)
        return 1, "", _tail(outcome.output), f"[{job}] action '{step.uses}' reported failure", {}


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
