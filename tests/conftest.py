"""Shared fixtures: run contexts, a scripted deployment target and probes."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import pytest

from shipci.context import RunContext
from shipci.probes import ProbeResult

SHA = "1a2b3c4d5e6f7a8b9c0d1e2f3a4b5c6d7e8f9a0b"


def make_context(
    event: str = "push",
    ref: str = "develop",
    *,
    sha: str = SHA,
    inputs: Optional[Dict[str, str]] = None,
    base_branch: Optional[str] = None,
) -> RunContext:
    return RunContext.create(
        event,
        ref,
        sha,
        inputs=inputs,
        base_branch=base_branch,
        repository="acme/image-processor",
        actor="octocat",
    )


class FakeTarget:
    """Deployment target that becomes ready after `ready_after` polls."""

    def __init__(self, ready_after: int = 0, *, never_ready: Sequence[str] = ()):
        self.ready_after = ready_after
        self.never_ready = set(never_ready)
        self.applied: List[tuple] = []
        self.polls = 0
        self.bindings: List[object] = []

    def apply(self, environment, artifacts, binding) -> str:
        self.applied.append((environment.name, [a.reference for a in artifacts]))
        self.bindings.append(binding)
        return "applied"

    def rollout_status(self, environment, binding) -> Dict[str, bool]:
        self.polls += 1
        ready = self.polls > self.ready_after
        return {w: ready and w not in self.never_ready for w in environment.workloads}


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def static_prober(status: Optional[int] = 200, *, error: Optional[str] = None):
    calls: List[str] = []

    def probe(url: str, timeout: float) -> ProbeResult:
        calls.append(url)
        return ProbeResult(url=url, status=status, error=error)

    probe.calls = calls
    return probe


@pytest.fixture()
def push_develop() -> RunContext:
    return make_context("push", "develop")


@pytest.fixture()
def push_main() -> RunContext:
    return make_context("push", "main")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
