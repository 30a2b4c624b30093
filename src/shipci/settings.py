# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    max_workers: int
    step_timeout: Optional[float]
    rollout_timeout: float
    poll_interval: float
    ledger_url: str
    redis_url: Optional[str]
    lock_seconds: int
    registry: str
    kubectl: str

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            max_workers=_int(env, "SHIPCI_MAX_WORKERS", _default_workers()),
            step_timeout=_float(env, "SHIPCI_STEP_TIMEOUT", None),
            rollout_timeout=_float(env, "SHIPCI_ROLLOUT_TIMEOUT", 600.0),
            poll_interval=_float(env, "SHIPCI_POLL_INTERVAL", 5.0),
            ledger_url=env.get("SHIPCI_LEDGER_URL") or "sqlite:///.shipci/ledger.db",
            redis_url=env.get("SHIPCI_REDIS_URL") or None,
            lock_seconds=_int(env, "SHIPCI_LOCK_SECONDS", 900),
            registry=env.get("SHIPCI_REGISTRY") or "ghcr.io",
            kubectl=env.get("SHIPCI_KUBECTL") or "kubectl",
        )
