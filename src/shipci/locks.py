# locks.py
# Environment-keyed deploy locks.
#
# Deploys to the same environment are serialized; deploys to different
# environments never contend. LocalLocks covers one process; RedisLocks
# covers several control-plane processes sharing one Redis.

from __future__ import annotations

import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, ContextManager, Dict, Iterator, Optional, Protocol

import redis

from .errors import LockTimeout


class EnvironmentLocks(Protocol):
    def hold(self, environment: str) -> ContextManager[None]: ...


class LocalLocks:
    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, environment: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(environment)
            if lock is None:
                lock = self._locks[environment] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, environment: str) -> Iterator[None]:
        lock = self._lock_for(environment)
        acquired = lock.acquire(timeout=self.timeout if self.timeout is not None else -1)
        if not acquired:
            raise LockTimeout(f"Timed out waiting for the deploy lock of environment '{environment}'")
        try:
            yield
        finally:
            lock.release()


def lock_key(environment: str) -> str:
    return f"shipci:deploy_lock:{environment}"


class RedisLocks:
    """
    Lease-style lock: SET key owner NX EX ttl, polled until acquired.

    The TTL bounds how long a crashed holder can block an environment.
    """

    def __init__(
        self,
        client,
        *,
        ttl: int = 900,
        timeout: Optional[float] = None,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.ttl = ttl
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisLocks":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    @contextmanager
    def hold(self, environment: str) -> Iterator[None]:
        key = lock_key(environment)
        owner = uuid.uuid4().hex
        deadline = None if self.timeout is None else self.clock() + self.timeout

        while not self.client.set(key, owner, nx=True, ex=self.ttl):
            if deadline is not None and self.clock() >= deadline:
                raise LockTimeout(f"Timed out waiting for the deploy lock of environment '{environment}'")
            self.sleep(self.poll_interval)
        try:
            yield
        finally:
            # only release what we still own (the lease may have expired)
            if self.client.get(key) == owner:
                self.client.delete(key)
