# probes.py
from __future__ import annotations

import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ProbeResult:
    url: str
    status: Optional[int]   # None when the endpoint was unreachable
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"url": self.url, "status": self.status, "error": self.error}


# (url, timeout) -> ProbeResult ; swapped out in tests
Prober = Callable[[str, float], ProbeResult]


def http_probe(url: str, timeout: float = 10.0) -> ProbeResult:
    """GET a URL and report its HTTP status (non-2xx is not an exception here)."""
    req = urllib.request.Request(url, method="GET", headers={"User-Agent": "shipci-smoke"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return ProbeResult(url=url, status=response.status)
    except urllib.error.HTTPError as e:
        return ProbeResult(url=url, status=e.code, error=f"HTTP {e.code} {e.reason}")
    except urllib.error.URLError as e:
        return ProbeResult(url=url, status=None, error=f"Network error: {e.reason}")
    except (TimeoutError, OSError) as e:
        return ProbeResult(url=url, status=None, error=str(e))


def join_url(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + "/" + path.lstrip("/")
