# artifacts.py
# Immutable, content-addressed build artifacts.
#
# Every image the pipeline builds is tagged from the commit SHA
# (sha-<7 chars>). Deploy gates only ever reference these tags; a mutable
# tag such as "latest" is never produced or consumed here.

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol

from .context import RunContext
from .errors import ArtifactConflictError

MUTABLE_TAGS = ("latest", "stable", "edge")


@dataclass(frozen=True)
class ArtifactRef:
    component: str
    image: str   # e.g. ghcr.io/acme/image-processor/backend
    tag: str     # e.g. sha-1a2b3c4

    @property
    def reference(self) -> str:
        return f"{self.image}:{self.tag}"


def sha_tag(context: RunContext) -> str:
    return f"sha-{context.short_sha}"


def artifact_ref(context: RunContext, component: str, registry: str = "ghcr.io") -> ArtifactRef:
    repo = context.repository.strip("/")
    image = "/".join(p for p in (registry.rstrip("/"), repo, component) if p)
    return ArtifactRef(component=component, image=image, tag=sha_tag(context))


def artifact_refs(context: RunContext, components: Iterable[str], registry: str = "ghcr.io") -> List[ArtifactRef]:
    return [artifact_ref(context, c, registry) for c in components]


class ArtifactRegistry(Protocol):
    def publish(self, ref: ArtifactRef, digest: str) -> None: ...

    def digest(self, ref: ArtifactRef) -> Optional[str]: ...


class InMemoryRegistry:
    """Registry double that enforces tag immutability."""

    def __init__(self) -> None:
        self._tags: Dict[str, str] = {}
        self._lock = threading.Lock()

    def publish(self, ref: ArtifactRef, digest: str) -> None:
        if ref.tag in MUTABLE_TAGS:
            raise ArtifactConflictError(f"Refusing to publish mutable tag {ref.reference}")
        with self._lock:
            existing = self._tags.get(ref.reference)
            if existing is not None and existing != digest:
                raise ArtifactConflictError(
                    f"{ref.reference} is already published with digest {existing}; tags are immutable"
                )
            self._tags[ref.reference] = digest

    def digest(self, ref: ArtifactRef) -> Optional[str]:
        with self._lock:
            return self._tags.get(ref.reference)

    def published(self) -> List[str]:
        with self._lock:
            return sorted(self._tags)
