# ledger.py
# Promotion history per environment.
#
# The production gate asks "did staging's most recent promotion of this
# artifact succeed?"; this module answers it. Two backends:
#   - InMemoryLedger  (single process, tests, dry runs)
#   - SqlLedger       (SQLAlchemy; sqlite by default, any SQLAlchemy URL works)

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import utcnow


@dataclass(frozen=True)
class PromotionRecord:
    environment: str
    artifact: str                 # commit SHA the artifacts were built from
    status: str                   # success | failure
    kind: Optional[str] = None    # failure kind (rollout_timeout, smoke_test, ...)
    run_id: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "environment": self.environment,
            "artifact": self.artifact,
            "status": self.status,
            "kind": self.kind,
            "run_id": self.run_id,
            "recorded_at": self.recorded_at.isoformat(),
        }


class PromotionLedger(Protocol):
    def record(self, record: PromotionRecord) -> None: ...

    def latest(self, environment: str, artifact: str) -> Optional[PromotionRecord]: ...

    def history(self, environment: str, limit: int = 50) -> List[PromotionRecord]: ...


class InMemoryLedger:
    def __init__(self) -> None:
        self._records: List[PromotionRecord] = []
        self._lock = threading.Lock()

    def record(self, record: PromotionRecord) -> None:
        with self._lock:
            self._records.append(record)

    def latest(self, environment: str, artifact: str) -> Optional[PromotionRecord]:
        with self._lock:
            for r in reversed(self._records):
                if r.environment == environment and r.artifact == artifact:
                    return r
        return None

    def history(self, environment: str, limit: int = 50) -> List[PromotionRecord]:
        with self._lock:
            matching = [r for r in self._records if r.environment == environment]
        return list(reversed(matching))[:limit]


# ---------------------------------------------------------------------
# SQLAlchemy backend
# ---------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class Promotion(Base):
    __tablename__ = "promotions"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    environment: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    artifact: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    kind: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    run_id: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)


def _engine(url: str) -> sa.Engine:
    if not url.startswith("sqlite"):
        return sa.create_engine(url, pool_pre_ping=True)

    # worker threads record promotions, so the connection must be shareable
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    elif url.startswith("sqlite:///"):
        Path(url[len("sqlite:///"):]).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return sa.create_engine(url, **kwargs)


class SqlLedger:
    def __init__(self, url: str = "sqlite:///.shipci/ledger.db"):
        self.url = url
        self.engine = _engine(url)
        Base.metadata.create_all(self.engine)
        self._session = sessionmaker(self.engine, expire_on_commit=False)

    def record(self, record: PromotionRecord) -> None:
        with self._session() as s, s.begin():
            s.add(
                Promotion(
                    environment=record.environment,
                    artifact=record.artifact,
                    status=record.status,
                    kind=record.kind,
                    run_id=record.run_id,
                    recorded_at=record.recorded_at,
                )
            )

    def latest(self, environment: str, artifact: str) -> Optional[PromotionRecord]:
        q = (
            sa.select(Promotion)
            .where(Promotion.environment == environment, Promotion.artifact == artifact)
            .order_by(Promotion.id.desc())
            .limit(1)
        )
        with self._session() as s:
            row = s.execute(q).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    def history(self, environment: str, limit: int = 50) -> List[PromotionRecord]:
        q = (
            sa.select(Promotion)
            .where(Promotion.environment == environment)
            .order_by(Promotion.id.desc())
            .limit(limit)
        )
        with self._session() as s:
            return [_to_record(row) for row in s.execute(q).scalars()]


def _to_record(row: Promotion) -> PromotionRecord:
    return PromotionRecord(
        environment=row.environment,
        artifact=row.artifact,
        status=row.status,
        kind=row.kind,
        run_id=row.run_id,
        recorded_at=row.recorded_at,
    )


def open_ledger(url: Optional[str]) -> PromotionLedger:
    """`memory` (or None) -> InMemoryLedger, anything else -> SqlLedger(url)."""
    if not url or url == "memory":
        return InMemoryLedger()
    return SqlLedger(url)


__all__ = ["PromotionRecord", "PromotionLedger", "InMemoryLedger", "SqlLedger", "open_ledger"]
