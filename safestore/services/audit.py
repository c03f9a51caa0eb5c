from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from sqlalchemy.orm import Session

from ..models import OPERATION_TYPES, Operation


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    operation: str
    actor: str
    path: Optional[str]
    detail: str
    outcome: str = 'ok'
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if self.operation not in OPERATION_TYPES:
            raise ValueError(f'Unknown operation type: {self.operation}')
        if self.outcome not in ('ok', 'error'):
            raise ValueError(f'Unknown outcome: {self.outcome}')


class AuditLog(Protocol):
    def record(self, event: AuditEvent) -> None:
        ...

    def history(self, actor: str, limit: int = 100) -> list[AuditEvent]:
        ...


class DatabaseAuditLog:
    """Append-only audit log stored in the ``operations`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def record(self, event: AuditEvent) -> None:
        db = self._session_factory()
        try:
            db.add(
                Operation(
                    timestamp=event.timestamp,
                    operation_type=event.operation,
                    actor_id=event.actor,
                    path=event.path,
                    outcome=event.outcome,
                    details=event.detail,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def history(self, actor: str, limit: int = 100) -> list[AuditEvent]:
        db = self._session_factory()
        try:
            rows = (
                db.query(Operation)
                .filter(Operation.actor_id == actor)
                .order_by(Operation.timestamp.desc(), Operation.id.desc())
                .limit(limit)
                .all()
            )
            return [
                AuditEvent(
                    operation=row.operation_type,
                    actor=row.actor_id,
                    path=row.path,
                    detail=row.details,
                    outcome=row.outcome,
                    timestamp=row.timestamp,
                )
                for row in rows
            ]
        finally:
            db.close()


class MemoryAuditLog:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        if self.fail:
            raise RuntimeError('audit log unavailable')
        with self._lock:
            self.events.append(event)

    def history(self, actor: str, limit: int = 100) -> list[AuditEvent]:
        with self._lock:
            mine = [event for event in self.events if event.actor == actor]
        return list(reversed(mine))[:limit]
