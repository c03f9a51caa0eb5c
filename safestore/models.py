from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

OPERATION_TYPES = ('create', 'modify', 'delete', 'read')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Operation(Base):
    __tablename__ = 'operations'
    __table_args__ = (
        CheckConstraint("operation_type IN ('create', 'modify', 'delete', 'read')", name='ck_operation_type'),
        CheckConstraint("outcome IN ('ok', 'error')", name='ck_operation_outcome'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    operation_type: Mapped[str] = mapped_column(String(16))
    actor_id: Mapped[str] = mapped_column(String(64), index=True)
    path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    outcome: Mapped[str] = mapped_column(String(8), default='ok')
    details: Mapped[str] = mapped_column(Text, default='')
