from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, JSON, DateTime, event

from .authz import Base  # reuse same metadata
from repairdesk.utils.clock import utcnow


class RepairEvent(Base):
    __tablename__ = 'repair_events'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    ticket_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)


@event.listens_for(RepairEvent, 'before_update')
def _reject_event_update(mapper, connection, target):
    raise ValueError('repair events are append-only')


@event.listens_for(RepairEvent, 'before_delete')
def _reject_event_delete(mapper, connection, target):
    raise ValueError('repair events are append-only')
