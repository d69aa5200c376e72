from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy import Integer, String, Text, Boolean, Float, DateTime, ForeignKey, UniqueConstraint
from repairdesk.models.authz import Base
from repairdesk.utils.clock import utcnow


class RepairTicket(Base):
    __tablename__ = 'repair_tickets'
    # ids are never reused, so a kept event trail cannot attach to a newer ticket
    __table_args__ = {'sqlite_autoincrement': True}
    # Status constants
    STATUS_PENDING = 'pending'
    STATUS_IN_PROGRESS = 'in-progress'
    STATUS_COMPLETED = 'completed'
    STATUS_DELIVERED = 'delivered'
    STATUS_REJECTED = 'rejected'
    STATUS_RETURNED = 'returned'
    ALL_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_DELIVERED, STATUS_REJECTED, STATUS_RETURNED)
    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_DELIVERED, STATUS_REJECTED)

    LOCATION_IN_SHOP = 'in_shop'
    LOCATION_WITH_CUSTOMER = 'with_customer'
    ALL_LOCATIONS = (LOCATION_IN_SHOP, LOCATION_WITH_CUSTOMER)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_number: Mapped[int] = mapped_column(Integer, unique=True, index=True, nullable=False)
    customer_name: Mapped[str] = mapped_column(String(120), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    device_type: Mapped[str] = mapped_column(String(80), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(40))
    issue: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    notes_public: Mapped[Optional[str]] = mapped_column(String(255))
    price: Mapped[float] = mapped_column(Float, default=0)
    final_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    eta: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    has_warranty: Mapped[bool] = mapped_column(Boolean, default=False)
    warranty_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    warranty_notes: Mapped[Optional[str]] = mapped_column(String(255))

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_PENDING, index=True)
    technician_id: Mapped[Optional[int]] = mapped_column(ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True)
    recipient_id: Mapped[Optional[int]] = mapped_column(ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    current_department_id: Mapped[Optional[int]] = mapped_column(ForeignKey('departments.id', ondelete='SET NULL'), nullable=True, index=True)
    # position of the single non-completed stage; None when every stage is completed (or none exist)
    active_stage_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    returned: Mapped[bool] = mapped_column(Boolean, default=False)
    return_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_device_location: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Public tracking sub-record
    tracking_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    tracking_token: Mapped[Optional[str]] = mapped_column(String(64), unique=True, index=True, nullable=True)
    tracking_show_price: Mapped[bool] = mapped_column(Boolean, default=False)
    tracking_show_eta: Mapped[bool] = mapped_column(Boolean, default=True)
    tracking_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tracking_views: Mapped[int] = mapped_column(Integer, default=0)
    tracking_last_viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    stages = relationship(
        'FlowStage',
        order_by='FlowStage.position',
        collection_class=ordering_list('position'),
        cascade='all, delete-orphan',
        back_populates='ticket',
        lazy='selectin',
    )
    parts = relationship(
        'RepairPart',
        order_by='RepairPart.position',
        collection_class=ordering_list('position'),
        cascade='all, delete-orphan',
        lazy='selectin',
    )
    # no FK: events outlive a hard-deleted ticket
    events = relationship(
        'RepairEvent',
        primaryjoin='RepairTicket.id == foreign(RepairEvent.ticket_id)',
        order_by='RepairEvent.id',
        cascade='save-update, merge',
        passive_deletes='all',
        lazy='selectin',
    )

    __mapper_args__ = {'version_id_col': version}

    @property
    def active_stage(self) -> Optional['FlowStage']:
        if self.active_stage_index is None:
            return None
        return self.stages[self.active_stage_index]

    @property
    def current_stage(self) -> Optional['FlowStage']:
        """Last stage in the flow: the active one, or the most recently completed."""
        return self.stages[-1] if self.stages else None


class FlowStage(Base):
    __tablename__ = 'repair_flow_stages'
    STATUS_WAITING = 'waiting'
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_COMPLETED = 'completed'
    ALL_STATUSES = (STATUS_WAITING, STATUS_IN_PROGRESS, STATUS_COMPLETED)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('repair_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    department_id: Mapped[int] = mapped_column(ForeignKey('departments.id'), nullable=False, index=True)
    technician_id: Mapped[Optional[int]] = mapped_column(ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_WAITING)
    price: Mapped[float] = mapped_column(Float, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    ticket = relationship('RepairTicket', back_populates='stages')

    __table_args__ = (UniqueConstraint('ticket_id', 'position', name='uq_stage_position'),)


class RepairPart(Base):
    __tablename__ = 'repair_parts'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey('repair_tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(120))
    supplier: Mapped[Optional[str]] = mapped_column(String(120))
    cost: Mapped[float] = mapped_column(Float, default=0)
    qty: Mapped[int] = mapped_column(Integer, default=1)
    paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

# Ticket status and the active stage's status move together only through FlowEngine.
# Stages are append-only: advancing departments always adds a new stage at the end.
