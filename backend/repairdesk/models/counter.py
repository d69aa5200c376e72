from __future__ import annotations
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String
from repairdesk.models.authz import Base


class Counter(Base):
    __tablename__ = 'counters'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
