from __future__ import annotations
from sqlalchemy.orm import declarative_base, relationship, Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, ForeignKey, JSON, DateTime, Float, text
from typing import Optional, Dict, Any

Base = declarative_base()

ROLE_ADMIN = 'admin'
ROLE_TECHNICIAN = 'technician'
ALL_ROLES = (ROLE_ADMIN, ROLE_TECHNICIAN)


# --- Directory Models ---
class Department(Base):
    __tablename__ = 'departments'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(String(255), default='')
    # single user with oversight of this department's queue
    monitor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))


class User(Base):
    __tablename__ = 'users'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(128))
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=ROLE_TECHNICIAN)
    # structured flags; legacy_perms holds the older free-form shape and is only a fallback
    permissions: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    legacy_perms: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    department_id: Mapped[Optional[int]] = mapped_column(ForeignKey('departments.id', ondelete='SET NULL'), nullable=True, index=True)
    department = relationship('Department', foreign_keys=[department_id])
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_seed_admin: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    commission_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=text('CURRENT_TIMESTAMP'), server_onupdate=text('CURRENT_TIMESTAMP'))

    def set_password(self, raw: str):
        from werkzeug.security import generate_password_hash
        self.password_hash = generate_password_hash(raw)

    def verify_password(self, raw: str) -> bool:
        from werkzeug.security import check_password_hash
        return check_password_hash(self.password_hash, raw)

    @property
    def display_name(self) -> str:
        return self.name or self.username
