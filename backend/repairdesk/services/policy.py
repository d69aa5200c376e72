from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from flask_jwt_extended import get_jwt_identity
from sqlalchemy import select, or_
from repairdesk.models.authz import User, Department, ROLE_ADMIN
from repairdesk.models.repair_ticket import RepairTicket, FlowStage
from repairdesk.constants.permissions import (
    CAPABILITIES, RAW_FLAG_ALIASES, TRUTHY_STRINGS,
    CAP_CREATE_TICKET, CAP_RECEIVE_INTAKE, CAP_SUPER_OVERRIDE,
)
from repairdesk.errors import AuthRequired
from repairdesk import get_db

RawFlags = Union[Mapping[str, Any], Iterable[str], None]


@dataclass(frozen=True)
class Capabilities:
    """Normalized authorization surface for one principal.

    Built only by resolve_capabilities(); callers branch on these names, never on raw flags.
    """
    role: str = ''
    view_all: bool = False
    create_ticket: bool = False
    edit_any: bool = False
    delete: bool = False
    receive_intake: bool = False
    manage_settings: bool = False
    super_override: bool = False
    access_accounts: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN or self.super_override

    @property
    def has_intake(self) -> bool:
        return self.create_ticket or self.receive_intake

    @property
    def can_edit_all(self) -> bool:
        return self.is_admin or self.edit_any

    @property
    def can_delete(self) -> bool:
        return self.is_admin or self.delete

    @property
    def can_view_all(self) -> bool:
        return self.is_admin or self.has_intake or self.view_all

    @property
    def can_manage_settings(self) -> bool:
        return self.is_admin or self.manage_settings

    def as_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out.update({
            'is_admin': self.is_admin,
            'has_intake': self.has_intake,
            'can_edit_all': self.can_edit_all,
            'can_delete': self.can_delete,
            'can_view_all': self.can_view_all,
            'can_manage_settings': self.can_manage_settings,
        })
        return out


def _to_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return v == 1
    if isinstance(v, str):
        return v.strip().lower() in TRUTHY_STRINGS
    return False


def _raw_flag_source(permissions: RawFlags, legacy_perms: RawFlags) -> Dict[str, Any]:
    """Pick the structured flags when present, otherwise fold the legacy shape (mapping or list of names)."""
    src = permissions if permissions else legacy_perms
    if not src:
        return {}
    if isinstance(src, Mapping):
        return dict(src)
    return {str(k): True for k in src}


def resolve_capabilities(role: Optional[str], permissions: RawFlags = None, legacy_perms: RawFlags = None) -> Capabilities:
    flags = {cap: False for cap in CAPABILITIES}
    for key, value in _raw_flag_source(permissions, legacy_perms).items():
        cap = RAW_FLAG_ALIASES.get(key)
        if cap and _to_bool(value):
            flags[cap] = True
    # intake and ticket creation are one capability stored under two names
    if flags[CAP_CREATE_TICKET] or flags[CAP_RECEIVE_INTAKE]:
        flags[CAP_CREATE_TICKET] = True
        flags[CAP_RECEIVE_INTAKE] = True
    if role == ROLE_ADMIN or flags[CAP_SUPER_OVERRIDE]:
        flags = {cap: True for cap in CAPABILITIES}
    return Capabilities(role=role or '', **flags)


@dataclass(frozen=True)
class Principal:
    user_id: int
    name: str
    department_id: Optional[int]
    capabilities: Capabilities

    @property
    def is_admin(self) -> bool:
        return self.capabilities.is_admin

    @property
    def has_intake(self) -> bool:
        return self.capabilities.has_intake

    @property
    def can_edit_all(self) -> bool:
        return self.capabilities.can_edit_all

    @property
    def can_delete(self) -> bool:
        return self.capabilities.can_delete

    @property
    def can_view_all(self) -> bool:
        return self.capabilities.can_view_all

    @property
    def can_manage_settings(self) -> bool:
        return self.capabilities.can_manage_settings


def principal_for_user(user: User) -> Principal:
    caps = resolve_capabilities(user.role, user.permissions, user.legacy_perms)
    return Principal(user_id=user.id, name=user.display_name, department_id=user.department_id, capabilities=caps)


def load_user(user_id: int) -> Optional[User]:
    session = get_db()
    stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
    return session.execute(stmt).scalar_one_or_none()


def current_principal() -> Principal:
    """Resolve the acting principal from storage; the token only carries the identity."""
    ident = get_jwt_identity()
    try:
        user_id = int(ident)
    except (TypeError, ValueError):
        raise AuthRequired('invalid token identity')
    user = load_user(user_id)
    if not user or not user.is_active:
        raise AuthRequired('user not found or inactive')
    return principal_for_user(user)


def is_monitor_of(user_id: Optional[int], department_id: Optional[int]) -> bool:
    if not user_id or not department_id:
        return False
    dept = get_db().get(Department, department_id)
    return bool(dept and dept.monitor_id == user_id)


def monitored_department_ids(user_id: int) -> List[int]:
    session = get_db()
    return [d.id for d in session.execute(select(Department).where(Department.monitor_id == user_id)).scalars()]


def admin_user_ids() -> List[int]:
    """Active users who resolve to admin (role or override flag, in either stored shape)."""
    session = get_db()
    users = session.execute(select(User).where(User.is_active.is_(True))).scalars().all()
    return [u.id for u in users if resolve_capabilities(u.role, u.permissions, u.legacy_perms).is_admin]


def can_view_ticket(principal: Principal, ticket: RepairTicket) -> bool:
    if principal.can_view_all:
        return True
    uid = principal.user_id
    if ticket.technician_id == uid:
        return True
    if any(s.technician_id == uid for s in ticket.stages):
        return True
    return is_monitor_of(uid, ticket.current_department_id)


def visibility_filter(query, principal: Principal):
    """Narrow a RepairTicket query to what the principal may list."""
    if principal.can_view_all:
        return query
    uid = principal.user_id
    conditions = [
        RepairTicket.technician_id == uid,
        RepairTicket.stages.any(FlowStage.technician_id == uid),
    ]
    monitored = monitored_department_ids(uid)
    if monitored:
        conditions.append(RepairTicket.current_department_id.in_(monitored))
    return query.filter(or_(*conditions))
