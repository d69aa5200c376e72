from flask import Blueprint, request, g
from sqlalchemy import select
from repairdesk import get_db
from repairdesk.decorators.auth import require_principal
from repairdesk.errors import ValidationError, ResourceNotFound
from repairdesk.models.authz import Department, User
from repairdesk.services.policy import monitored_department_ids

dept_bp = Blueprint('departments', __name__)


def _department_json(d: Department, monitors=None):
    monitor = (monitors or {}).get(d.monitor_id)
    return {
        'id': d.id,
        'name': d.name,
        'description': d.description or '',
        'monitor': {'id': monitor.id, 'name': monitor.display_name} if monitor else None,
    }


def _monitor_map(departments):
    ids = {d.monitor_id for d in departments if d.monitor_id}
    if not ids:
        return {}
    return {u.id: u for u in get_db().execute(select(User).where(User.id.in_(ids))).scalars()}


def _resolve_monitor(raw):
    if raw in (None, ''):
        return None
    try:
        user = get_db().get(User, int(raw))
    except (TypeError, ValueError):
        raise ValidationError('monitor_id invalid')
    if user is None or not user.is_active:
        raise ValidationError('Unknown monitor user')
    return user.id


@dept_bp.get('')
@require_principal()
def list_departments():
    """Everyone with view-all (or settings) sees every department; monitors see their own."""
    session = get_db()
    q = select(Department).order_by(Department.name.asc())
    principal = g.principal
    if not (principal.can_view_all or principal.can_manage_settings):
        own = set(monitored_department_ids(principal.user_id))
        if principal.department_id:
            own.add(principal.department_id)
        q = q.where(Department.id.in_(sorted(own) or [-1]))
    rows = session.execute(q).scalars().all()
    monitors = _monitor_map(rows)
    return {'data': [_department_json(d, monitors) for d in rows]}


@dept_bp.post('')
@require_principal('can_manage_settings')
def create_department():
    data = request.json or {}
    name = (data.get('name') or '').strip()
    if not name:
        raise ValidationError('name required')
    session = get_db()
    if session.execute(select(Department).where(Department.name == name)).scalar_one_or_none():
        raise ValidationError('department exists')
    dept = Department(name=name, description=data.get('description') or '', monitor_id=_resolve_monitor(data.get('monitor_id')))
    session.add(dept)
    session.commit()
    return _department_json(dept, _monitor_map([dept])), 201


@dept_bp.put('/<int:department_id>')
@require_principal('can_manage_settings')
def update_department(department_id: int):
    session = get_db()
    dept = session.get(Department, department_id)
    if not dept:
        raise ResourceNotFound('Department not found')
    data = request.json or {}
    if 'name' in data:
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError('name required')
        clash = session.execute(select(Department).where(Department.name == name, Department.id != dept.id)).scalar_one_or_none()
        if clash:
            raise ValidationError('department exists')
        dept.name = name
    if 'description' in data:
        dept.description = data.get('description') or ''
    session.commit()
    return _department_json(dept, _monitor_map([dept]))


@dept_bp.put('/<int:department_id>/monitor')
@require_principal('is_admin')
def set_monitor(department_id: int):
    session = get_db()
    dept = session.get(Department, department_id)
    if not dept:
        raise ResourceNotFound('Department not found')
    data = request.json or {}
    if 'monitor_id' not in data:
        raise ValidationError('monitor_id required')
    dept.monitor_id = _resolve_monitor(data.get('monitor_id'))
    session.commit()
    return _department_json(dept, _monitor_map([dept]))
