from flask import Blueprint, request, g, current_app
from flask_jwt_extended import create_access_token
from sqlalchemy import select, or_
from repairdesk import get_db
from repairdesk.constants.permissions import RAW_FLAG_ALIASES
from repairdesk.decorators.auth import require_principal
from repairdesk.errors import ValidationError, AuthRequired, AccessDenied, ResourceNotFound, TransitionConflict
from repairdesk.models.authz import User, Department, ALL_ROLES, ROLE_TECHNICIAN
from repairdesk.services.policy import resolve_capabilities, admin_user_ids, principal_for_user, monitored_department_ids
from repairdesk.utils.listing import apply_pagination, make_cached_list_response, handle_conditional

iam_bp = Blueprint('iam', __name__)


def _user_json(u: User, include_caps: bool = False):
    body = {
        'id': u.id,
        'username': u.username,
        'name': u.display_name,
        'email': u.email,
        'role': u.role,
        'department_id': u.department_id,
        'is_active': u.is_active,
    }
    if include_caps:
        body['permissions'] = dict(u.permissions or {})
        body['capabilities'] = resolve_capabilities(u.role, u.permissions, u.legacy_perms).as_dict()
        body['commission_pct'] = u.commission_pct
    return body


def _clean_flags(raw) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError('permissions must be an object')
    unknown = sorted(k for k in raw if k not in RAW_FLAG_ALIASES)
    if unknown:
        raise ValidationError(f'Unknown permission flags: {unknown}')
    return dict(raw)


def _check_department(department_id):
    if department_id is None:
        return None
    if get_db().get(Department, department_id) is None:
        raise ValidationError('Unknown department')
    return department_id


def assert_not_removing_last_admin(user: User, role: str, flags: dict, is_active: bool):
    """Reject an edit that would leave no active admin."""
    admins = admin_user_ids()
    if user.id not in admins or len(admins) > 1:
        return
    still_admin = is_active and resolve_capabilities(role, flags, user.legacy_perms).is_admin
    if not still_admin:
        raise TransitionConflict('Cannot remove the last admin', error_code='LastAdmin')


@iam_bp.post('/auth/login')
def login():
    data = request.json or {}
    login_name = data.get('username') or data.get('email')
    password = data.get('password')
    if not login_name or not password:
        raise ValidationError('username & password required')
    session = get_db()
    user = session.execute(
        select(User).where(or_(User.username == login_name, User.email == login_name))
    ).scalars().first()
    if not user or not user.is_active or not user.verify_password(password):
        raise AuthRequired('invalid credentials')
    # identity only; capabilities are resolved from storage on every request
    token = create_access_token(identity=str(user.id))
    current_app.logger.info('login user=%s', user.id)
    return {'access_token': token}


@iam_bp.get('/auth/me')
@require_principal()
def me():
    principal = g.principal
    user = get_db().get(User, principal.user_id)
    body = _user_json(user)
    body['capabilities'] = principal.capabilities.as_dict()
    body['monitored_department_ids'] = monitored_department_ids(principal.user_id)
    return body


@iam_bp.get('/users')
@require_principal()
def list_users():
    """Active users for technician pickers; admins may include inactive ones."""
    session = get_db()
    q = session.query(User)
    if not (g.principal.can_manage_settings and request.args.get('include_inactive') in ('1', 'true')):
        q = q.filter(User.is_active.is_(True))
    department = request.args.get('department_id')
    if department:
        try:
            q = q.filter(User.department_id == int(department))
        except ValueError:
            raise ValidationError('department_id invalid')
    q = q.order_by(User.id.asc())
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    latest_ts = max((u.updated_at for u in rows if u.updated_at), default=None)
    resp, etag = make_cached_list_response([_user_json(u) for u in rows], total, limit, offset, latest_ts)
    return handle_conditional(etag, latest_ts) or resp


@iam_bp.post('/users')
@require_principal('can_manage_settings')
def create_user():
    data = request.json or {}
    username = (data.get('username') or '').strip()
    password = data.get('password')
    if not username or not password:
        raise ValidationError('username & password required')
    role = data.get('role') or ROLE_TECHNICIAN
    if role not in ALL_ROLES:
        raise ValidationError('role invalid')
    session = get_db()
    if session.execute(select(User).where(User.username == username)).scalar_one_or_none():
        raise ValidationError('username exists')
    user = User(
        username=username,
        name=data.get('name') or username,
        email=data.get('email'),
        role=role,
        permissions=_clean_flags(data.get('permissions')),
        department_id=_check_department(data.get('department_id')),
        commission_pct=data.get('commission_pct'),
        is_active=True,
        password_hash='',
    )
    user.set_password(password)
    session.add(user)
    session.commit()
    current_app.logger.info('user created id=%s by=%s', user.id, g.principal.user_id)
    return _user_json(user, include_caps=True), 201


@iam_bp.put('/users/<int:user_id>/permissions')
@require_principal('can_manage_settings')
def set_user_permissions(user_id: int):
    """Replace a user's flags, role, home department or active state; effective on their next request."""
    session = get_db()
    user = session.get(User, user_id)
    if not user:
        raise ResourceNotFound('User not found')
    data = request.json or {}
    role = data.get('role', user.role)
    if role not in ALL_ROLES:
        raise ValidationError('role invalid')
    flags = _clean_flags(data['permissions']) if 'permissions' in data else dict(user.permissions or {})
    is_active = bool(data.get('is_active', user.is_active))
    # only admins may grant admin-level access
    granting_admin = resolve_capabilities(role, flags).is_admin and not principal_for_user(user).is_admin
    if granting_admin and not g.principal.is_admin:
        raise AccessDenied('Only admins can grant admin access')
    assert_not_removing_last_admin(user, role, flags, is_active)
    user.role = role
    user.permissions = flags
    user.is_active = is_active
    if 'department_id' in data:
        user.department_id = _check_department(data.get('department_id'))
    if 'commission_pct' in data:
        user.commission_pct = data.get('commission_pct')
    session.commit()
    return _user_json(user, include_caps=True)
