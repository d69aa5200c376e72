from __future__ import annotations
from datetime import datetime, time
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from flask import Blueprint, request, g, current_app, make_response, jsonify
from sqlalchemy import select, or_, and_
from repairdesk import get_db
from repairdesk.decorators.auth import require_principal
from repairdesk.errors import ValidationError, AccessDenied, ResourceNotFound, ConcurrentUpdate
from repairdesk.models.authz import User
from repairdesk.models.repair_ticket import RepairTicket, RepairPart, FlowStage
from repairdesk.services import audit, tracking
from repairdesk.services.flow import FlowEngine, flow_projection, normalize_rejected_location
from repairdesk.services.guard import allows
from repairdesk.services.notifications import notify_ticket_changed, enqueue, dispatch_inline
from repairdesk.services.policy import can_view_ticket, visibility_filter, load_user, admin_user_ids
from repairdesk.services.sequence import next_value, TICKET_SEQUENCE
from repairdesk.constants.permissions import ACTION_ASSIGN_TECHNICIAN, ACTION_COMPLETE_STEP, ACTION_MOVE_NEXT
from repairdesk.utils.clock import utcnow, iso
from repairdesk.utils.listing import apply_pagination, make_cached_list_response, handle_conditional, compute_etag, canonicalize_timestamp, _http_date
from repairdesk.utils.sorting import apply_multi_sort
from repairdesk.utils.validation import optional_int, optional_number, optional_datetime, validate_status

rpr_bp = Blueprint('repairs', __name__)

SORTABLE = {
    'created_at': RepairTicket.created_at,
    'updated_at': RepairTicket.updated_at,
    'ticket_number': RepairTicket.ticket_number,
    'status': RepairTicket.status,
    'customer_name': RepairTicket.customer_name,
    'delivery_date': RepairTicket.delivery_date,
}

# plain fields an editor may set on create or update
TEXT_FIELDS = ('customer_name', 'phone', 'device_type', 'color', 'issue', 'notes', 'notes_public', 'warranty_notes')

TECHNICIAN_KEYS = {'status', 'password', 'version'}
TECHNICIAN_KEYS_BY_STATUS = {
    RepairTicket.STATUS_DELIVERED: {'final_price', 'parts'},
    RepairTicket.STATUS_REJECTED: {'rejected_device_location'},
}


# ---------------- helpers ---------------- #
def _load_ticket(ticket_id: int) -> RepairTicket:
    stmt = select(RepairTicket).where(RepairTicket.id == ticket_id).execution_options(populate_existing=True)
    ticket = get_db().execute(stmt).scalar_one_or_none()
    if not ticket:
        raise ResourceNotFound('Ticket not found')
    return ticket


def _users_by_id(ids: Iterable[Optional[int]]) -> Dict[int, User]:
    wanted = {i for i in ids if i}
    if not wanted:
        return {}
    return {u.id: u for u in get_db().execute(select(User).where(User.id.in_(wanted))).scalars()}


def _user_ref(users: Dict[int, User], user_id: Optional[int]):
    u = users.get(user_id) if user_id else None
    return {'id': u.id, 'name': u.display_name, 'username': u.username} if u else None


def _part_json(p: RepairPart):
    return {
        'id': p.id,
        'name': p.name,
        'source': p.source,
        'supplier': p.supplier,
        'cost': p.cost or 0,
        'qty': p.qty or 1,
        'paid': bool(p.paid),
        'paid_at': iso(p.paid_at),
        'paid_by': p.paid_by,
    }


def _ticket_json(t: RepairTicket, users: Optional[Dict[int, User]] = None, with_events: bool = False):
    if users is None:
        users = _users_by_id([t.technician_id, t.recipient_id, t.created_by])
    body = {
        'id': t.id,
        'ticket_number': t.ticket_number,
        'customer_name': t.customer_name,
        'phone': t.phone,
        'device_type': t.device_type,
        'color': t.color,
        'issue': t.issue,
        'notes': t.notes,
        'notes_public': t.notes_public,
        'price': t.price or 0,
        'final_price': t.final_price,
        'eta': iso(t.eta),
        'has_warranty': bool(t.has_warranty),
        'warranty_end': iso(t.warranty_end),
        'warranty_notes': t.warranty_notes,
        'status': t.status,
        'technician': _user_ref(users, t.technician_id),
        'recipient': _user_ref(users, t.recipient_id),
        'created_by': _user_ref(users, t.created_by),
        'current_department_id': t.current_department_id,
        'active_stage_index': t.active_stage_index,
        'start_time': iso(t.start_time),
        'end_time': iso(t.end_time),
        'delivery_date': iso(t.delivery_date),
        'returned': bool(t.returned),
        'return_date': iso(t.return_date),
        'rejected_device_location': t.rejected_device_location,
        'parts': [_part_json(p) for p in t.parts],
        'tracking': tracking.tracking_json(t),
        'version': t.version,
        'created_at': iso(t.created_at),
        'updated_at': iso(t.updated_at),
    }
    if with_events:
        body['events'] = audit.read_timeline(t)
    return body


def _parse_parts(raw: Any, actor_id: int) -> List[RepairPart]:
    if not isinstance(raw, list):
        raise ValidationError('parts must be a list')
    parts = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict) or not (item.get('name') or '').strip():
            raise ValidationError(f'parts[{i}].name required')
        qty = optional_int(item.get('qty'), f'parts[{i}].qty')
        if qty is not None and qty < 1:
            raise ValidationError(f'parts[{i}].qty must be >= 1')
        paid = bool(item.get('paid'))
        parts.append(RepairPart(
            name=item['name'].strip(),
            source=item.get('source'),
            supplier=item.get('supplier'),
            cost=optional_number(item.get('cost'), f'parts[{i}].cost') or 0,
            qty=qty or 1,
            paid=paid,
            paid_at=optional_datetime(item.get('paid_at'), f'parts[{i}].paid_at') or (utcnow() if paid else None),
            paid_by=optional_int(item.get('paid_by'), f'parts[{i}].paid_by') or (actor_id if paid else None),
        ))
    return parts


def _check_user(user_id: Optional[int], field_name: str) -> Optional[int]:
    if user_id is None:
        return None
    if get_db().get(User, user_id) is None:
        raise ValidationError(f'{field_name} unknown')
    return user_id


def _apply_editor_fields(ticket: RepairTicket, data: Dict[str, Any], actor_id: int):
    for key in TEXT_FIELDS:
        if key in data:
            value = data[key]
            if key in ('customer_name', 'device_type') and not (value or '').strip():
                raise ValidationError(f'{key} required')
            setattr(ticket, key, value)
    if 'price' in data:
        ticket.price = optional_number(data['price'], 'price') or 0
    if 'final_price' in data:
        ticket.final_price = optional_number(data['final_price'], 'final_price')
    if 'eta' in data:
        ticket.eta = optional_datetime(data['eta'], 'eta')
    if isinstance(data.get('has_warranty'), bool):
        ticket.has_warranty = data['has_warranty']
    if data.get('warranty_end'):
        ticket.warranty_end = optional_datetime(data['warranty_end'], 'warranty_end')
    if 'parts' in data:
        ticket.parts = _parse_parts(data['parts'], actor_id)
    if 'technician_id' in data:
        ticket.technician_id = _check_user(optional_int(data['technician_id'], 'technician_id'), 'technician_id')
    if 'recipient_id' in data:
        ticket.recipient_id = _check_user(optional_int(data['recipient_id'], 'recipient_id'), 'recipient_id')


def _app_tz():
    name = current_app.config.get('APP_TZ') or 'UTC'
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        current_app.logger.warning('unknown APP_TZ %s, using UTC', name)
        return ZoneInfo('UTC')


def _day_bound(raw: str, field_name: str, end: bool) -> datetime:
    """Local calendar day (YYYY-MM-DD in APP_TZ) to its UTC start or end instant."""
    try:
        day = datetime.strptime(raw, '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f'{field_name} invalid')
    local = datetime.combine(day, time.max if end else time.min, tzinfo=_app_tz())
    return local.astimezone(ZoneInfo('UTC'))


def _filtered_query(principal):
    session = get_db()
    q = session.query(RepairTicket)
    args = request.args
    text = (args.get('q') or '').strip()
    if text:
        like = f'%{text}%'
        q = q.filter(or_(
            RepairTicket.customer_name.ilike(like),
            RepairTicket.phone.ilike(like),
            RepairTicket.device_type.ilike(like),
            RepairTicket.issue.ilike(like),
        ))
    status = args.get('status')
    if status:
        if status not in RepairTicket.ALL_STATUSES:
            raise ValidationError('status invalid')
        q = q.filter(RepairTicket.status == status)
    technician = optional_int(args.get('technician'), 'technician')
    if technician is not None:
        q = q.filter(RepairTicket.technician_id == technician)
    department = optional_int(args.get('department'), 'department')
    if department is not None:
        q = q.filter(RepairTicket.current_department_id == department)
    start_raw, end_raw = args.get('start_date'), args.get('end_date')
    if start_raw or end_raw:
        # a ticket is in range when it was received or delivered inside it
        bounds_created, bounds_delivered = [], []
        if start_raw:
            start = _day_bound(start_raw, 'start_date', end=False)
            bounds_created.append(RepairTicket.created_at >= start)
            bounds_delivered.append(RepairTicket.delivery_date >= start)
        if end_raw:
            end = _day_bound(end_raw, 'end_date', end=True)
            bounds_created.append(RepairTicket.created_at <= end)
            bounds_delivered.append(RepairTicket.delivery_date <= end)
        q = q.filter(or_(and_(*bounds_created), and_(*bounds_delivered)))
    return visibility_filter(q, principal)


def _commit_and_dispatch():
    get_db().commit()
    dispatch_inline()


def _notify(ticket: RepairTicket, message: str, changes=None):
    notify_ticket_changed(ticket, message, audit.summarize_changes(changes or []))


def _check_version(ticket: RepairTicket, data: Dict[str, Any]):
    """Optional client-side token: reject edits made against an older read."""
    if data.get('version') is None:
        return
    expected = optional_int(data.get('version'), 'version')
    if expected != ticket.version:
        raise ConcurrentUpdate('Ticket was modified since it was read; reload and retry')


# ---------------- list / read ---------------- #
@rpr_bp.route('/tickets', methods=['GET', 'HEAD'])
@require_principal()
def list_tickets():
    q = _filtered_query(g.principal)
    q = apply_multi_sort(q, request.args.get('sort'), SORTABLE, RepairTicket.id, default=[RepairTicket.created_at.desc()])
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    users = _users_by_id(uid for t in rows for uid in (t.technician_id, t.recipient_id, t.created_by))
    rows_json = [_ticket_json(t, users) for t in rows]
    latest_ts = max((t.updated_at for t in rows if t.updated_at), default=None)
    resp, etag = make_cached_list_response(rows_json, total, limit, offset, latest_ts)
    cond = handle_conditional(etag, latest_ts)
    if cond:
        return cond
    if request.method == 'HEAD':
        resp.set_data(b'')
    return resp


@rpr_bp.route('/tickets/<int:ticket_id>', methods=['GET', 'HEAD'])
@require_principal()
def get_ticket(ticket_id: int):
    t = _load_ticket(ticket_id)
    if not can_view_ticket(g.principal, t):
        raise AccessDenied('You are not allowed to view this ticket')
    latest_ts = t.updated_at
    etag = compute_etag([t.id], 1, 1, 0, f'{iso(latest_ts)}|{t.version}')
    cond = handle_conditional(etag, latest_ts)
    if cond:
        return cond
    resp = make_response(jsonify(_ticket_json(t, with_events=True)))
    resp.headers['ETag'] = etag
    if latest_ts:
        lt = canonicalize_timestamp(latest_ts)
        resp.headers['Last-Modified'] = _http_date(lt)
        resp.headers['X-Last-Modified-ISO'] = iso(lt)
    if request.method == 'HEAD':
        resp.set_data(b'')
    return resp


# ---------------- create / update / delete ---------------- #
@rpr_bp.post('/tickets')
@require_principal('has_intake', 'can_edit_all')
def create_ticket():
    principal = g.principal
    data = request.json or {}
    if not (data.get('customer_name') or '').strip() or not (data.get('device_type') or '').strip():
        raise ValidationError('customer_name and device_type required')
    department_id = optional_int(data.get('department_id', data.get('initial_department_id')), 'department_id')
    technician_id = optional_int(data.get('technician_id'), 'technician_id')
    session = get_db()
    t = RepairTicket(
        ticket_number=next_value(TICKET_SEQUENCE, session),
        status=RepairTicket.STATUS_PENDING,
        created_by=principal.user_id,
        updated_by=principal.user_id,
        price=0,
        tracking_enabled=True,
        tracking_show_price=False,
        tracking_show_eta=True,
    )
    _apply_editor_fields(t, {k: v for k, v in data.items() if k not in ('technician_id',)}, principal.user_id)
    t.technician_id = _check_user(technician_id, 'technician_id')
    tracking.issue_token(t)
    session.add(t)
    FlowEngine(t, principal).start_intake(department_id, technician_id)
    _notify(t, f'New repair #{t.ticket_number} added')
    _commit_and_dispatch()
    current_app.logger.info('ticket created number=%s by=%s', t.ticket_number, principal.user_id)
    return _ticket_json(t, with_events=True), 201


@rpr_bp.put('/tickets/<int:ticket_id>')
@require_principal()
def update_ticket(ticket_id: int):
    """Field edits and/or a status transition in one call.

    Editors may change any editable field. Otherwise only the ticket's technician (or the
    active stage's) may change status, plus final price and parts when delivering or the
    device location when rejecting, after re-confirming their password.
    """
    principal = g.principal
    t = _load_ticket(ticket_id)
    data = request.json or {}
    _check_version(t, data)
    status = data.get('status') or None
    if status is not None:
        validate_status(status, RepairTicket.ALL_STATUSES)
    editor = principal.can_edit_all

    if not editor:
        stage = t.active_stage
        is_technician = t.technician_id == principal.user_id or (stage is not None and stage.technician_id == principal.user_id)
        if not is_technician:
            raise AccessDenied('You are not allowed to edit this ticket')
        allowed_keys = TECHNICIAN_KEYS | TECHNICIAN_KEYS_BY_STATUS.get(status, set())
        unknown = sorted(k for k in data if k not in allowed_keys)
        if unknown:
            raise AccessDenied(f'Fields not editable: {unknown}')
        if not data.get('password'):
            raise ValidationError('Password confirmation required', error_code='PasswordRequired')
        user = load_user(principal.user_id)
        if not user or not user.verify_password(data['password']):
            raise ValidationError('Incorrect password', error_code='PasswordInvalid')

    before = audit.snapshot(t)
    engine = FlowEngine(t, principal)

    if status == RepairTicket.STATUS_DELIVERED:
        if 'final_price' in data:
            t.final_price = optional_number(data['final_price'], 'final_price') or 0
        if 'parts' in data:
            t.parts = _parse_parts(data['parts'], principal.user_id)
    if status:
        engine.apply_status(status, data.get('rejected_device_location'))
    elif editor and 'rejected_device_location' in data and t.status == RepairTicket.STATUS_REJECTED:
        t.rejected_device_location = normalize_rejected_location(data['rejected_device_location']) or RepairTicket.LOCATION_IN_SHOP

    if editor:
        skip = {'status', 'rejected_device_location', 'version', 'password'}
        if status == RepairTicket.STATUS_DELIVERED:
            skip |= {'final_price', 'parts'}
        _apply_editor_fields(t, {k: v for k, v in data.items() if k not in skip}, principal.user_id)

    t.updated_by = principal.user_id
    t.updated_at = utcnow()
    changes = audit.diff_changes(before, audit.snapshot(t))
    field_changes = [c for c in changes if c['field'] != 'status']
    if field_changes:
        audit.append(t, audit.EVENT_UPDATE, principal.user_id, changes=field_changes)
    _notify(t, f'Repair #{t.ticket_number} updated', changes)
    _commit_and_dispatch()
    return _ticket_json(t, with_events=True)


@rpr_bp.delete('/tickets/<int:ticket_id>')
@require_principal('can_delete')
def delete_ticket(ticket_id: int):
    """Hard delete; the event trail (plus a delete event) is kept."""
    principal = g.principal
    session = get_db()
    t = _load_ticket(ticket_id)
    audit.record_deletion(t, principal.user_id)
    enqueue(f'Repair #{t.ticket_number} deleted', admin_user_ids(), 'repair', {'ticket_id': t.id, 'ticket_number': t.ticket_number})
    session.delete(t)
    _commit_and_dispatch()
    current_app.logger.info('ticket deleted number=%s by=%s', t.ticket_number, principal.user_id)
    return {'ok': True, 'id': ticket_id}


# ---------------- department flow ---------------- #
@rpr_bp.put('/tickets/<int:ticket_id>/assign-technician')
@require_principal()
def assign_technician(ticket_id: int):
    t = _load_ticket(ticket_id)
    data = request.json or {}
    _check_version(t, data)
    technician_id = optional_int(data.get('technician_id'), 'technician_id')
    FlowEngine(t, g.principal).assign_technician(technician_id, stage_id=optional_int(data.get('stage_id'), 'stage_id'))
    _notify(t, f'Technician assigned on repair #{t.ticket_number}')
    _commit_and_dispatch()
    return flow_projection(t)


@rpr_bp.put('/tickets/<int:ticket_id>/complete-step')
@require_principal()
def complete_step(ticket_id: int):
    t = _load_ticket(ticket_id)
    data = request.json or {}
    _check_version(t, data)
    FlowEngine(t, g.principal).complete_step(
        price=optional_number(data.get('price'), 'price'),
        notes=data.get('notes'),
        stage_id=optional_int(data.get('stage_id'), 'stage_id'),
    )
    _notify(t, f'Step completed on repair #{t.ticket_number}')
    _commit_and_dispatch()
    return flow_projection(t)


@rpr_bp.put('/tickets/<int:ticket_id>/move-next')
@require_principal()
def move_next(ticket_id: int):
    t = _load_ticket(ticket_id)
    data = request.json or {}
    _check_version(t, data)
    FlowEngine(t, g.principal).move_next(optional_int(data.get('department_id'), 'department_id'))
    _notify(t, f'Repair #{t.ticket_number} moved to the next department')
    _commit_and_dispatch()
    return flow_projection(t)


@rpr_bp.get('/tickets/<int:ticket_id>/timeline')
@require_principal()
def timeline(ticket_id: int):
    principal = g.principal
    t = _load_ticket(ticket_id)
    if not can_view_ticket(principal, t):
        raise AccessDenied('You are not allowed to view this ticket')
    projection = flow_projection(t)
    current = t.current_stage
    active = t.active_stage
    if current is None:
        # nothing to guard before the first department is chosen
        can_advance = principal.can_edit_all or principal.has_intake
    else:
        can_advance = current.status == FlowStage.STATUS_COMPLETED and allows(principal, t, current, ACTION_MOVE_NEXT)
    acl = {
        'can_assign': active is not None and allows(principal, t, active, ACTION_ASSIGN_TECHNICIAN, technician_id=principal.user_id),
        'can_complete': active is not None and allows(principal, t, active, ACTION_COMPLETE_STEP),
        'can_advance': bool(can_advance),
    }
    return {
        'current_department': projection['current_department'],
        'flows': projection['flows'],
        'events': audit.read_timeline(t),
        'department_price_total': sum((s.price or 0) for s in t.stages),
        'acl': acl,
        'version': t.version,
    }


@rpr_bp.post('/tickets/<int:ticket_id>/public-tracking')
@require_principal('is_admin')
def public_tracking(ticket_id: int):
    """Enable/disable, visibility flags, and token (re)generation."""
    t = _load_ticket(ticket_id)
    tracking.configure(t, request.json or {})
    get_db().commit()
    return {
        'token': t.tracking_token,
        'url': tracking.tracking_url(t.tracking_token),
        'tracking': tracking.tracking_json(t),
    }
