from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from flask import current_app
from sqlalchemy import select
from repairdesk import get_db
from repairdesk.models.audit import RepairEvent
from repairdesk.models.authz import User
from repairdesk.models.repair_ticket import RepairTicket
from repairdesk.utils.clock import utcnow, ensure_utc, iso

EVENT_CREATE = 'create'
EVENT_ASSIGN_TECHNICIAN = 'assign_technician'
EVENT_FLOW_START = 'flow_start'
EVENT_FLOW_COMPLETE = 'flow_complete'
EVENT_MOVE_NEXT = 'move_next'
EVENT_STATUS_CHANGE = 'status_change'
EVENT_UPDATE = 'update'
EVENT_DELETE = 'delete'

_OPT_INT = (int, type(None))
_OPT_STR = (str, type(None))
_OPT_NUM = (int, float, type(None))

# event type -> payload field -> accepted types
EVENT_PAYLOADS: Dict[str, Dict[str, tuple]] = {
    EVENT_CREATE: {'department_id': _OPT_INT, 'technician_id': _OPT_INT},
    EVENT_ASSIGN_TECHNICIAN: {'stage': (int,), 'technician_id': _OPT_INT, 'previous_technician_id': _OPT_INT},
    EVENT_FLOW_START: {'stage': (int,), 'department_id': (int,), 'technician_id': _OPT_INT},
    EVENT_FLOW_COMPLETE: {'stage': (int,), 'price': _OPT_NUM, 'notes': _OPT_STR, 'forced': (bool,)},
    EVENT_MOVE_NEXT: {'stage': (int,), 'department_id': (int,), 'from_department_id': _OPT_INT},
    EVENT_STATUS_CHANGE: {'from_status': _OPT_STR, 'status': (str,)},
    EVENT_UPDATE: {'changes': (list,)},
    EVENT_DELETE: {},
}
EVENT_TYPES = tuple(EVENT_PAYLOADS.keys())

TRACKED_FIELDS = [
    'status', 'technician_id', 'final_price', 'notes', 'recipient_id', 'parts', 'delivery_date',
    'return_date', 'rejected_device_location', 'customer_name', 'phone', 'device_type', 'color',
    'issue', 'price', 'eta', 'notes_public', 'has_warranty', 'warranty_end', 'warranty_notes',
]
SUMMARY_LABELS = {
    'status': 'Status',
    'final_price': 'Final price',
    'price': 'Price',
    'delivery_date': 'Delivery date',
    'rejected_device_location': 'Device location',
    'technician_id': 'Technician',
}


def build_payload(event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a payload against its event type's fixed shape."""
    fields = EVENT_PAYLOADS.get(event_type)
    if fields is None:
        raise ValueError(f'unknown event type {event_type}')
    extra = set(payload) - set(fields)
    if extra:
        raise ValueError(f'{event_type} payload has unexpected keys {sorted(extra)}')
    out: Dict[str, Any] = {}
    for name, types in fields.items():
        if name not in payload:
            raise ValueError(f'{event_type} payload missing {name}')
        value = payload[name]
        if isinstance(value, bool) and bool not in types:
            raise ValueError(f'{event_type}.{name} has wrong type')
        if not isinstance(value, types):
            raise ValueError(f'{event_type}.{name} has wrong type')
        out[name] = value
    return out


def append(ticket: RepairTicket, event_type: str, actor_id: Optional[int], **payload) -> Optional[RepairEvent]:
    """Append an immutable event to the ticket; failures are logged, never raised."""
    try:
        ev = RepairEvent(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            type=event_type,
            actor_id=actor_id,
            created_at=utcnow(),
            payload=build_payload(event_type, payload),
        )
        ticket.events.append(ev)
        return ev
    except Exception:
        current_app.logger.exception('audit append failed for ticket %s (%s)', ticket.ticket_number, event_type)
        return None


def record_deletion(ticket: RepairTicket, actor_id: Optional[int]) -> Optional[RepairEvent]:
    """Deletion event is added straight to the session so it survives the ticket row."""
    try:
        ev = RepairEvent(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            type=EVENT_DELETE,
            actor_id=actor_id,
            created_at=utcnow(),
            payload=build_payload(EVENT_DELETE, {}),
        )
        get_db().add(ev)
        return ev
    except Exception:
        current_app.logger.exception('audit delete record failed for ticket %s', ticket.ticket_number)
        return None


def _well_formed(ev: Any) -> bool:
    return (
        isinstance(ev, RepairEvent)
        and ev.type in EVENT_TYPES
        and isinstance(ev.created_at, datetime)
        and isinstance(ev.payload, dict)
    )


def normalize_for_read(events: Iterable[Any], limit: Optional[int] = None) -> List[RepairEvent]:
    """Well-formed events, newest first, capped to the read window."""
    if limit is None:
        limit = int(current_app.config.get('AUDIT_READ_WINDOW', 200))
    kept = [e for e in (events or []) if _well_formed(e)]
    kept.sort(key=lambda e: (ensure_utc(e.created_at), e.id or 0), reverse=True)
    return kept[:max(0, limit)]


def enrich(events: List[RepairEvent]) -> List[Dict[str, Any]]:
    """Serialize events with the actor's current display identity (resolved now, never stored)."""
    actor_ids = {e.actor_id for e in events if e.actor_id}
    names: Dict[int, str] = {}
    if actor_ids:
        for u in get_db().execute(select(User).where(User.id.in_(actor_ids))).scalars():
            names[u.id] = u.display_name
    out = []
    for e in events:
        actor = None
        if e.actor_id:
            actor = {'id': e.actor_id, 'name': names.get(e.actor_id)}
        out.append({
            'id': e.id,
            'type': e.type,
            'actor_id': e.actor_id,
            'actor': actor,
            'at': iso(e.created_at),
            'payload': dict(e.payload or {}),
        })
    return out


def read_timeline(ticket: RepairTicket, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    return enrich(normalize_for_read(ticket.events, limit))


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return iso(value)
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    return value


def snapshot(ticket: RepairTicket, fields: Iterable[str] = TRACKED_FIELDS) -> Dict[str, Any]:
    snap: Dict[str, Any] = {}
    for f in fields:
        if f == 'parts':
            snap[f] = [
                {'name': p.name, 'cost': p.cost, 'qty': p.qty, 'paid': p.paid}
                for p in ticket.parts
            ]
        else:
            snap[f] = _json_safe(getattr(ticket, f))
    return snap


def diff_changes(before: Dict[str, Any], after: Dict[str, Any], fields: Iterable[str] = TRACKED_FIELDS) -> List[Dict[str, Any]]:
    changes = []
    for f in fields:
        if before.get(f) != after.get(f):
            changes.append({'field': f, 'from': before.get(f), 'to': after.get(f)})
    return changes


def summarize_changes(changes: List[Dict[str, Any]], limit: int = 5) -> List[Dict[str, Any]]:
    out = []
    for c in changes or []:
        if c.get('field') not in SUMMARY_LABELS:
            continue
        out.append({
            'field': c['field'],
            'label': SUMMARY_LABELS[c['field']],
            'from': c.get('from') if c.get('from') is not None else '-',
            'to': c.get('to') if c.get('to') is not None else '-',
        })
    return out[:limit]
