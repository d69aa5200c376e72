from __future__ import annotations
"""Public tracking: per-ticket token, visibility flags and the customer-safe view."""
import secrets
import string
from typing import Any, Dict, Optional
from flask import current_app, request
from sqlalchemy import update, select
from repairdesk import get_db
from repairdesk.models.repair_ticket import RepairTicket
from repairdesk.utils.clock import utcnow, iso

_ALPHABET = string.ascii_letters + string.digits

MILESTONES = (
    ('created_at', 'Received'),
    ('start_time', 'Technician started work'),
    ('end_time', 'Repair completed'),
    ('delivery_date', 'Delivered'),
)


def generate_token(length: Optional[int] = None) -> str:
    n = length or int(current_app.config.get('TRACKING_TOKEN_LENGTH', 12))
    return ''.join(secrets.choice(_ALPHABET) for _ in range(n))


def tracking_url(token: str) -> str:
    base = current_app.config.get('PUBLIC_BASE_URL') or request.host_url
    return f"{base.rstrip('/')}/t/{token}"


def issue_token(ticket: RepairTicket) -> str:
    """Fresh token; the view counter restarts with it."""
    ticket.tracking_token = generate_token()
    ticket.tracking_created_at = utcnow()
    ticket.tracking_views = 0
    ticket.tracking_last_viewed_at = None
    return ticket.tracking_token


def configure(ticket: RepairTicket, data: Dict[str, Any]) -> RepairTicket:
    if isinstance(data.get('enabled'), bool):
        ticket.tracking_enabled = data['enabled']
    if 'show_price' in data:
        ticket.tracking_show_price = bool(data['show_price'])
    if 'show_eta' in data:
        ticket.tracking_show_eta = bool(data['show_eta'])
    if data.get('regenerate') or not ticket.tracking_token:
        issue_token(ticket)
    return ticket


def tracking_json(ticket: RepairTicket) -> Dict[str, Any]:
    return {
        'enabled': bool(ticket.tracking_enabled),
        'token': ticket.tracking_token,
        'show_price': bool(ticket.tracking_show_price),
        'show_eta': ticket.tracking_show_eta is not False,
        'created_at': iso(ticket.tracking_created_at),
        'views': ticket.tracking_views or 0,
        'last_viewed_at': iso(ticket.tracking_last_viewed_at),
    }


def record_view(token: str) -> Optional[RepairTicket]:
    """Count one public view with a single UPDATE and return the ticket, or None if the token is unknown or disabled."""
    session = get_db()
    match = (RepairTicket.tracking_token == token, RepairTicket.tracking_enabled.is_(True))
    result = session.execute(
        update(RepairTicket)
        .where(*match)
        .values(tracking_views=RepairTicket.tracking_views + 1, tracking_last_viewed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        session.rollback()
        return None
    session.commit()
    stmt = select(RepairTicket).where(*match).execution_options(populate_existing=True)
    return session.execute(stmt).scalar_one_or_none()


def public_view(ticket: RepairTicket) -> Dict[str, Any]:
    """Customer-safe projection: never events or internal notes; price and ETA per flags."""
    show_price = bool(ticket.tracking_show_price)
    show_eta = ticket.tracking_show_eta is not False
    timeline = [
        {'key': key, 'label': label, 'at': iso(getattr(ticket, key))}
        for key, label in MILESTONES
        if getattr(ticket, key)
    ]
    return {
        'ticket_number': ticket.ticket_number,
        'device_type': ticket.device_type,
        'status': ticket.status,
        'created_at': iso(ticket.created_at),
        'start_time': iso(ticket.start_time),
        'end_time': iso(ticket.end_time),
        'delivery_date': iso(ticket.delivery_date),
        'eta': iso(ticket.eta) if show_eta else None,
        'notes_public': ticket.notes_public or None,
        'final_price': ticket.final_price if show_price else None,
        'timeline': timeline,
        'tracking': {
            'views': ticket.tracking_views or 0,
            'last_viewed_at': iso(ticket.tracking_last_viewed_at),
        },
    }


__all__ = ['generate_token', 'tracking_url', 'issue_token', 'configure', 'tracking_json', 'record_view', 'public_view']
