from __future__ import annotations
"""Notification bridge: outbox writes on the mutating request, delivery by a separate drain.

The ticket transition and its outbox row commit together; NotificationDispatcher.drain()
later fans each pending row out to the configured channels (in-app feed, web push).
Delivery is at-least-once: a row stays pending until every channel accepted it, and
is marked failed after NOTIFY_MAX_ATTEMPTS.
"""
from typing import Any, Callable, Dict, Iterable, List, Optional
from flask import current_app
from sqlalchemy import select
from werkzeug.utils import import_string
from repairdesk import get_db
from repairdesk.models.notification import NotificationOutbox, Notification, PushSubscription
from repairdesk.models.repair_ticket import RepairTicket
from repairdesk.services.policy import admin_user_ids
from repairdesk.utils.clock import utcnow

PushSender = Callable[[Dict[str, Any], Dict[str, Any]], Optional[int]]


def enqueue(message: str, recipients: Iterable[int], kind: str = 'repair', meta: Optional[Dict[str, Any]] = None) -> Optional[NotificationOutbox]:
    ids = sorted({int(r) for r in recipients if r})
    if not ids:
        return None
    row = NotificationOutbox(kind=kind, recipients=ids, message=message, meta=meta or {}, delivered_channels=[])
    get_db().add(row)
    return row


def ticket_recipients(ticket: RepairTicket, include_technicians: bool = True) -> List[int]:
    recipients = set(admin_user_ids())
    if include_technicians:
        if ticket.technician_id:
            recipients.add(ticket.technician_id)
        stage = ticket.active_stage
        if stage is not None and stage.technician_id:
            recipients.add(stage.technician_id)
    return sorted(recipients)


def notify_ticket_changed(ticket: RepairTicket, message: str, changes: Optional[List[Dict[str, Any]]] = None, include_technicians: bool = True) -> Optional[NotificationOutbox]:
    """Record a "ticket changed" signal; never raises into the caller's transition."""
    try:
        meta = {
            'ticket_id': ticket.id,
            'ticket_number': ticket.ticket_number,
            'device_type': ticket.device_type,
            'changes': changes or [],
        }
        return enqueue(message, ticket_recipients(ticket, include_technicians), 'repair', meta)
    except Exception:
        current_app.logger.exception('notification enqueue failed for ticket %s', ticket.ticket_number)
        return None


def push_payload(row: NotificationOutbox) -> Dict[str, Any]:
    meta = row.meta or {}
    if row.kind == 'repair' and meta.get('ticket_number'):
        title = f"Repair update #{meta['ticket_number']}"
    elif row.kind == 'repair':
        title = 'Repair update'
    else:
        title = 'Notification'
    url = f"/repairs/{meta['ticket_id']}" if meta.get('ticket_id') else '/'
    return {
        'title': title,
        'body': row.message or '',
        'icon': '/icons/icon-192.png',
        'badge': '/icons/icon-192.png',
        'data': {'url': url, **meta},
    }


class InAppChannel:
    """Per-user notification feed rows (what realtime clients poll or get pushed)."""
    name = 'in_app'

    def deliver(self, session, row: NotificationOutbox) -> None:
        session.add_all([
            Notification(user_id=uid, message=row.message, type=row.kind, meta=dict(row.meta or {}))
            for uid in row.recipients or []
        ])


def log_push_sender(subscription: Dict[str, Any], payload: Dict[str, Any]) -> Optional[int]:
    current_app.logger.info('push -> %s: %s', subscription.get('endpoint'), payload.get('title'))
    return 201


class PushChannel:
    name = 'push'
    GONE = (404, 410)

    def __init__(self, sender: Optional[PushSender] = None):
        self.sender = sender

    def _sender(self) -> PushSender:
        if self.sender is not None:
            return self.sender
        path = current_app.config.get('PUSH_SENDER')
        return import_string(path) if path else log_push_sender

    def deliver(self, session, row: NotificationOutbox) -> None:
        recipients = row.recipients or []
        if not recipients:
            return
        subs = session.execute(select(PushSubscription).where(PushSubscription.user_id.in_(recipients))).scalars().all()
        payload = push_payload(row)
        sender = self._sender()
        for sub in subs:
            info = {'endpoint': sub.endpoint, 'keys': {'p256dh': sub.p256dh, 'auth': sub.auth}}
            status = sender(info, payload)
            if status in self.GONE:
                # dead subscription
                session.delete(sub)


def default_channels() -> List[Any]:
    return [InAppChannel(), PushChannel()]


class NotificationDispatcher:
    def __init__(self, channels: Optional[List[Any]] = None, max_attempts: Optional[int] = None):
        self.channels = channels if channels is not None else default_channels()
        self.max_attempts = max_attempts

    def _max_attempts(self) -> int:
        if self.max_attempts is not None:
            return self.max_attempts
        return int(current_app.config.get('NOTIFY_MAX_ATTEMPTS', 5))

    def drain(self, limit: int = 100) -> Dict[str, int]:
        session = get_db()
        rows = session.execute(
            select(NotificationOutbox)
            .where(NotificationOutbox.status == NotificationOutbox.STATUS_PENDING)
            .order_by(NotificationOutbox.id.asc())
            .limit(limit)
        ).scalars().all()
        counts = {'sent': 0, 'failed': 0, 'retry': 0}
        for row in rows:
            row.attempts = (row.attempts or 0) + 1
            done = list(row.delivered_channels or [])
            errors = []
            for channel in self.channels:
                if channel.name in done:
                    continue
                try:
                    channel.deliver(session, row)
                    done.append(channel.name)
                except Exception as e:
                    current_app.logger.warning('notification %s channel %s failed: %s', row.id, channel.name, e)
                    errors.append(f'{channel.name}: {e}')
            row.delivered_channels = done
            if errors:
                row.last_error = '; '.join(errors)
                if row.attempts >= self._max_attempts():
                    row.status = NotificationOutbox.STATUS_FAILED
                    counts['failed'] += 1
                else:
                    counts['retry'] += 1
            else:
                row.status = NotificationOutbox.STATUS_SENT
                row.dispatched_at = utcnow()
                row.last_error = None
                counts['sent'] += 1
            session.commit()
        return counts


def dispatch_inline() -> None:
    """Drain right after a mutating request when configured; errors stay out of the response."""
    if not current_app.config.get('NOTIFY_DISPATCH_INLINE'):
        return
    try:
        NotificationDispatcher().drain()
    except Exception:
        current_app.logger.exception('inline notification drain failed')
        get_db().rollback()
