from flask import Blueprint, request, g
from sqlalchemy import select, update, delete, func
from repairdesk import get_db
from repairdesk.decorators.auth import require_principal
from repairdesk.errors import ValidationError, ResourceNotFound
from repairdesk.models.notification import Notification, PushSubscription
from repairdesk.utils.clock import iso

ntf_bp = Blueprint('notifications', __name__)

FEED_LIMIT = 50
MAX_FEED_LIMIT = 200


def _notification_json(n: Notification):
    return {
        'id': n.id,
        'message': n.message,
        'type': n.type,
        'read': bool(n.read),
        'meta': dict(n.meta or {}),
        'created_at': iso(n.created_at),
    }


def _read_flag(data) -> bool:
    value = data.get('read', True)
    if not isinstance(value, bool):
        raise ValidationError('read must be a boolean')
    return value


@ntf_bp.get('')
@require_principal()
def list_notifications():
    """Caller's feed, newest first; ?unread=true narrows to unread."""
    try:
        limit = max(1, min(MAX_FEED_LIMIT, int(request.args.get('limit', FEED_LIMIT))))
        offset = max(0, int(request.args.get('offset', 0)))
    except ValueError:
        raise ValidationError('limit/offset must be int')
    q = select(Notification).where(Notification.user_id == g.principal.user_id)
    if request.args.get('unread') == 'true':
        q = q.where(Notification.read.is_(False))
    rows = get_db().execute(
        q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    return {'data': [_notification_json(n) for n in rows]}


@ntf_bp.get('/unread-count')
@require_principal()
def unread_count():
    count = get_db().execute(
        select(func.count(Notification.id)).where(Notification.user_id == g.principal.user_id, Notification.read.is_(False))
    ).scalar_one()
    return {'count': count}


@ntf_bp.route('/<int:notification_id>/read', methods=['PUT', 'POST'])
@require_principal()
def mark_read(notification_id: int):
    session = get_db()
    n = session.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == g.principal.user_id)
    ).scalar_one_or_none()
    if not n:
        raise ResourceNotFound('Notification not found')
    n.read = _read_flag(request.json or {})
    session.commit()
    return {'ok': True, 'notification': _notification_json(n)}


@ntf_bp.post('/mark-all-read')
@require_principal()
def mark_all_read():
    session = get_db()
    result = session.execute(
        update(Notification)
        .where(Notification.user_id == g.principal.user_id, Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return {'ok': True, 'modified': result.rowcount}


@ntf_bp.route('/clear', methods=['DELETE', 'POST'])
@require_principal()
def clear():
    """Delete read notifications, or all of them with ?all=true."""
    session = get_db()
    stmt = delete(Notification).where(Notification.user_id == g.principal.user_id)
    if (request.args.get('all') or '').lower() != 'true':
        stmt = stmt.where(Notification.read.is_(True))
    result = session.execute(stmt.execution_options(synchronize_session=False))
    session.commit()
    return {'ok': True, 'deleted': result.rowcount}


@ntf_bp.post('/push/subscribe')
@require_principal()
def push_subscribe():
    """Register (or move to the caller) a browser push subscription, keyed by endpoint."""
    data = request.json or {}
    endpoint = (data.get('endpoint') or '').strip()
    keys = data.get('keys') or {}
    if not endpoint or not isinstance(keys, dict):
        raise ValidationError('endpoint and keys required')
    session = get_db()
    sub = session.execute(select(PushSubscription).where(PushSubscription.endpoint == endpoint)).scalar_one_or_none()
    if sub is None:
        sub = PushSubscription(endpoint=endpoint)
        session.add(sub)
    sub.user_id = g.principal.user_id
    sub.p256dh = keys.get('p256dh')
    sub.auth = keys.get('auth')
    session.commit()
    return {'ok': True, 'id': sub.id}, 201


@ntf_bp.post('/push/unsubscribe')
@require_principal()
def push_unsubscribe():
    endpoint = ((request.json or {}).get('endpoint') or '').strip()
    if not endpoint:
        raise ValidationError('endpoint required')
    session = get_db()
    result = session.execute(
        delete(PushSubscription)
        .where(PushSubscription.endpoint == endpoint, PushSubscription.user_id == g.principal.user_id)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return {'ok': True, 'deleted': result.rowcount}
