from flask import Blueprint
from repairdesk.errors import ValidationError, ResourceNotFound
from repairdesk.services.tracking import record_view, public_view

public_bp = Blueprint('public', __name__)


@public_bp.get('/repairs/<token>')
def public_repair(token: str):
    """Unauthenticated customer view, addressed only by the tracking token."""
    token = (token or '').strip()
    if not token:
        raise ValidationError('token required')
    ticket = record_view(token)
    if ticket is None:
        raise ResourceNotFound('Tracking link not found')
    return {'repair': public_view(ticket)}
