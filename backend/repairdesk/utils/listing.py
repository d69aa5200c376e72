from __future__ import annotations
"""List envelope, pagination and conditional GET support shared by list endpoints."""
import hashlib
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime, format_datetime
from typing import Iterable, Optional, Tuple
from flask import request, make_response
from sqlalchemy.orm import Query
from repairdesk.config.pagination import normalize_pagination
from repairdesk.errors import ValidationError
from repairdesk.utils.clock import ensure_utc, iso

TIMESTAMP_TOLERANCE = timedelta(seconds=1)


def canonicalize_timestamp(dt: datetime) -> datetime:
    """UTC-aware timestamp truncated to whole seconds."""
    return ensure_utc(dt).replace(microsecond=0)


def apply_pagination(q: Query) -> Tuple[Query, int, int, int]:
    try:
        limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    except ValueError as e:
        raise ValidationError(str(e))
    total = q.order_by(None).count()
    return q.offset(offset).limit(limit), total, limit, offset


def compute_etag(ids: Iterable[int], total: int, limit: int, offset: int, latest_ts: Optional[str] = '') -> str:
    seed = f"{list(ids)}|{total}|{limit}|{offset}|{latest_ts or ''}"
    return hashlib.sha256(seed.encode()).hexdigest()[:32]


def build_list_payload(rows: list, total: int, limit: int, offset: int):
    return {
        'data': rows,
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'returned': len(rows),
        },
    }


def _http_date(dt: datetime) -> str:
    return format_datetime(dt, usegmt=True)


def _stamp(resp, etag: str, latest: Optional[datetime]):
    resp.headers['ETag'] = etag
    if latest is not None:
        resp.headers['Last-Modified'] = _http_date(latest)
        resp.headers['X-Last-Modified-ISO'] = iso(latest)
    return resp


def make_cached_list_response(rows: list, total: int, limit: int, offset: int, latest_ts: Optional[datetime] = None):
    latest = canonicalize_timestamp(latest_ts) if latest_ts else None
    etag = compute_etag([r.get('id') for r in rows], total, limit, offset, iso(latest) if latest else '')
    resp = make_response(build_list_payload(rows, total, limit, offset))
    return _stamp(resp, etag, latest), etag


def _parse_if_modified_since(header_val: str) -> Optional[datetime]:
    if not header_val:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(header_val.replace('Z', '+00:00')))
    except ValueError:
        pass
    try:
        return ensure_utc(parsedate_to_datetime(header_val))
    except (TypeError, ValueError):
        return None


def handle_conditional(etag_value: str, latest_ts: Optional[datetime]):
    """304 response when If-None-Match (preferred) or If-Modified-Since is satisfied, else None."""
    latest = canonicalize_timestamp(latest_ts) if latest_ts else None
    inm = request.headers.get('If-None-Match')
    if inm:
        if inm.strip('"') == etag_value:
            return _stamp(make_response('', 304), etag_value, latest)
        return None
    ims = _parse_if_modified_since(request.headers.get('If-Modified-Since', ''))
    if ims and latest and latest <= canonicalize_timestamp(ims) + TIMESTAMP_TOLERANCE:
        return _stamp(make_response('', 304), etag_value, latest)
    return None


__all__ = ['apply_pagination', 'make_cached_list_response', 'handle_conditional', 'compute_etag', 'canonicalize_timestamp']
