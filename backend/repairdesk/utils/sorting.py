from __future__ import annotations
from repairdesk.errors import ValidationError


def apply_multi_sort(query, sort_expr: str | None, allowed: dict, tie_breaker, default=None):
    """Apply multi-field sort to a SQLAlchemy query.

    sort_expr: comma-separated keys, '-' prefix for descending (``-created_at,status``).
    default: clauses used when no sort is requested; tie_breaker is always appended.
    """
    if not sort_expr:
        return query.order_by(*(default or []), tie_breaker.desc())
    clauses = []
    for raw in sort_expr.split(','):
        token = raw.strip()
        if not token:
            continue
        desc = token.startswith('-')
        key = token.lstrip('-')
        col = allowed.get(key)
        if col is None:
            raise ValidationError(f'Invalid sort field {key}')
        clauses.append(col.desc() if desc else col.asc())
    clauses.append(tie_breaker.desc())
    return query.order_by(*clauses)
