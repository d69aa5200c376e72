from __future__ import annotations
"""Reusable validation helpers for request payloads.

Status validation plus small coercions shared by the repair routes, all raising
ValidationError (400) with a consistent description.
"""
from datetime import datetime
from typing import Any, Iterable, Optional
from repairdesk.errors import ValidationError
from repairdesk.utils.clock import ensure_utc


def validate_status(new_status: str, allowed: Iterable[str], field_name: str = 'status') -> str:
    """Validate that new_status is inside allowed.

    Returns the status (to enable inline usage) or raises ValidationError.
    """
    if new_status not in allowed:
        raise ValidationError(f"{field_name} invalid")
    return new_status


def optional_int(value: Any, field_name: str) -> Optional[int]:
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{field_name} invalid')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field_name} invalid')


def optional_number(value: Any, field_name: str) -> Optional[float]:
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{field_name} invalid')
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field_name} invalid')


def optional_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if value is None or value == '':
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))
    except ValueError:
        raise ValidationError(f'{field_name} invalid')

__all__ = ['validate_status', 'optional_int', 'optional_number', 'optional_datetime']
