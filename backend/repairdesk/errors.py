from __future__ import annotations
"""Typed HTTP errors raised by services and routes.

Each class is a werkzeug ``HTTPException`` so the app-level handler renders it
like any ``abort()``; ``error_code`` adds a stable machine-readable code to the
error envelope (e.g. ``NotCurrentStep``).
"""
from typing import Optional
from werkzeug.exceptions import BadRequest, Unauthorized, Forbidden, NotFound, Conflict


class _Coded:
    error_code = 'Error'

    def __init__(self, description: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(description=description)  # type: ignore[call-arg]
        if error_code:
            self.error_code = error_code


class ValidationError(_Coded, BadRequest):
    error_code = 'ValidationError'


class AuthRequired(_Coded, Unauthorized):
    error_code = 'Unauthorized'


class AccessDenied(_Coded, Forbidden):
    error_code = 'Forbidden'


class ResourceNotFound(_Coded, NotFound):
    error_code = 'NotFound'


class TransitionConflict(_Coded, Conflict):
    error_code = 'Conflict'


class NoActiveFlow(ValidationError):
    error_code = 'NoActiveFlow'


class NotCurrentStep(TransitionConflict):
    error_code = 'NotCurrentStep'


class CurrentNotCompleted(TransitionConflict):
    error_code = 'CurrentNotCompleted'


class InvalidTransition(TransitionConflict):
    error_code = 'InvalidTransition'


class ConcurrentUpdate(TransitionConflict):
    error_code = 'ConcurrentUpdate'


__all__ = [
    'ValidationError', 'AuthRequired', 'AccessDenied', 'ResourceNotFound', 'TransitionConflict',
    'NoActiveFlow', 'NotCurrentStep', 'CurrentNotCompleted', 'InvalidTransition', 'ConcurrentUpdate',
]
