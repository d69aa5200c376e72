from functools import wraps
from flask import g
from flask_jwt_extended import verify_jwt_in_request
from repairdesk.errors import AccessDenied
from repairdesk.services.policy import current_principal


def require_principal(*checks: str):
    """Verify the JWT, resolve the principal from storage into ``g.principal``.

    ``checks`` are Principal attribute names (``can_edit_all``, ``is_admin`` ...);
    the request passes when any of them holds. With no checks any active user passes.
    """
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            principal = current_principal()
            if checks and not any(getattr(principal, c) for c in checks):
                raise AccessDenied('Missing permission')
            g.principal = principal
            return fn(*args, **kwargs)
        return wrapper
    return outer
