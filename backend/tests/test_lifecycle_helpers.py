"""Reusable test helpers for the department flow endpoints.

Patterns unified:
 - Auth header creation using a direct JWT (identity only, like /iam/auth/login issues).
 - A small org fixture: two departments, an admin, an intake clerk, one technician per
   department and a monitor for the second department.
 - Flow call wrappers with status assertions.
"""
from __future__ import annotations
from types import SimpleNamespace
from flask_jwt_extended import create_access_token
from tests.test_utils_seed import unique, ensure_department, ensure_user
from repairdesk.models.authz import ROLE_ADMIN

# ---------- Generic Auth Helpers ---------- #

def jwt_headers(user_id: int):
    token = create_access_token(identity=str(user_id))
    return {'Authorization': f'Bearer {token}'}


def seed_org(app):
    """Create a fresh org; returns ids plus ready-made auth headers per actor."""
    with app.app_context():
        monitor = ensure_user(unique('monitor'))
        d1 = ensure_department(unique('Bench'))
        d2 = ensure_department(unique('Board'), monitor_id=monitor.id)
        admin = ensure_user(unique('admin'), role=ROLE_ADMIN)
        intake = ensure_user(unique('intake'), permissions={'receiveDevice': True})
        tech1 = ensure_user(unique('tech1'), department_id=d1.id)
        tech2 = ensure_user(unique('tech2'), department_id=d2.id)
        users = {'admin': admin, 'intake': intake, 'tech1': tech1, 'tech2': tech2, 'monitor': monitor}
        return SimpleNamespace(
            d1=d1.id,
            d2=d2.id,
            **{f'{k}_id': u.id for k, u in users.items()},
            headers={k: jwt_headers(u.id) for k, u in users.items()},
        )

# ---------- Assertion Helpers ---------- #

def create_ticket(client, headers, expected_status: int = 201, **payload):
    body = {'customer_name': unique('Customer'), 'device_type': 'Phone'}
    body.update(payload)
    resp = client.post('/repairs/tickets', json=body, headers=headers)
    assert resp.status_code == expected_status, resp.get_json()
    return resp.get_json()


def flow_call(client, ticket_id: int, action: str, headers, expected_status: int = 200, **payload):
    resp = client.put(f'/repairs/tickets/{ticket_id}/{action}', json=payload, headers=headers)
    assert resp.status_code == expected_status, resp.get_json()
    return resp.get_json()


def set_status(client, ticket_id: int, headers, status: str, expected_status: int = 200, **payload):
    resp = client.put(f'/repairs/tickets/{ticket_id}', json={'status': status, **payload}, headers=headers)
    assert resp.status_code == expected_status, resp.get_json()
    return resp.get_json()


def event_types(body):
    return [e['type'] for e in body['events']]


__all__ = ['jwt_headers', 'seed_org', 'create_ticket', 'flow_call', 'set_status', 'event_types']
