import pytest
from repairdesk.models.authz import ROLE_ADMIN
from tests.test_utils_seed import unique, ensure_user, ensure_department
from tests.test_lifecycle_helpers import jwt_headers


@pytest.fixture()
def actors(app_instance):
    with app_instance.app_context():
        admin = ensure_user(unique('iam-admin'), role=ROLE_ADMIN)
        settings = ensure_user(unique('iam-settings'), permissions={'settings': True})
        plain = ensure_user(unique('iam-plain'))
        dept = ensure_department(unique('IamDept'))
        return {
            'admin': jwt_headers(admin.id),
            'settings': jwt_headers(settings.id),
            'plain': jwt_headers(plain.id),
            'plain_id': plain.id,
            'dept': dept.id,
        }


def test_create_user(client, actors):
    username = unique('newbie')
    body = {'username': username, 'password': 'pw', 'permissions': {'receiveDevice': True}, 'department_id': actors['dept']}
    assert client.post('/iam/users', json=body, headers=actors['plain']).status_code == 403
    resp = client.post('/iam/users', json=body, headers=actors['settings'])
    assert resp.status_code == 201, resp.get_json()
    created = resp.get_json()
    assert created['role'] == 'technician'
    assert created['capabilities']['has_intake'] is True
    assert created['department_id'] == actors['dept']
    dup = client.post('/iam/users', json=body, headers=actors['settings'])
    assert dup.status_code == 400
    assert client.post('/iam/auth/login', json={'username': username, 'password': 'pw'}).status_code == 200


def test_create_user_validation(client, actors):
    h = actors['settings']
    assert client.post('/iam/users', json={'username': unique('x')}, headers=h).status_code == 400
    assert client.post('/iam/users', json={'username': unique('x'), 'password': 'pw', 'role': 'wizard'}, headers=h).status_code == 400
    resp = client.post('/iam/users', json={'username': unique('x'), 'password': 'pw', 'permissions': {'flyPlane': True}}, headers=h)
    assert resp.status_code == 400
    assert 'flyPlane' in resp.get_json()['error']['detail']
    assert client.post('/iam/users', json={'username': unique('x'), 'password': 'pw', 'department_id': 987654321}, headers=h).status_code == 400


def test_only_admin_grants_admin(client, actors):
    url = f"/iam/users/{actors['plain_id']}/permissions"
    resp = client.put(url, json={'permissions': {'adminOverride': True}}, headers=actors['settings'])
    assert resp.status_code == 403
    resp = client.put(url, json={'role': 'admin'}, headers=actors['admin'])
    assert resp.status_code == 200
    assert resp.get_json()['capabilities']['is_admin'] is True
    resp = client.put(url, json={'role': 'technician', 'commission_pct': 12.5}, headers=actors['admin'])
    assert resp.get_json()['commission_pct'] == 12.5


def test_last_admin_cannot_be_removed(client, app_instance, monkeypatch):
    import repairdesk.routes.iam as iam_mod
    with app_instance.app_context():
        solo = ensure_user(unique('solo-admin'), role=ROLE_ADMIN)
        headers = jwt_headers(solo.id)
    # pretend the rest of the shared database has no other admins
    monkeypatch.setattr(iam_mod, 'admin_user_ids', lambda: [solo.id])
    resp = client.put(f'/iam/users/{solo.id}/permissions', json={'role': 'technician'}, headers=headers)
    assert resp.status_code == 409
    assert resp.get_json()['error']['code'] == 'LastAdmin'
    resp = client.put(f'/iam/users/{solo.id}/permissions', json={'is_active': False}, headers=headers)
    assert resp.status_code == 409


def test_list_users(client, actors, app_instance):
    with app_instance.app_context():
        member = ensure_user(unique('member'), department_id=actors['dept'])
    resp = client.get(f"/iam/users?department_id={actors['dept']}", headers=actors['plain'])
    assert resp.status_code == 200
    body = resp.get_json()
    assert [u['id'] for u in body['data']] == [member.id]
    assert body['pagination']['total'] == 1
    assert 'permissions' not in body['data'][0]
    again = client.get(f"/iam/users?department_id={actors['dept']}", headers={**actors['plain'], 'If-None-Match': resp.headers['ETag']})
    assert again.status_code == 304
    assert client.get('/iam/users?department_id=x', headers=actors['plain']).status_code == 400
