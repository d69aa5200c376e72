from repairdesk import get_db
from repairdesk.models.authz import User, ROLE_ADMIN
from tests.test_utils_seed import unique, ensure_user, ensure_department
from tests.test_lifecycle_helpers import jwt_headers


def _login(client, login, password='pw'):
    return client.post('/iam/auth/login', json={'username': login, 'password': password})


def test_login_and_me(client, app_instance):
    with app_instance.app_context():
        dept = ensure_department(unique('Login'))
        u = ensure_user(unique('login'), permissions={'viewAll': True}, department_id=dept.id)
        ensure_department(unique('Watched'), monitor_id=u.id)
    resp = _login(client, u.username)
    assert resp.status_code == 200, resp.get_json()
    token = resp.get_json()['access_token']
    me = client.get('/iam/auth/me', headers={'Authorization': f'Bearer {token}'})
    assert me.status_code == 200
    body = me.get_json()
    assert body['username'] == u.username
    assert body['department_id'] == dept.id
    assert body['capabilities']['view_all'] is True
    assert body['capabilities']['is_admin'] is False
    assert len(body['monitored_department_ids']) == 1


def test_login_by_email(client, app_instance):
    with app_instance.app_context():
        u = ensure_user(unique('mail'))
    assert _login(client, u.email).status_code == 200


def test_login_rejects_bad_credentials(client, app_instance):
    with app_instance.app_context():
        u = ensure_user(unique('badpw'))
    resp = _login(client, u.username, 'wrong')
    assert resp.status_code == 401
    assert resp.get_json()['error']['code'] == 'Unauthorized'
    assert client.post('/iam/auth/login', json={'username': u.username}).status_code == 400


def test_deactivated_user_token_stops_working(client, app_instance):
    with app_instance.app_context():
        u = ensure_user(unique('leaver'))
        headers = jwt_headers(u.id)
    assert client.get('/iam/auth/me', headers=headers).status_code == 200
    with app_instance.app_context():
        session = get_db()
        session.get(User, u.id).is_active = False
        session.commit()
    assert client.get('/iam/auth/me', headers=headers).status_code == 401
    assert _login(client, u.username).status_code == 401


def test_capability_edit_applies_to_existing_token(client, app_instance):
    with app_instance.app_context():
        admin = ensure_user(unique('cap-admin'), role=ROLE_ADMIN)
        tech = ensure_user(unique('cap-tech'))
        admin_h, tech_h = jwt_headers(admin.id), jwt_headers(tech.id)
    payload = {'customer_name': 'Cap', 'device_type': 'Tablet'}
    assert client.post('/repairs/tickets', json=payload, headers=tech_h).status_code == 403
    resp = client.put(f'/iam/users/{tech.id}/permissions', json={'permissions': {'addRepair': True}}, headers=admin_h)
    assert resp.status_code == 200, resp.get_json()
    assert resp.get_json()['capabilities']['has_intake'] is True
    # no re-login: the next request already sees the new flags
    assert client.post('/repairs/tickets', json=payload, headers=tech_h).status_code == 201
