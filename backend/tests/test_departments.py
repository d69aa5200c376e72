import pytest
from repairdesk.models.authz import ROLE_ADMIN
from tests.test_utils_seed import unique, ensure_user, ensure_department
from tests.test_lifecycle_helpers import jwt_headers


@pytest.fixture()
def actors(app_instance):
    with app_instance.app_context():
        admin = ensure_user(unique('dept-admin'), role=ROLE_ADMIN)
        settings = ensure_user(unique('dept-settings'), permissions={'manage_settings': 'true'})
        home = ensure_department(unique('Home'))
        tech = ensure_user(unique('dept-tech'), department_id=home.id)
        return {
            'admin': jwt_headers(admin.id),
            'settings': jwt_headers(settings.id),
            'tech': jwt_headers(tech.id),
            'tech_id': tech.id,
            'home': home.id,
        }


def test_create_and_rename(client, actors):
    name = unique('Soldering')
    assert client.post('/departments', json={'name': name}, headers=actors['tech']).status_code == 403
    resp = client.post('/departments', json={'name': name, 'description': 'micro work'}, headers=actors['settings'])
    assert resp.status_code == 201, resp.get_json()
    dept = resp.get_json()
    assert dept['monitor'] is None
    assert client.post('/departments', json={'name': name}, headers=actors['settings']).status_code == 400
    assert client.post('/departments', json={'name': ' '}, headers=actors['settings']).status_code == 400
    renamed = client.put(f"/departments/{dept['id']}", json={'name': f'{name}-2'}, headers=actors['settings'])
    assert renamed.get_json()['name'] == f'{name}-2'
    assert client.put('/departments/987654321', json={'name': 'x'}, headers=actors['settings']).status_code == 404


def test_monitor_assignment_is_admin_only(client, actors):
    dept = client.post('/departments', json={'name': unique('Monitored')}, headers=actors['settings']).get_json()
    url = f"/departments/{dept['id']}/monitor"
    assert client.put(url, json={'monitor_id': actors['tech_id']}, headers=actors['settings']).status_code == 403
    resp = client.put(url, json={'monitor_id': actors['tech_id']}, headers=actors['admin'])
    assert resp.status_code == 200
    assert resp.get_json()['monitor']['id'] == actors['tech_id']
    assert client.put(url, json={'monitor_id': 987654321}, headers=actors['admin']).status_code == 400
    assert client.put(url, json={}, headers=actors['admin']).status_code == 400
    # the technician now sees the monitored department next to their own
    visible = {d['id'] for d in client.get('/departments', headers=actors['tech']).get_json()['data']}
    assert visible == {actors['home'], dept['id']}
    cleared = client.put(url, json={'monitor_id': None}, headers=actors['admin'])
    assert cleared.get_json()['monitor'] is None


def test_admin_lists_every_department(client, actors):
    names = {d['name'] for d in client.get('/departments', headers=actors['admin']).get_json()['data']}
    home_visible = [d for d in client.get('/departments', headers=actors['tech']).get_json()['data']]
    assert len(names) >= len(home_visible) >= 1
