from repairdesk import get_db
from repairdesk.models.notification import NotificationOutbox
from repairdesk.services.notifications import enqueue
from repairdesk.services.sequence import next_value
from tests.test_utils_seed import unique, ensure_user


def test_named_counter_increments(app_context):
    name = unique('seq')
    assert next_value(name) == 1
    assert next_value(name) == 2
    get_db().commit()
    assert next_value(name) == 3
    get_db().rollback()
    # rolled back allocations are reused
    assert next_value(name) == 3


def test_drain_command(app_instance):
    with app_instance.app_context():
        user = ensure_user(unique('cli-user'))
        row = enqueue('from the cli', [user.id])
        get_db().commit()
        row_id = row.id
    runner = app_instance.test_cli_runner()
    result = runner.invoke(args=['notifications', 'drain', '--limit', '100000'])
    assert result.exit_code == 0, result.output
    assert 'sent=' in result.output
    with app_instance.app_context():
        assert get_db().get(NotificationOutbox, row_id).status == NotificationOutbox.STATUS_SENT


def test_init_db_command(app_instance):
    result = app_instance.test_cli_runner().invoke(args=['init-db'])
    assert result.exit_code == 0, result.output
    assert 'tables ensured' in result.output
