from __future__ import annotations
import click
from flask import Flask
from flask.cli import AppGroup, with_appcontext
from repairdesk import get_db

notifications_cli = AppGroup('notifications', help='Notification outbox maintenance.')


@notifications_cli.command('drain')
@click.option('--limit', default=100, show_default=True, help='Maximum outbox rows to process.')
def drain_command(limit: int):
    """Deliver pending outbox rows to every channel."""
    from repairdesk.services.notifications import NotificationDispatcher
    counts = NotificationDispatcher().drain(limit=limit)
    click.echo(f"sent={counts['sent']} retry={counts['retry']} failed={counts['failed']}")


@click.command('init-db')
@with_appcontext
def init_db_command():
    """Create missing tables (bootstrap; prefer `alembic upgrade head`)."""
    from repairdesk.models.authz import Base
    import repairdesk.models.repair_ticket  # noqa: F401
    import repairdesk.models.audit  # noqa: F401
    import repairdesk.models.counter  # noqa: F401
    import repairdesk.models.notification  # noqa: F401
    Base.metadata.create_all(get_db().get_bind())
    click.echo('tables ensured')


def register_cli(app: Flask):
    app.cli.add_command(notifications_cli)
    app.cli.add_command(init_db_command)
