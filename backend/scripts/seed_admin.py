#!/usr/bin/env python
"""Idempotent seed script for the initial admin, departments and the ticket counter.

Usage:
    python backend/scripts/seed_admin.py                         # seed normally
    python backend/scripts/seed_admin.py --departments Intake Bench QA
    python backend/scripts/seed_admin.py --dry-run               # run logic then rollback (no DB changes)
    python backend/scripts/seed_admin.py --show-users            # print users with resolved capabilities
"""
from __future__ import annotations
import os, sys, argparse, textwrap
from sqlalchemy import select, text

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from repairdesk import create_app, get_db  # type: ignore
from repairdesk.models.authz import Base, User, Department, ROLE_ADMIN
from repairdesk.models.counter import Counter
from repairdesk.services.policy import resolve_capabilities
from repairdesk.services.sequence import TICKET_SEQUENCE
import repairdesk.models.repair_ticket  # noqa: F401
import repairdesk.models.audit  # noqa: F401
import repairdesk.models.notification  # noqa: F401

DEFAULT_DEPARTMENTS = ('Intake', 'Repair Bench', 'Quality Check')


def ensure_departments(session, names):
    existing = {d.name for d in session.execute(select(Department)).scalars().all()}
    created = 0
    for name in names:
        if name not in existing:
            session.add(Department(name=name, description=''))
            created += 1
    return created


def ensure_counter(session):
    if session.execute(select(Counter).where(Counter.name == TICKET_SEQUENCE)).scalar_one_or_none():
        return False
    start = int(os.getenv('SEED_TICKET_START', '0'))
    session.add(Counter(name=TICKET_SEQUENCE, seq=start))
    return True


def ensure_initial_admin(session):
    username = os.getenv('SEED_ADMIN_USERNAME', 'admin')
    existing = session.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if existing:
        return False
    user = User(
        username=username,
        name=os.getenv('SEED_ADMIN_NAME', 'Owner'),
        email=os.getenv('SEED_ADMIN_EMAIL'),
        role=ROLE_ADMIN,
        permissions={'adminOverride': True},
        is_active=True,
        is_seed_admin=True,
        password_hash='',
    )
    user.set_password(os.getenv('SEED_ADMIN_PASSWORD', 'ChangeMe123!'))
    session.add(user)
    print(f"[INFO] Created initial admin user '{username}' with temporary password.")
    return True


def print_user_summary(session):
    users = session.execute(select(User).order_by(User.id)).scalars().all()
    if not users:
        print('[INFO] No users present.')
        return
    name_w = max(len(u.username) for u in users)
    print(f"{'User'.ljust(name_w)} | Role       | Capabilities")
    print('-' * (name_w + 40))
    for u in users:
        caps = resolve_capabilities(u.role, u.permissions, u.legacy_perms).as_dict()
        on = sorted(k for k, v in caps.items() if v is True)
        print(f"{u.username.ljust(name_w)} | {u.role.ljust(10)} | {', '.join(on)}")


def parse_args():
    p = argparse.ArgumentParser(
        description='Seed the initial admin, departments and ticket counter',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""Examples:\n  seed normally: seed_admin.py\n  dry run: seed_admin.py --dry-run\n  show users: seed_admin.py --show-users\n"""),
    )
    p.add_argument('--departments', nargs='*', default=list(DEFAULT_DEPARTMENTS), help='Department names to ensure')
    p.add_argument('--show-users', action='store_true', help='Print users with their resolved capabilities after seeding')
    p.add_argument('--dry-run', action='store_true', help='Rollback after operations (no commit)')
    return p.parse_args()


def main():
    args = parse_args()
    app = create_app()
    with app.app_context():
        session = get_db()
        try:
            session.execute(text('SELECT 1 FROM users LIMIT 1'))
        except Exception:
            # Auto-create schema for bootstrap; in real env prefer alembic upgrade
            session.rollback()
            Base.metadata.create_all(session.get_bind())
        finally:
            session.commit()

    with app.app_context():
        session = get_db()
        created_d = ensure_departments(session, args.departments)
        created_c = ensure_counter(session)
        created_a = ensure_initial_admin(session)
        if args.dry_run:
            session.rollback()
            print(f"[DRY-RUN] (rolled back) Departments would create: {created_d}, counter: {created_c}, admin: {created_a}")
        else:
            session.commit()
            print(f"[DONE] Departments created: {created_d}, counter created: {created_c}, admin created: {created_a}")
        if args.show_users:
            print_user_summary(session)


if __name__ == '__main__':
    main()
