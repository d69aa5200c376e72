from __future__ import annotations
from sqlalchemy import select
from repairdesk import get_db
from repairdesk.models.counter import Counter

TICKET_SEQUENCE = 'repair_ticket'


def next_value(name: str = TICKET_SEQUENCE, session=None) -> int:
    """Increment and return the named counter inside the caller's transaction."""
    session = session or get_db()
    stmt = select(Counter).where(Counter.name == name).with_for_update().execution_options(populate_existing=True)
    row = session.execute(stmt).scalar_one_or_none()
    if row is None:
        row = Counter(name=name, seq=0)
        session.add(row)
    row.seq = (row.seq or 0) + 1
    session.flush()
    return row.seq
