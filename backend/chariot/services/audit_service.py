# Overview: Append-only audit trail for order and ledger events.

"""
Audit trail invariants

- Append-only: events are never updated or deleted.
- No domain logic here; callers decide what happened.
- Events are written inside the same DB transaction as the change they record.
- occurred_at is business time; created_at is system time (DB default).
"""

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import AuditEvent
from chariot.time_utils import utcnow


def append_audit_event(
    *,
    company_id: int,
    event_type: str,
    entity_type: str,
    entity_id: int,
    order_id: int | None = None,
    transaction_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[str] = None,
) -> AuditEvent:
    ev = AuditEvent(
        company_id=company_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        order_id=order_id,
        transaction_id=transaction_id,
        occurred_at=occurred_at or utcnow(),
        note=note[:255] if note else None,
        payload=payload,
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def list_order_events(order_id: int) -> list[AuditEvent]:
    return (
        db.session.query(AuditEvent)
        .filter_by(order_id=order_id)
        .order_by(AuditEvent.occurred_at, AuditEvent.id)
        .all()
    )
