# Overview: Per-location document number allocation (order numbers).

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import DocumentSequence


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def next_document_number(
    *,
    location_id: int,
    document_type: str,
    prefix: str,
    pad: int = 4,
) -> str:
    """
    Allocate the next document number for a location/type.

    Uses an atomic UPDATE ... SET next_number = next_number + 1 so concurrent
    callers never receive the same number. Participates in the caller's
    transaction; does not commit.
    """
    if not location_id:
        raise DocumentSequenceError("location_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.location_id == location_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        db.session.add(DocumentSequence(location_id=location_id, document_type=document_type, next_number=1))
        db.session.flush()
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise DocumentSequenceError(f"Could not allocate {document_type} number")

    db.session.flush()
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(location_id=location_id, document_type=document_type)
        .scalar()
    )
    return f"{prefix}-{str(current - 1).zfill(pad)}"
