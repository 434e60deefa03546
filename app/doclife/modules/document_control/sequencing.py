"""
Document number allocation.

The counter on DocumentType is moved with one conditional
UPDATE ... RETURNING, so concurrent creators can never read the same value.
The increment is committed on its own connection before the caller's
document is written: a number handed out to an operation that later
fails is burned, never given back.
"""
from __future__ import annotations

import logging
import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.doclife.config import setting
from app.doclife.errors import ConcurrencyConflict, Inactive, NotFound, SequenceExhausted
from app.doclife.modules.document_types.models import DocumentType

logger = logging.getLogger(__name__)

MAX_SEQUENCE = 99999
_RETRY_BACKOFF_SECONDS = 0.05


def format_document_number(prefix: str, number: int) -> str:
    return f"{prefix}-{number:05d}"


def _increment_statement(document_type_id: int, tenant_id: int):
    t = DocumentType.__table__
    return (
        update(t)
        .where(
            t.c.id == document_type_id,
            t.c.tenant_id == tenant_id,
            t.c.is_active.is_(True),
        )
        .values(next_number=t.c.next_number + 1)
        .returning(t.c.prefix, t.c.next_number)
    )


def _expire_cached_type(s: Session, document_type_id: int) -> None:
    for obj in list(s.identity_map.values()):
        if isinstance(obj, DocumentType) and obj.id == document_type_id:
            s.expire(obj, ["next_number"])


def allocate(
    s: Session,
    document_type_id: int,
    tenant_id: int,
    *,
    max_retries: int | None = None,
) -> tuple[str, int]:
    """
    Allocate the next number for a document type. Returns (prefix, number).

    The increment runs and commits on its own connection, so the number is
    burned even when the caller's unit of work later rolls back. On SQLite
    the caller must not hold an open write transaction (the database lock
    would block the allocator).
    """
    retries = setting("ALLOCATE_MAX_RETRIES", 3) if max_retries is None else max_retries
    stmt = _increment_statement(document_type_id, tenant_id)
    engine = s.get_bind()

    attempt = 0
    while True:
        try:
            with engine.begin() as conn:
                row = conn.execute(stmt).one_or_none()
            break
        except OperationalError as e:
            if attempt >= retries:
                logger.error(
                    "Document number allocation failed after %s retries (type_id=%s): %s",
                    attempt,
                    document_type_id,
                    e,
                )
                raise ConcurrencyConflict("Could not allocate a document number; please retry.") from e
            attempt += 1
            logger.warning(
                "Document number allocation conflict (type_id=%s attempt=%s); retrying",
                document_type_id,
                attempt,
            )
            time.sleep(_RETRY_BACKOFF_SECONDS * attempt)

    if row is None:
        dt = s.get(DocumentType, document_type_id)
        if dt is None or dt.tenant_id != tenant_id:
            raise NotFound("Document type not found.")
        raise Inactive(f"Document type {dt.prefix} is inactive; new documents cannot be created against it.")

    prefix, after = row
    number = after - 1
    if number > MAX_SEQUENCE:
        raise SequenceExhausted(f"Document numbers for {prefix} are exhausted ({MAX_SEQUENCE} issued).")

    _expire_cached_type(s, document_type_id)
    logger.debug("Allocated %s", format_document_number(prefix, number))
    return prefix, number
