"""
Draft deletion under the permanence rule.

A document number that has ever had a Released (or Obsolete) version must
keep existing. A Draft can therefore be deleted when it is the only row of
its lineage, or when some other version already gives the number a durable
Released/Obsolete record. Two unreleased versions of the same number keep
each other alive.
"""
from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.doclife.audit import record_event
from app.doclife.errors import DeletionNotAllowed
from app.doclife.models import AuditEvent, User
from app.doclife.notifications import defer
from app.doclife.rbac import is_tenant_admin
from app.doclife.storage import Storage

from .lineage import siblings
from .models import STATUS_DRAFT, STATUS_OBSOLETE, STATUS_RELEASED, DocumentVersion

logger = logging.getLogger(__name__)

PERMANENCE_MESSAGE = (
    "Permanence rule: this draft is the only record of {number} besides other unreleased versions. "
    "A document number can be deleted only while it is a lone draft or once another version is Released/Obsolete."
)


def deletion_blockers(s: Session, version: DocumentVersion, actor: User) -> list[str]:
    errors: list[str] = []
    if version.status != STATUS_DRAFT:
        errors.append(f"Only Draft documents can be deleted (status: {version.status})")
    if not (actor.id == version.created_by_user_id or is_tenant_admin(actor)):
        errors.append("Only the document creator or a tenant administrator can delete it")
    others = siblings(s, version)
    if others and not any(o.status in (STATUS_RELEASED, STATUS_OBSOLETE) for o in others):
        errors.append(PERMANENCE_MESSAGE.format(number=version.document_number))
    return errors


def can_delete(s: Session, version: DocumentVersion, actor: User) -> bool:
    return not deletion_blockers(s, version, actor)


def delete(s: Session, version: DocumentVersion, actor: User, *, storage: Storage | None = None) -> None:
    errors = deletion_blockers(s, version, actor)
    if errors:
        raise DeletionNotAllowed("; ".join(errors), details={"reasons": errors})

    keys = [a.storage_key for a in version.attachments]
    record_event(
        s,
        actor=actor,
        action="doc.delete",
        version=version,
        metadata={
            "version": version.version,
            "title": version.title,
            "approver_count": len(version.approvers),
            "attachments": keys,
        },
    )
    s.flush()

    # The audit trail outlives the row it describes.
    s.execute(
        update(AuditEvent.__table__)
        .where(AuditEvent.__table__.c.document_version_id == version.id)
        .values(document_version_id=None)
    )
    t = DocumentVersion.__table__
    s.execute(update(t).where(t.c.promoted_from_version_id == version.id).values(promoted_from_version_id=None))

    # Approver and attachment rows go with the version (delete-orphan cascade).
    s.delete(version)
    s.flush()

    if storage is not None:
        for key in keys:
            defer(s, f"storage.delete:{key}", storage.delete, key)
    logger.info("Deleted draft %s (attachments=%s)", version.display_number, len(keys))
