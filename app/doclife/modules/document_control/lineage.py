from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.doclife.models import User
from app.doclife.utils import ensure_same_tenant

from .models import STATUS_RELEASED, DocumentVersion
from .versioning import label_ordinal


def get_version(s: Session, user: User, version_id: int) -> DocumentVersion:
    """Load a version for `user`; other tenants' rows read as missing."""
    v = s.get(DocumentVersion, version_id)
    ensure_same_tenant(user, v, "Document version")
    return v  # type: ignore[return-value]


def lineage(s: Session, tenant_id: int, document_number: str) -> list[DocumentVersion]:
    """All versions of a document number, oldest label first."""
    rows = s.scalars(
        select(DocumentVersion).where(
            DocumentVersion.tenant_id == tenant_id,
            DocumentVersion.document_number == document_number,
        )
    ).all()
    return sorted(rows, key=lambda v: (label_ordinal(v.version), v.id))


def siblings(s: Session, version: DocumentVersion) -> list[DocumentVersion]:
    return [v for v in lineage(s, version.tenant_id, version.document_number) if v.id != version.id]


def immediate_predecessor(s: Session, version: DocumentVersion) -> DocumentVersion | None:
    """
    The existing version directly before `version` in label order.

    Deleted drafts leave gaps in the label sequence, so this is the nearest
    lower label that still exists rather than exactly one step back.
    """
    mine = label_ordinal(version.version)
    before = [v for v in siblings(s, version) if label_ordinal(v.version) < mine]
    return before[-1] if before else None


def released_version(s: Session, tenant_id: int, document_number: str) -> DocumentVersion | None:
    return s.scalars(
        select(DocumentVersion).where(
            DocumentVersion.tenant_id == tenant_id,
            DocumentVersion.document_number == document_number,
            DocumentVersion.status == STATUS_RELEASED,
        )
    ).first()
