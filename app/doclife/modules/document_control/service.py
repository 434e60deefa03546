"""
Operation set for controlled documents.

Every function takes the acting user and resolves the target inside the
user's tenant before anything else; rows of another tenant read as missing.
Callers own the unit of work: nothing here commits, except the failure
audit of an administrative override.
"""
from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.doclife.audit import events_for_document, events_for_version, record_event
from app.doclife.config import setting
from app.doclife.errors import ConcurrencyConflict, InvalidState, NotFound, ValidationError
from app.doclife.models import AuditEvent, User
from app.doclife.modules.document_types.models import DocumentType
from app.doclife.storage import Storage, attachment_key, current_storage
from app.doclife.utils import clean_text, ensure_admin, ensure_creator_or_admin, ensure_same_tenant, require_text

from . import approvals, deletion, overrides, promotion
from . import status as status_machine
from .lineage import get_version, lineage, released_version
from .models import STATUS_DRAFT, VALID_STATUSES, Approver, Attachment, DocumentVersion
from .sequencing import allocate, format_document_number
from .versioning import initial_label, next_label

logger = logging.getLogger(__name__)

TITLE_MAX = 255
DESCRIPTION_MAX = 5000
PROJECT_CODE_MAX = 64


def _meta(meta: dict[str, Any] | None) -> dict[str, Any]:
    meta = meta or {}
    return {
        "title": require_text(meta.get("title"), field="title", max_len=TITLE_MAX),
        "description": clean_text(meta.get("description"), max_len=DESCRIPTION_MAX, field="description"),
        "project_code": clean_text(meta.get("project_code"), max_len=PROJECT_CODE_MAX, field="project_code"),
    }


def _flush_new_version(s: Session, version: DocumentVersion) -> None:
    try:
        s.flush()
    except IntegrityError as e:
        s.rollback()
        raise ConcurrencyConflict(
            f"{version.display_number} was created concurrently; reload and try again.",
        ) from e


def create_document(
    s: Session,
    user: User,
    document_type_id: int,
    meta: dict[str, Any] | None,
    is_production: bool = False,
) -> DocumentVersion:
    """Open a new lineage: allocate a number and create its first Draft."""
    dt = s.get(DocumentType, document_type_id)
    ensure_same_tenant(user, dt, "Document type")
    fields = _meta(meta)

    # Allocation commits on its own connection, before this unit writes anything.
    prefix, number = allocate(s, document_type_id, user.tenant_id)

    v = DocumentVersion(
        tenant_id=user.tenant_id,
        document_type_id=document_type_id,
        document_number=format_document_number(prefix, number),
        version=initial_label(bool(is_production)),
        status=STATUS_DRAFT,
        is_production=bool(is_production),
        created_by_user_id=user.id,
        **fields,
    )
    s.add(v)
    _flush_new_version(s, v)
    record_event(
        s,
        actor=user,
        action="doc.create",
        version=v,
        metadata={"version": v.version, "is_production": v.is_production, "title": v.title},
    )
    logger.info("Created %s (production=%s)", v.display_number, v.is_production)
    return v


def submit_for_approval(s: Session, user: User, version_id: int, approver_ids: Sequence[int] | None = None) -> DocumentVersion:
    """Add any approvers not yet on the version, then move it to In Approval."""
    v = get_version(s, user, version_id)
    if v.status != STATUS_DRAFT:
        raise InvalidState(f"Only Draft documents can be submitted (status: {v.status}).")
    existing = {a.user_id for a in v.approvers}
    new_ids = [int(uid) for uid in (approver_ids or []) if int(uid) not in existing]
    if new_ids:
        approvals.assign(s, v, new_ids, user)
    return status_machine.submit(s, v, user)


def record_approval_decision(
    s: Session,
    user: User,
    version_id: int,
    decision: str,
    comment: str | None = None,
) -> dict:
    v = get_version(s, user, version_id)
    return approvals.decide(s, v, user, decision, comment)


def release_directly(s: Session, user: User, version_id: int) -> DocumentVersion:
    v = get_version(s, user, version_id)
    return status_machine.release_directly(s, v, user)


def create_new_version(s: Session, user: User, document_number: str) -> DocumentVersion:
    """
    Next Draft of an existing lineage, seeded from its Released version.

    The label follows the highest existing label, so open drafts are never
    reused or collided with.
    """
    document_number = (document_number or "").strip().upper()
    rows = lineage(s, user.tenant_id, document_number)
    if not rows:
        raise NotFound(f"Document {document_number} not found.")
    source = released_version(s, user.tenant_id, document_number)
    if source is None:
        raise InvalidState(f"{document_number} has no Released version to start a new version from.")

    label = next_label(rows[-1].version, source.is_production, overflow=setting("LABEL_OVERFLOW", "extend"))
    v = DocumentVersion(
        tenant_id=source.tenant_id,
        document_type_id=source.document_type_id,
        document_number=source.document_number,
        version=label,
        status=STATUS_DRAFT,
        is_production=source.is_production,
        title=source.title,
        description=source.description,
        project_code=source.project_code,
        created_by_user_id=user.id,
    )
    s.add(v)
    _flush_new_version(s, v)
    record_event(
        s,
        actor=user,
        action="doc.version_create",
        version=v,
        metadata={"source_version_id": source.id, "source_version": source.version, "new_version": label},
    )
    logger.info("Created %s from %s", v.display_number, source.display_number)
    return v


def promote_to_production(
    s: Session,
    user: User,
    version_id: int,
    strategy: str | None = None,
    *,
    storage: Storage | None = None,
) -> DocumentVersion:
    v = get_version(s, user, version_id)
    return promotion.promote(s, v, user, strategy, storage=storage or current_storage())


def delete_version(s: Session, user: User, version_id: int, *, storage: Storage | None = None) -> None:
    v = get_version(s, user, version_id)
    deletion.delete(s, v, user, storage=storage or current_storage())


def admin_force_status(s: Session, user: User, version_id: int, new_status: str, *, reason: str | None = None) -> DocumentVersion:
    return overrides.run_override(s, "status", version_id, user, new_status, reason=reason)


def admin_force_version(s: Session, user: User, version_id: int, new_label: str, *, reason: str | None = None) -> DocumentVersion:
    return overrides.run_override(s, "version", version_id, user, new_label, reason=reason)


def admin_force_doc_number(s: Session, user: User, version_id: int, new_number: str, *, reason: str | None = None) -> DocumentVersion:
    return overrides.run_override(s, "doc_number", version_id, user, new_number, reason=reason)


def admin_force_production(s: Session, user: User, version_id: int, is_production: bool, *, reason: str | None = None) -> DocumentVersion:
    return overrides.run_override(s, "production", version_id, user, bool(is_production), reason=reason)


def update_draft(s: Session, user: User, version_id: int, meta: dict[str, Any]) -> DocumentVersion:
    """Edit title / description / project code of a Draft. Keys absent from `meta` are left alone."""
    v = get_version(s, user, version_id)
    ensure_creator_or_admin(user, v.created_by_user_id, "edit this document")
    if v.status != STATUS_DRAFT:
        raise InvalidState("Only Draft documents can be edited.")

    changes: dict[str, Any] = {}
    if "title" in meta:
        changes["title"] = require_text(meta.get("title"), field="title", max_len=TITLE_MAX)
    if "description" in meta:
        changes["description"] = clean_text(meta.get("description"), max_len=DESCRIPTION_MAX, field="description")
    if "project_code" in meta:
        changes["project_code"] = clean_text(meta.get("project_code"), max_len=PROJECT_CODE_MAX, field="project_code")

    before = {k: getattr(v, k) for k in changes}
    for k, value in changes.items():
        setattr(v, k, value)
    if changes:
        record_event(s, actor=user, action="doc.edit", version=v, metadata={"before": before, "after": changes})
    return v


def change_owner(s: Session, user: User, version_id: int, new_owner_id: int) -> DocumentVersion:
    v = get_version(s, user, version_id)
    ensure_admin(user, "change a document's owner")
    owner = s.get(User, int(new_owner_id))
    ensure_same_tenant(user, owner, "User")
    if not owner.is_active:  # type: ignore[union-attr]
        raise ValidationError("The new owner must be an active user.", details={"field": "user_id"})
    old = v.created_by_user_id
    v.created_by_user_id = owner.id  # type: ignore[union-attr]
    record_event(
        s,
        actor=user,
        action="doc.change_owner",
        version=v,
        metadata={"old_owner_user_id": old, "new_owner_user_id": v.created_by_user_id},
    )
    return v


def add_approvers(s: Session, user: User, version_id: int, approver_ids: Sequence[int]) -> list[Approver]:
    v = get_version(s, user, version_id)
    if not approver_ids:
        raise ValidationError("Select at least one approver.", details={"field": "approver_ids"})
    return approvals.assign(s, v, approver_ids, user)


def remove_approver(s: Session, user: User, version_id: int, approver_id: int) -> None:
    v = get_version(s, user, version_id)
    approvals.remove(s, v, int(approver_id), user)


def upload_attachment(
    s: Session,
    user: User,
    version_id: int,
    *,
    filename: str,
    data: bytes,
    content_type: str | None = None,
    storage: Storage | None = None,
) -> Attachment:
    v = get_version(s, user, version_id)
    ensure_creator_or_admin(user, v.created_by_user_id, "upload files to this document")
    if v.status != STATUS_DRAFT:
        raise InvalidState("Files can only be uploaded while the document is Draft.")
    if not data:
        raise ValidationError("Choose a file to upload.", details={"field": "file"})

    safe_name = secure_filename(filename or "") or "document.bin"
    if any(a.filename == safe_name for a in v.attachments):
        raise InvalidState(f"{safe_name} is already attached to {v.display_number}.")

    storage = storage or current_storage()
    key = attachment_key(v.tenant_id, v.document_number, v.version, safe_name)
    content_type = (content_type or "application/octet-stream").strip()
    sha256 = hashlib.sha256(data).hexdigest()
    storage.put_bytes(key, data, content_type=content_type)

    att = Attachment(
        storage_key=key,
        filename=safe_name,
        content_type=content_type,
        sha256=sha256,
        size_bytes=len(data),
        uploaded_by_user_id=user.id,
    )
    v.attachments.append(att)
    s.flush()
    record_event(
        s,
        actor=user,
        action="doc.upload",
        version=v,
        metadata={"filename": safe_name, "sha256": sha256, "size_bytes": len(data)},
    )
    return att


def get_document(s: Session, user: User, version_id: int) -> DocumentVersion:
    return get_version(s, user, version_id)


def list_documents(
    s: Session,
    user: User,
    *,
    status: str | None = None,
    document_type_id: int | None = None,
) -> list[DocumentVersion]:
    q = select(DocumentVersion).where(DocumentVersion.tenant_id == user.tenant_id)
    if status:
        if status not in VALID_STATUSES:
            raise ValidationError(f"Unknown status {status!r}.", details={"field": "status"})
        q = q.where(DocumentVersion.status == status)
    if document_type_id is not None:
        q = q.where(DocumentVersion.document_type_id == document_type_id)
    return list(s.scalars(q.order_by(DocumentVersion.document_number.asc(), DocumentVersion.id.asc())))


def list_lineage(s: Session, user: User, document_number: str) -> list[DocumentVersion]:
    document_number = (document_number or "").strip().upper()
    rows = lineage(s, user.tenant_id, document_number)
    if not rows:
        raise NotFound(f"Document {document_number} not found.")
    return rows


def latest_released(s: Session, user: User, document_number: str) -> DocumentVersion | None:
    return released_version(s, user.tenant_id, (document_number or "").strip().upper())


def my_pending_approvals(s: Session, user: User) -> list[Approver]:
    return approvals.pending_for_user(s, user)


def document_audit_log(s: Session, user: User, version_id: int) -> list[AuditEvent]:
    """Audit history of one version, newest first."""
    v = get_version(s, user, version_id)
    return events_for_version(s, v.id)


def lineage_audit_log(s: Session, user: User, document_number: str) -> list[AuditEvent]:
    # Keyed on the number, so events of deleted drafts are still listed.
    return events_for_document(s, user.tenant_id, (document_number or "").strip().upper(), newest_first=True)


def serialize_approver(a: Approver) -> dict:
    return {
        "id": a.id,
        "user_id": a.user_id,
        "status": a.status,
        "comments": a.comments,
        "action_date": a.action_date.isoformat() if a.action_date else None,
    }


def serialize_attachment(a: Attachment) -> dict:
    return {
        "id": a.id,
        "filename": a.filename,
        "content_type": a.content_type,
        "sha256": a.sha256,
        "size_bytes": a.size_bytes,
        "uploaded_at": a.uploaded_at.isoformat() if a.uploaded_at else None,
    }


def serialize_version(v: DocumentVersion, *, detail: bool = False) -> dict:
    out = {
        "id": v.id,
        "document_type_id": v.document_type_id,
        "document_number": v.document_number,
        "version": v.version,
        "display_number": v.display_number,
        "status": v.status,
        "is_production": v.is_production,
        "title": v.title,
        "description": v.description,
        "project_code": v.project_code,
        "created_by_user_id": v.created_by_user_id,
        "created_at": v.created_at.isoformat() if v.created_at else None,
        "released_at": v.released_at.isoformat() if v.released_at else None,
        "released_by_user_id": v.released_by_user_id,
        "promoted_from_version_id": v.promoted_from_version_id,
    }
    if detail:
        out["approvers"] = [serialize_approver(a) for a in v.approvers]
        out["attachments"] = [serialize_attachment(a) for a in v.attachments]
    return out


def serialize_audit_event(e: AuditEvent) -> dict:
    return {
        "id": e.id,
        "created_at": e.created_at.isoformat() if e.created_at else None,
        "action": e.action,
        "severity": e.severity,
        "actor_user_id": e.actor_user_id,
        "actor_user_email": e.actor_user_email,
        "document_version_id": e.document_version_id,
        "document_number": e.document_number,
        "reason": e.reason,
        "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
        "request_id": e.request_id,
    }


def open_attachment(s: Session, user: User, attachment_id: int, *, storage: Storage | None = None):
    """Return (attachment, file object) for a download and audit it."""
    att = s.get(Attachment, attachment_id)
    ensure_same_tenant(user, att.version if att is not None else None, "Attachment")
    fobj = (storage or current_storage()).open(att.storage_key)  # type: ignore[union-attr]
    record_event(
        s,
        actor=user,
        action="doc.download",
        version=att.version,  # type: ignore[union-attr]
        metadata={"attachment_id": att.id, "filename": att.filename},  # type: ignore[union-attr]
    )
    return att, fobj
