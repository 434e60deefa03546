"""
Document type administration (tenant admins only).

The numbering counter is deliberately absent from the update path: only
`document_control.sequencing.allocate` moves `next_number`.
"""
from __future__ import annotations

import re

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.doclife.audit import record_event
from app.doclife.errors import InvalidState, ValidationError
from app.doclife.models import User
from app.doclife.utils import clean_text, ensure_admin, ensure_same_tenant, require_text

from .models import DocumentType

PREFIX_RE = re.compile(r"^[A-Z]{2,10}$")


def normalize_prefix(prefix: str | None) -> str:
    p = (prefix or "").strip().upper()
    if not PREFIX_RE.fullmatch(p):
        raise ValidationError("Prefix must be 2-10 uppercase letters (A-Z).", details={"field": "prefix"})
    return p


def get_document_type(s: Session, user: User, type_id: int) -> DocumentType:
    dt = s.get(DocumentType, type_id)
    ensure_same_tenant(user, dt, "Document type")
    return dt  # type: ignore[return-value]


def list_document_types(s: Session, user: User, *, active_only: bool = False) -> list[DocumentType]:
    stmt = select(DocumentType).where(DocumentType.tenant_id == user.tenant_id)
    if active_only:
        stmt = stmt.where(DocumentType.is_active.is_(True))
    return list(s.scalars(stmt.order_by(DocumentType.prefix.asc())))


def _documents_using(s: Session, dt: DocumentType) -> int:
    from app.doclife.modules.document_control.models import DocumentVersion

    return s.scalar(
        select(func.count(DocumentVersion.id)).where(DocumentVersion.document_type_id == dt.id)
    ) or 0


def create_document_type(
    s: Session,
    user: User,
    *,
    name: str,
    prefix: str,
    description: str | None = None,
) -> DocumentType:
    ensure_admin(user, "create document types")
    name = require_text(name, field="name", max_len=100)
    prefix = normalize_prefix(prefix)
    description = clean_text(description, max_len=500, field="description")

    exists = s.scalar(
        select(DocumentType.id).where(DocumentType.tenant_id == user.tenant_id, DocumentType.prefix == prefix)
    )
    if exists:
        raise ValidationError("A document type with this prefix already exists.", details={"field": "prefix"})

    dt = DocumentType(
        tenant_id=user.tenant_id,
        name=name,
        prefix=prefix,
        description=description,
        next_number=1,
        is_active=True,
    )
    s.add(dt)
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc_type.create",
        entity_type="DocumentType",
        entity_id=str(dt.id),
        metadata={"prefix": dt.prefix, "name": dt.name},
    )
    return dt


def update_document_type(
    s: Session,
    user: User,
    type_id: int,
    *,
    name: str | None = None,
    prefix: str | None = None,
    description: str | None = None,
) -> DocumentType:
    ensure_admin(user, "edit document types")
    dt = get_document_type(s, user, type_id)
    changes: dict[str, dict[str, str | None]] = {}

    if name is not None:
        new_name = require_text(name, field="name", max_len=100)
        if new_name != dt.name:
            changes["name"] = {"from": dt.name, "to": new_name}
            dt.name = new_name

    if prefix is not None:
        new_prefix = normalize_prefix(prefix)
        if new_prefix != dt.prefix:
            # Issued document numbers embed the prefix.
            if _documents_using(s, dt):
                raise InvalidState("Prefix cannot change once documents have been numbered with it.")
            clash = s.scalar(
                select(DocumentType.id).where(
                    DocumentType.tenant_id == user.tenant_id,
                    DocumentType.prefix == new_prefix,
                    DocumentType.id != dt.id,
                )
            )
            if clash:
                raise ValidationError("A document type with this prefix already exists.", details={"field": "prefix"})
            changes["prefix"] = {"from": dt.prefix, "to": new_prefix}
            dt.prefix = new_prefix

    if description is not None:
        new_description = clean_text(description, max_len=500, field="description")
        if new_description != dt.description:
            changes["description"] = {"from": "...", "to": "..."}
            dt.description = new_description

    if changes:
        record_event(
            s,
            actor=user,
            action="doc_type.edit",
            entity_type="DocumentType",
            entity_id=str(dt.id),
            metadata={"prefix": dt.prefix, "changes": changes},
        )
    return dt


def toggle_document_type(s: Session, user: User, type_id: int) -> DocumentType:
    ensure_admin(user, "activate or deactivate document types")
    dt = get_document_type(s, user, type_id)
    dt.is_active = not dt.is_active
    record_event(
        s,
        actor=user,
        action="doc_type.activate" if dt.is_active else "doc_type.deactivate",
        entity_type="DocumentType",
        entity_id=str(dt.id),
        metadata={"prefix": dt.prefix},
    )
    return dt


def delete_document_type(s: Session, user: User, type_id: int) -> None:
    ensure_admin(user, "delete document types")
    dt = get_document_type(s, user, type_id)
    used = _documents_using(s, dt)
    if used:
        raise InvalidState(
            f"Document type {dt.prefix} is used by {used} document version(s); deactivate it instead.",
        )
    record_event(
        s,
        actor=user,
        action="doc_type.delete",
        entity_type="DocumentType",
        entity_id=str(dt.id),
        metadata={"prefix": dt.prefix, "name": dt.name},
    )
    s.delete(dt)


def serialize_document_type(dt: DocumentType) -> dict:
    return {
        "id": dt.id,
        "name": dt.name,
        "prefix": dt.prefix,
        "description": dt.description,
        "next_number": dt.next_number,
        "is_active": dt.is_active,
    }
