from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.doclife.models import AuditEvent, User

if TYPE_CHECKING:
    from app.doclife.modules.document_control.models import DocumentVersion

SEVERITY_INFO = "info"
SEVERITY_HIGH = "high"


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    version: DocumentVersion | None = None,
    document_number: str | None = None,
    tenant_id: int | None = None,
    severity: str = SEVERITY_INFO,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.

    Passing `version` fills the document linkage (version id, document number,
    tenant) so lifecycle call sites stay short.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    if version is not None:
        entity_type = entity_type or "DocumentVersion"
        entity_id = entity_id or str(version.id)
        document_number = document_number or version.document_number
        tenant_id = tenant_id or version.tenant_id
    if tenant_id is None and actor is not None:
        tenant_id = actor.tenant_id
    ev = AuditEvent(
        request_id=rid,
        tenant_id=tenant_id,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        severity=severity,
        entity_type=entity_type,
        entity_id=entity_id,
        document_version_id=version.id if version is not None else None,
        document_number=document_number,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if in_request else None,
    )
    s.add(ev)
    return ev


def events_for_document(s: Session, tenant_id: int, document_number: str, *, newest_first: bool = False) -> list[AuditEvent]:
    order = AuditEvent.id.desc() if newest_first else AuditEvent.id.asc()
    return (
        s.query(AuditEvent)
        .filter(AuditEvent.tenant_id == tenant_id, AuditEvent.document_number == document_number)
        .order_by(order)
        .all()
    )


def events_for_version(s: Session, version_id: int) -> list[AuditEvent]:
    """History of one version, newest first."""
    return (
        s.query(AuditEvent)
        .filter(AuditEvent.document_version_id == version_id)
        .order_by(AuditEvent.id.desc())
        .all()
    )
