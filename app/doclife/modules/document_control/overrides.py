"""
Administrative overrides.

These bypass the status table for repair work, but never the structural
rules: labels stay well-formed and unique within a number, document numbers
keep the PREFIX-##### shape, and a number never has two Released versions.
Every attempt is audited at high severity, including the failed ones.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.doclife.audit import SEVERITY_HIGH, record_event
from app.doclife.errors import DocLifeError, InvalidLabel, InvalidState, PermissionDenied, ValidationError
from app.doclife.models import User
from app.doclife.rbac import user_has_permission
from app.doclife.utils import clean_text, ensure_admin

from .lineage import get_version, siblings
from .models import STATUS_RELEASED, VALID_STATUSES, DocumentVersion
from .versioning import family_for, parse_label

logger = logging.getLogger(__name__)

DOC_NUMBER_RE = re.compile(r"^[A-Z]+-\d{5}$")
OVERRIDE_PERMISSION = "docs.override"


def _audit_override(s: Session, version: DocumentVersion, actor: User, action: str, reason: str | None, **metadata) -> None:
    record_event(
        s,
        actor=actor,
        action=action,
        version=version,
        severity=SEVERITY_HIGH,
        reason=reason,
        metadata=metadata,
    )
    logger.warning("Admin override %s on %s by %s", action, version.display_number, actor.email)


def force_status(s: Session, version: DocumentVersion, actor: User, new_status: str, *, reason: str | None = None) -> DocumentVersion:
    ensure_admin(actor, "force a status change")
    if new_status not in VALID_STATUSES:
        raise ValidationError(f"Invalid status {new_status!r}.", details={"field": "status"})
    if new_status == STATUS_RELEASED:
        other = next((o for o in siblings(s, version) if o.status == STATUS_RELEASED), None)
        if other is not None:
            raise InvalidState(
                f"{other.display_number} is already Released; only one version of a document may be Released.",
                details={"released_version_id": other.id},
            )

    old = version.status
    version.status = new_status
    s.flush()
    _audit_override(s, version, actor, "admin.force_status", reason, old_status=old, new_status=new_status)
    return version


def force_version(s: Session, version: DocumentVersion, actor: User, new_label: str, *, reason: str | None = None) -> DocumentVersion:
    ensure_admin(actor, "force a version change")
    new_label = (new_label or "").strip()
    if not new_label:
        raise ValidationError("New version label is required.", details={"field": "version"})
    parse_label(new_label)

    clash = next((o for o in siblings(s, version) if o.version == new_label), None)
    if clash is not None:
        raise InvalidState(
            f"{clash.display_number} already exists.",
            details={"existing_version_id": clash.id},
        )

    old = version.version
    version.version = new_label
    s.flush()
    _audit_override(s, version, actor, "admin.force_version", reason, old_version=old, new_version=new_label)
    return version


def force_doc_number(s: Session, version: DocumentVersion, actor: User, new_number: str, *, reason: str | None = None) -> DocumentVersion:
    """Move one version to a number nobody uses yet."""
    ensure_admin(actor, "force a document number change")
    new_number = (new_number or "").strip().upper()
    if not DOC_NUMBER_RE.fullmatch(new_number):
        raise ValidationError(
            "Invalid document number format. Use PREFIX-##### (e.g. FORM-00001).",
            details={"field": "document_number"},
        )
    existing = s.scalars(
        select(DocumentVersion.id).where(
            DocumentVersion.tenant_id == version.tenant_id,
            DocumentVersion.document_number == new_number,
        )
    ).first()
    if existing is not None:
        raise InvalidState(f"Document number {new_number} already exists.", details={"existing_version_id": existing})

    old = version.document_number
    version.document_number = new_number
    s.flush()
    _audit_override(
        s,
        version,
        actor,
        "admin.force_doc_number",
        reason,
        old_number=f"{old}{version.version}",
        new_number=f"{new_number}{version.version}",
    )
    return version


def force_production(s: Session, version: DocumentVersion, actor: User, is_production: bool, *, reason: str | None = None) -> DocumentVersion:
    ensure_admin(actor, "force the production flag")
    family, _ = parse_label(version.version)
    if family != family_for(is_production):
        kind = "Production" if is_production else "Prototype"
        raise InvalidLabel(
            f"{version.display_number} has a label that does not fit a {kind} document; force the version first.",
            details={"version": version.version},
        )

    old = version.is_production
    version.is_production = bool(is_production)
    s.flush()
    _audit_override(s, version, actor, "admin.force_production", reason, old_value=old, new_value=bool(is_production))
    return version


OVERRIDES: dict[str, Callable[..., DocumentVersion]] = {
    "status": force_status,
    "version": force_version,
    "doc_number": force_doc_number,
    "production": force_production,
}


def run_override(
    s: Session,
    kind: str,
    version_id: int,
    actor: User,
    value: Any,
    *,
    reason: str | None = None,
) -> DocumentVersion:
    """
    Load the version and apply one override. Any refusal, including a missing
    version or a non-admin actor, rolls the partial change back and commits an
    `admin.override_failed` event on its own before re-raising.
    """
    fn = OVERRIDES[kind]
    version: DocumentVersion | None = None
    label: str | None = None
    cleaned: str | None = None
    try:
        cleaned = clean_text(reason, max_len=2000, field="reason")
        version = get_version(s, actor, version_id)
        label = version.display_number
        if not user_has_permission(actor, OVERRIDE_PERMISSION):
            raise PermissionDenied(
                "Administrative overrides are not permitted for this account.",
                details={"missing_permission": OVERRIDE_PERMISSION},
            )
        return fn(s, version, actor, value, reason=cleaned)
    except DocLifeError as e:
        s.rollback()
        record_event(
            s,
            actor=actor,
            action="admin.override_failed",
            entity_type="DocumentVersion",
            entity_id=str(version_id),
            version=version,
            severity=SEVERITY_HIGH,
            reason=cleaned,
            metadata={"override": kind, "requested": value, "document": label, "error": e.code, "message": e.message},
        )
        s.commit()
        logger.warning("Admin override %s on version %s refused: %s", kind, version_id, e.message)
        raise
