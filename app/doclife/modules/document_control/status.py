"""
Status machine for document versions.

Every user-driven status change goes through `transition()`; the table
below is the complete set of legal moves. Status writes are conditional
UPDATEs on the expected current status, so two requests racing on the same
version cannot both succeed (e.g. two final approvals releasing twice).

Administrative overrides live in `overrides.py` and never pass through here.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.doclife.audit import record_event
from app.doclife.errors import ConcurrencyConflict, IllegalTransition, ValidationError
from app.doclife.models import User
from app.doclife.notifications import document_released, notify
from app.doclife.utils import ensure_creator_or_admin

from . import obsolescence
from .lineage import immediate_predecessor, siblings
from .models import (
    STATUS_DRAFT,
    STATUS_IN_APPROVAL,
    STATUS_OBSOLETE,
    STATUS_RELEASED,
    DocumentVersion,
)
from .versioning import label_ordinal

logger = logging.getLogger(__name__)

# Legal status moves. Released -> Obsolete is reserved for the obsolescence
# cascade and cannot be requested directly.
STATUS_TRANSITIONS: dict[str, set[str]] = {
    STATUS_DRAFT: {STATUS_IN_APPROVAL, STATUS_RELEASED},
    STATUS_IN_APPROVAL: {STATUS_RELEASED, STATUS_DRAFT},
    STATUS_RELEASED: {STATUS_OBSOLETE},
    STATUS_OBSOLETE: set(),
}

TRIGGER_USER = "user"
TRIGGER_APPROVALS = "approvals"
TRIGGER_CASCADE = "cascade"


def compare_and_set_status(
    s: Session,
    version: DocumentVersion,
    expected: str,
    new_status: str,
    **values,
) -> None:
    """
    Move `version` from `expected` to `new_status` in one conditional UPDATE.

    Raises ConcurrencyConflict if another unit of work changed the status first.
    """
    s.flush()
    t = DocumentVersion.__table__
    result = s.execute(
        update(t)
        .where(t.c.id == version.id, t.c.status == expected)
        .values(status=new_status, **values)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflict(
            f"{version.display_number} is no longer {expected}; reload and try again.",
        )
    set_committed_value(version, "status", new_status)
    for key, value in values.items():
        set_committed_value(version, key, value)


def release_blockers(s: Session, version: DocumentVersion) -> list[str]:
    """
    Lineage conditions that keep `version` from being released.

    Only the immediate predecessor may be Released at release time (it is
    obsoleted in the same transaction), and nothing later in the lineage
    may have been released already.
    """
    errors: list[str] = []
    predecessor = immediate_predecessor(s, version)
    mine = label_ordinal(version.version)
    for other in siblings(s, version):
        if other.status in (STATUS_RELEASED, STATUS_OBSOLETE) and label_ordinal(other.version) > mine:
            errors.append(f"Superseded: {other.display_number} is already {other.status}")
        elif other.status == STATUS_RELEASED and (predecessor is None or other.id != predecessor.id):
            errors.append(f"{other.display_number} is Released and is not the immediate predecessor")
    return errors


def check_transition(
    s: Session,
    version: DocumentVersion,
    target: str,
    *,
    trigger: str = TRIGGER_USER,
) -> list[str]:
    """Return the reasons `version` cannot move to `target` (empty list = legal)."""
    current = version.status
    if current not in STATUS_TRANSITIONS:
        return [f"Current status '{current}' is invalid"]
    if target not in STATUS_TRANSITIONS[current]:
        return [f"Cannot transition from '{current}' to '{target}'"]

    approvers = list(version.approvers)

    if current == STATUS_DRAFT and target == STATUS_IN_APPROVAL:
        if not approvers:
            return ["At least one approver must be assigned before submitting for approval"]
        return release_blockers(s, version)

    if current == STATUS_DRAFT and target == STATUS_RELEASED:
        errors = []
        if version.is_production:
            errors.append("Production documents must go through approval before release")
        if approvers:
            errors.append("Approvers are assigned; submit for approval instead of releasing directly")
        return errors or release_blockers(s, version)

    if current == STATUS_IN_APPROVAL:
        from .approvals import has_rejection, is_fully_approved

        if trigger != TRIGGER_APPROVALS:
            return [f"'{current}' -> '{target}' is driven by approver decisions only"]
        if target == STATUS_RELEASED:
            if not is_fully_approved(approvers):
                return ["Not every approver has approved"]
            return release_blockers(s, version)
        if target == STATUS_DRAFT and not has_rejection(approvers):
            return ["No approver has rejected"]
        return []

    if current == STATUS_RELEASED and target == STATUS_OBSOLETE:
        if trigger != TRIGGER_CASCADE:
            return ["Released versions become Obsolete only when their successor is released"]
        return []

    return []


def _ensure_legal(s: Session, version: DocumentVersion, target: str, trigger: str) -> None:
    errors = check_transition(s, version, target, trigger=trigger)
    if errors:
        raise IllegalTransition(
            f"{version.display_number}: {version.status} -> {target} not allowed: " + "; ".join(errors),
            details={"from": version.status, "to": target, "reasons": errors},
        )


def _release(s: Session, version: DocumentVersion, actor: User, *, expected: str, method: str) -> DocumentVersion:
    now = datetime.utcnow()
    compare_and_set_status(
        s,
        version,
        expected,
        STATUS_RELEASED,
        released_at=now,
        released_by_user_id=actor.id,
    )
    obsoleted = obsolescence.on_released(s, version, actor)
    record_event(
        s,
        actor=actor,
        action="doc.release",
        version=version,
        metadata={
            "version": version.version,
            "release_method": method,
            "obsoleted_version_id": obsoleted.id if obsoleted else None,
        },
    )
    notify(
        s,
        document_released,
        version_id=version.id,
        document_number=version.document_number,
        version=version.version,
        released_by_user_id=actor.id,
    )
    logger.info("%s released (%s) by user_id=%s", version.display_number, method, actor.id)
    return version


def submit(s: Session, version: DocumentVersion, actor: User) -> DocumentVersion:
    """Draft -> In Approval. Every approver starts the cycle Pending."""
    from .approvals import reset_for_resubmission

    ensure_creator_or_admin(actor, version.created_by_user_id, "submit this document for approval")
    if version.status != STATUS_DRAFT:
        raise IllegalTransition(f"Only Draft documents can be submitted (status: {version.status}).")
    _ensure_legal(s, version, STATUS_IN_APPROVAL, TRIGGER_USER)

    resubmission = reset_for_resubmission(version.approvers)
    compare_and_set_status(s, version, STATUS_DRAFT, STATUS_IN_APPROVAL)
    record_event(
        s,
        actor=actor,
        action="doc.submit",
        version=version,
        metadata={
            "approver_count": len(version.approvers),
            "resubmission": resubmission,
        },
    )
    return version


def release_directly(s: Session, version: DocumentVersion, actor: User) -> DocumentVersion:
    """Draft -> Released for Prototypes with no approvers."""
    ensure_creator_or_admin(actor, version.created_by_user_id, "release this document")
    _ensure_legal(s, version, STATUS_RELEASED, TRIGGER_USER)
    return _release(s, version, actor, expected=STATUS_DRAFT, method="direct")


def auto_release(s: Session, version: DocumentVersion, actor: User) -> DocumentVersion:
    """In Approval -> Released once the approver set is complete."""
    _ensure_legal(s, version, STATUS_RELEASED, TRIGGER_APPROVALS)
    return _release(s, version, actor, expected=STATUS_IN_APPROVAL, method="approved")


def revert_to_draft(s: Session, version: DocumentVersion, actor: User, *, reason: str) -> DocumentVersion:
    """In Approval -> Draft after a rejection."""
    _ensure_legal(s, version, STATUS_DRAFT, TRIGGER_APPROVALS)
    compare_and_set_status(s, version, STATUS_IN_APPROVAL, STATUS_DRAFT)
    record_event(
        s,
        actor=actor,
        action="doc.reject",
        version=version,
        reason=reason,
        metadata={"rejected_by_user_id": actor.id, "rejection_reason": reason},
    )
    return version


def transition(s: Session, version: DocumentVersion, actor: User, target: str) -> DocumentVersion:
    """Entry point for a user asking for a specific status."""
    if target not in STATUS_TRANSITIONS:
        raise ValidationError(f"Unknown status {target!r}.", details={"field": "status"})
    if target == STATUS_IN_APPROVAL:
        return submit(s, version, actor)
    if target == STATUS_RELEASED and version.status == STATUS_DRAFT:
        return release_directly(s, version, actor)
    errors = check_transition(s, version, target, trigger=TRIGGER_USER) or [
        f"'{version.status}' -> '{target}' cannot be requested directly"
    ]
    raise IllegalTransition(
        f"{version.display_number}: {version.status} -> {target} not allowed: " + "; ".join(errors),
        details={"from": version.status, "to": target, "reasons": errors},
    )
