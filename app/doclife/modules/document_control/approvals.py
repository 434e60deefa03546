"""
Approval coordination.

Approvers are attached to a Draft version and frozen once it is submitted.
Each approver records one decision per approval cycle. The first rejection
sends the version back to Draft; the last approval releases it. On
resubmission every approver row starts again as Pending.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.doclife.audit import record_event
from app.doclife.errors import DuplicateApprover, InvalidState, NotFound, ValidationError
from app.doclife.models import User
from app.doclife.notifications import approval_completed, approver_assigned, document_rejected, notify
from app.doclife.utils import clean_text, ensure_creator_or_admin

from . import status as status_machine
from .models import (
    APPROVER_APPROVED,
    APPROVER_PENDING,
    APPROVER_REJECTED,
    STATUS_DRAFT,
    STATUS_IN_APPROVAL,
    Approver,
    DocumentVersion,
)

logger = logging.getLogger(__name__)

DECISIONS = (APPROVER_APPROVED, APPROVER_REJECTED)


def has_rejection(approvers: Iterable[Approver]) -> bool:
    return any(a.status == APPROVER_REJECTED for a in approvers)


def is_fully_approved(approvers: Iterable[Approver]) -> bool:
    """True when there is at least one approver and all approved. A rejection always wins."""
    rows = list(approvers)
    if not rows or has_rejection(rows):
        return False
    return all(a.status == APPROVER_APPROVED for a in rows)


def reset_for_resubmission(approvers: Iterable[Approver]) -> bool:
    """Put every approver back to Pending. Returns True if any row carried a decision."""
    had_decisions = False
    for a in approvers:
        if a.status != APPROVER_PENDING or a.action_date is not None:
            had_decisions = True
        a.status = APPROVER_PENDING
        a.comments = None
        a.action_date = None
    return had_decisions


def _tenant_users(s: Session, tenant_id: int, user_ids: Sequence[int]) -> dict[int, User]:
    rows = s.scalars(
        select(User).where(User.id.in_(list(user_ids)), User.tenant_id == tenant_id, User.is_active.is_(True))
    ).all()
    return {u.id: u for u in rows}


def assign(s: Session, version: DocumentVersion, user_ids: Sequence[int], actor: User) -> list[Approver]:
    ensure_creator_or_admin(actor, version.created_by_user_id, "add approvers")
    if version.status != STATUS_DRAFT:
        raise InvalidState("Approvers can only be added to Draft documents.")

    wanted = [int(uid) for uid in user_ids]
    if len(set(wanted)) != len(wanted):
        raise DuplicateApprover("The same user was listed more than once.")

    existing = {a.user_id for a in version.approvers}
    dupes = sorted(existing.intersection(wanted))
    if dupes:
        raise DuplicateApprover(
            "User is already an approver for this document.",
            details={"user_ids": dupes},
        )

    users = _tenant_users(s, version.tenant_id, wanted)
    missing = [uid for uid in wanted if uid not in users]
    if missing:
        raise NotFound("Approver user not found in this organization.", details={"user_ids": missing})

    created: list[Approver] = []
    for uid in wanted:
        a = Approver(tenant_id=version.tenant_id, user_id=uid, status=APPROVER_PENDING)
        version.approvers.append(a)
        created.append(a)
    s.flush()

    for a in created:
        u = users[a.user_id]
        record_event(
            s,
            actor=actor,
            action="doc.approver_add",
            version=version,
            metadata={"approver_user_id": u.id, "approver_email": u.email},
        )
        notify(
            s,
            approver_assigned,
            version_id=version.id,
            document_number=version.document_number,
            version=version.version,
            approver_user_id=u.id,
            approver_email=u.email,
        )
    return created


def remove(s: Session, version: DocumentVersion, approver_id: int, actor: User) -> None:
    ensure_creator_or_admin(actor, version.created_by_user_id, "remove approvers")
    if version.status != STATUS_DRAFT:
        raise InvalidState("Approvers can only be removed from Draft documents.")
    approver = next((a for a in version.approvers if a.id == approver_id), None)
    if approver is None:
        raise NotFound("Approver not found on this document.")
    version.approvers.remove(approver)
    record_event(
        s,
        actor=actor,
        action="doc.approver_remove",
        version=version,
        metadata={"approver_user_id": approver.user_id},
    )


def _lock_for_decision(s: Session, version: DocumentVersion) -> None:
    """Serialize decisions per version (row lock where the store supports it) and reload its status."""
    s.execute(
        select(DocumentVersion.id).where(DocumentVersion.id == version.id).with_for_update()
    )
    s.refresh(version, ["status"])


def decide(
    s: Session,
    version: DocumentVersion,
    user: User,
    decision: str,
    comment: str | None = None,
) -> dict:
    """
    Record `user`'s decision on `version`.

    Returns {"decision", "status", "released"} describing where the version ended up.
    """
    if decision not in DECISIONS:
        raise ValidationError(f"Decision must be one of {', '.join(DECISIONS)}.", details={"field": "decision"})
    comment = clean_text(comment, max_len=2000, field="comment")
    if decision == APPROVER_REJECTED and not comment:
        raise ValidationError("Rejection reason is required.", details={"field": "comment"})

    _lock_for_decision(s, version)
    if version.status != STATUS_IN_APPROVAL:
        raise InvalidState("Document is not in approval status.")

    approver = next((a for a in version.approvers if a.user_id == user.id), None)
    if approver is None:
        raise NotFound("You are not assigned as an approver for this document.")
    if approver.status != APPROVER_PENDING:
        raise InvalidState("You have already responded to this approval request.")

    approver.status = decision
    approver.comments = comment
    approver.action_date = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="doc.approve" if decision == APPROVER_APPROVED else "doc.reject_vote",
        version=version,
        reason=comment if decision == APPROVER_REJECTED else None,
        metadata={"approver_id": approver.id, "comments": comment},
    )

    # Re-read sibling decisions: a concurrent approver may have committed since we loaded them.
    s.flush()
    for a in version.approvers:
        s.refresh(a, ["status"])

    released = False
    if decision == APPROVER_REJECTED:
        status_machine.revert_to_draft(s, version, user, reason=comment or "")
        notify(
            s,
            document_rejected,
            version_id=version.id,
            document_number=version.document_number,
            version=version.version,
            rejected_by_user_id=user.id,
            reason=comment,
            creator_user_id=version.created_by_user_id,
        )
        logger.info("%s rejected by user_id=%s", version.display_number, user.id)
    elif is_fully_approved(version.approvers):
        status_machine.auto_release(s, version, user)
        released = True
        notify(
            s,
            approval_completed,
            version_id=version.id,
            document_number=version.document_number,
            version=version.version,
            creator_user_id=version.created_by_user_id,
        )

    return {"decision": decision, "status": version.status, "released": released}


def pending_for_user(s: Session, user: User) -> list[Approver]:
    """Open approval requests waiting on `user`."""
    return list(
        s.scalars(
            select(Approver)
            .join(DocumentVersion, DocumentVersion.id == Approver.document_version_id)
            .where(
                Approver.user_id == user.id,
                Approver.tenant_id == user.tenant_id,
                Approver.status == APPROVER_PENDING,
                DocumentVersion.status == STATUS_IN_APPROVAL,
            )
            .order_by(Approver.created_at.desc(), Approver.id.desc())
        )
    )
