"""
Prototype -> Production promotion.

Promotion never continues the prototype's label sequence: it opens a new
document number (same document type) whose first version is a Production
v1 Draft. Attachments are not carried over.

If an earlier promotion of the same prototype lineage left a Production
Draft behind, the caller has to say what to do with it:

- "discard": delete the stale draft and promote afresh (its number stays burned)
- "convert": re-point the stale draft at the new source and reuse it
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.doclife.audit import record_event
from app.doclife.errors import ConflictRequiresStrategy, InvalidState, ValidationError
from app.doclife.models import User
from app.doclife.storage import Storage
from app.doclife.utils import ensure_creator_or_admin

from . import deletion
from .models import STATUS_DRAFT, STATUS_RELEASED, DocumentVersion
from .sequencing import allocate, format_document_number
from .versioning import initial_label

logger = logging.getLogger(__name__)

STRATEGY_DISCARD = "discard"
STRATEGY_CONVERT = "convert"
STRATEGIES = (STRATEGY_DISCARD, STRATEGY_CONVERT)


def find_stale_production_draft(s: Session, source: DocumentVersion) -> DocumentVersion | None:
    """A Production Draft left by an earlier promotion of any version of `source`'s lineage."""
    lineage_ids = select(DocumentVersion.id).where(
        DocumentVersion.tenant_id == source.tenant_id,
        DocumentVersion.document_number == source.document_number,
    )
    return s.scalars(
        select(DocumentVersion)
        .where(
            DocumentVersion.tenant_id == source.tenant_id,
            DocumentVersion.is_production.is_(True),
            DocumentVersion.status == STATUS_DRAFT,
            DocumentVersion.promoted_from_version_id.in_(lineage_ids),
        )
        .order_by(DocumentVersion.id.desc())
    ).first()


def _check_source(source: DocumentVersion, actor: User) -> None:
    ensure_creator_or_admin(actor, source.created_by_user_id, "promote this document")
    if source.is_production:
        raise InvalidState("This document is already a Production document.")
    if source.status != STATUS_RELEASED:
        raise InvalidState("Only Released Prototype documents can be promoted to Production.")


def _audit_promotion(s: Session, source: DocumentVersion, target: DocumentVersion, actor: User, strategy: str | None) -> None:
    record_event(
        s,
        actor=actor,
        action="doc.promote",
        version=target,
        metadata={
            "source_version_id": source.id,
            "source_document": source.display_number,
            "new_document": target.display_number,
            "strategy": strategy,
        },
    )
    record_event(
        s,
        actor=actor,
        action="doc.promoted_from",
        version=source,
        metadata={
            "promoted_to_version_id": target.id,
            "new_document": target.display_number,
        },
    )


def promote(
    s: Session,
    source: DocumentVersion,
    actor: User,
    strategy: str | None = None,
    *,
    storage: Storage | None = None,
) -> DocumentVersion:
    _check_source(source, actor)
    if strategy is not None and strategy not in STRATEGIES:
        raise ValidationError(
            f"Strategy must be one of {', '.join(STRATEGIES)}.",
            details={"field": "strategy"},
        )

    stale = find_stale_production_draft(s, source)
    if stale is not None and strategy is None:
        raise ConflictRequiresStrategy(
            f"{stale.display_number} is a Production draft from an earlier promotion of "
            f"{source.document_number}; choose to discard or convert it.",
            details={
                "existing_version_id": stale.id,
                "existing_document": stale.display_number,
                "strategies": list(STRATEGIES),
            },
        )

    if stale is not None and strategy == STRATEGY_CONVERT:
        stale.promoted_from_version_id = source.id
        stale.is_production = True
        stale.title = source.title
        stale.description = source.description
        stale.project_code = source.project_code
        s.flush()
        _audit_promotion(s, source, stale, actor, strategy)
        logger.info("Converted %s for promotion of %s", stale.display_number, source.display_number)
        return stale

    # Allocation commits on its own connection, before this unit writes anything.
    prefix, number = allocate(s, source.document_type_id, source.tenant_id)

    if stale is not None:
        deletion.delete(s, stale, actor, storage=storage)

    target = DocumentVersion(
        tenant_id=source.tenant_id,
        document_type_id=source.document_type_id,
        document_number=format_document_number(prefix, number),
        version=initial_label(True),
        status=STATUS_DRAFT,
        is_production=True,
        title=source.title,
        description=source.description,
        project_code=source.project_code,
        created_by_user_id=actor.id,
        promoted_from_version_id=source.id,
    )
    s.add(target)
    s.flush()
    _audit_promotion(s, source, target, actor, strategy if stale is not None else None)
    logger.info("Promoted %s to %s", source.display_number, target.display_number)
    return target
