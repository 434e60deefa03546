"""
One-hop obsolescence.

When a version is released, its immediate predecessor in the lineage is
moved from Released to Obsolete. Nothing further back is touched: older
versions were already obsoleted by their own successors.
"""
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.doclife.audit import record_event
from app.doclife.models import User
from app.doclife.notifications import document_obsoleted, notify

from .lineage import immediate_predecessor
from .models import STATUS_OBSOLETE, STATUS_RELEASED, DocumentVersion

logger = logging.getLogger(__name__)


def on_released(s: Session, version: DocumentVersion, actor: User | None) -> DocumentVersion | None:
    """Obsolete the Released predecessor of `version`, if any. Returns the obsoleted row."""
    from .status import compare_and_set_status

    predecessor = immediate_predecessor(s, version)
    if predecessor is None or predecessor.status != STATUS_RELEASED:
        return None

    compare_and_set_status(s, predecessor, STATUS_RELEASED, STATUS_OBSOLETE)

    record_event(
        s,
        actor=actor,
        action="doc.obsolete",
        version=predecessor,
        reason="Newer version released",
        metadata={
            "obsoleted_version": predecessor.version,
            "obsoleted_by_version": version.version,
            "obsoleted_by_version_id": version.id,
        },
    )
    notify(
        s,
        document_obsoleted,
        version_id=predecessor.id,
        document_number=predecessor.document_number,
        version=predecessor.version,
        superseded_by=version.version,
    )
    logger.info("%s obsoleted by release of %s", predecessor.display_number, version.display_number)
    return predecessor
