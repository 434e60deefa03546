import json

import pytest

from app.doclife.errors import InvalidLabel, InvalidState, NotFound, PermissionDenied, ValidationError
from app.doclife.models import AuditEvent, User
from app.doclife.modules.document_control import service
from app.doclife.modules.document_control.models import DocumentVersion


@pytest.fixture()
def released_pair(unit, ids):
    """FORM-00001 with vA Released and vB Draft."""
    with unit() as s:
        admin = s.get(User, ids.admin)
        va = service.create_document(s, admin, ids.form, {"title": "Inspection Form"})
        service.release_directly(s, admin, va.id)
        vb = service.create_new_version(s, admin, va.document_number)
        return va.id, vb.id


def _failures(s) -> list[AuditEvent]:
    return s.query(AuditEvent).filter(AuditEvent.action == "admin.override_failed").all()


def test_successful_override_is_audited_high(unit, ids, released_pair):
    va_id, vb_id = released_pair
    with unit() as s:
        service.admin_force_status(s, s.get(User, ids.admin), va_id, "Obsolete", reason="superseded on paper")

    with unit() as s:
        assert s.get(DocumentVersion, va_id).status == "Obsolete"
        ev = s.query(AuditEvent).filter(AuditEvent.action == "admin.force_status").one()
        assert ev.severity == "high"
        assert ev.reason == "superseded on paper"
        assert json.loads(ev.metadata_json) == {"new_status": "Obsolete", "old_status": "Released"}


def test_non_admin_is_refused_and_the_attempt_survives_rollback(unit, ids, released_pair):
    va_id, _ = released_pair
    with pytest.raises(PermissionDenied):
        with unit() as s:
            service.admin_force_status(s, s.get(User, ids.author), va_id, "Draft")

    with unit() as s:
        assert s.get(DocumentVersion, va_id).status == "Released"
        [ev] = _failures(s)
        assert ev.severity == "high"
        assert ev.actor_user_id == ids.author
        assert ev.entity_id == str(va_id)
        assert json.loads(ev.metadata_json)["error"] == "permission_denied"


def test_force_status_keeps_a_single_released_version(unit, ids, released_pair):
    _, vb_id = released_pair
    with pytest.raises(InvalidState):
        with unit() as s:
            service.admin_force_status(s, s.get(User, ids.admin), vb_id, "Released")
    with pytest.raises(ValidationError):
        with unit() as s:
            service.admin_force_status(s, s.get(User, ids.admin), vb_id, "Archived")

    with unit() as s:
        assert s.get(DocumentVersion, vb_id).status == "Draft"
        assert len(_failures(s)) == 2


def test_force_version(unit, ids, released_pair):
    _, vb_id = released_pair
    with pytest.raises(InvalidState):
        with unit() as s:
            service.admin_force_version(s, s.get(User, ids.admin), vb_id, "vA")
    with pytest.raises(InvalidLabel):
        with unit() as s:
            service.admin_force_version(s, s.get(User, ids.admin), vb_id, "v0")

    with unit() as s:
        vb = service.admin_force_version(s, s.get(User, ids.admin), vb_id, "vC")
        assert vb.display_number == "FORM-00001vC"


def test_force_doc_number(unit, ids, released_pair):
    _, vb_id = released_pair
    with pytest.raises(ValidationError):
        with unit() as s:
            service.admin_force_doc_number(s, s.get(User, ids.admin), vb_id, "FORM-1")
    with pytest.raises(InvalidState):
        with unit() as s:
            service.admin_force_doc_number(s, s.get(User, ids.admin), vb_id, "FORM-00001")

    with unit() as s:
        vb = service.admin_force_doc_number(s, s.get(User, ids.admin), vb_id, "form-00042")
        assert vb.document_number == "FORM-00042"

    with unit() as s:
        admin = s.get(User, ids.admin)
        assert [v.version for v in service.list_lineage(s, admin, "FORM-00001")] == ["vA"]
        assert [v.version for v in service.list_lineage(s, admin, "FORM-00042")] == ["vB"]


def test_force_production_requires_a_matching_label(unit, ids, released_pair):
    _, vb_id = released_pair
    with pytest.raises(InvalidLabel):
        with unit() as s:
            service.admin_force_production(s, s.get(User, ids.admin), vb_id, True)

    with unit() as s:
        admin = s.get(User, ids.admin)
        service.admin_force_doc_number(s, admin, vb_id, "FORM-00050")
        service.admin_force_version(s, admin, vb_id, "v1")
        vb = service.admin_force_production(s, admin, vb_id, True, reason="was built for production")
        assert (vb.display_number, vb.is_production) == ("FORM-00050v1", True)


def test_missing_version_is_refused_and_audited(unit, ids, released_pair):
    with pytest.raises(NotFound):
        with unit() as s:
            service.admin_force_version(s, s.get(User, ids.admin), 424242, "vB", reason="cleanup")

    with unit() as s:
        [ev] = _failures(s)
        assert (ev.tenant_id, ev.entity_id, ev.document_version_id) == (ids.tenant, "424242", None)
        assert ev.reason == "cleanup"
        assert json.loads(ev.metadata_json)["error"] == "not_found"


def test_failed_override_shows_in_the_version_history(unit, ids, released_pair):
    va_id, _ = released_pair
    with pytest.raises(PermissionDenied):
        with unit() as s:
            service.admin_force_status(s, s.get(User, ids.author), va_id, "Draft")

    with unit() as s:
        actions = [e.action for e in service.document_audit_log(s, s.get(User, ids.author), va_id)]
        assert actions == ["admin.override_failed", "doc.release", "doc.create"]
        with pytest.raises(NotFound):
            service.document_audit_log(s, s.get(User, ids.other_admin), va_id)
