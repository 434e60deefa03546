import pytest

from app.doclife.audit import events_for_document
from app.doclife.errors import IllegalTransition, InvalidState, NotFound, PermissionDenied, ValidationError
from app.doclife.models import AuditEvent, User
from app.doclife.modules.document_control import service
from app.doclife.modules.document_control.models import DocumentVersion
from app.doclife.modules.document_control.status import transition


def _user(s, user_id: int) -> User:
    return s.get(User, user_id)


def _create(s, ids, *, title="Safety Checklist", production=False, by=None) -> DocumentVersion:
    return service.create_document(s, _user(s, by or ids.admin), ids.form, {"title": title}, production)


def test_form_scenario_end_to_end(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)

        va = _create(s, ids)
        assert (va.document_number, va.version, va.status) == ("FORM-00001", "vA", "Draft")

        service.release_directly(s, admin, va.id)
        assert va.status == "Released"
        assert va.released_at is not None
        assert va.released_by_user_id == admin.id

        vb = service.create_new_version(s, admin, "FORM-00001")
        assert (vb.version, vb.status, vb.title) == ("vB", "Draft", "Safety Checklist")

        service.submit_for_approval(s, admin, vb.id, [ids.a1, ids.a2])
        assert vb.status == "In Approval"

        r1 = service.record_approval_decision(s, _user(s, ids.a1), vb.id, "Approved")
        assert r1 == {"decision": "Approved", "status": "In Approval", "released": False}
        r2 = service.record_approval_decision(s, _user(s, ids.a2), vb.id, "Approved")
        assert r2["released"] is True

        assert vb.status == "Released"
        assert va.status == "Obsolete"

        s.commit()
        v1 = service.promote_to_production(s, admin, vb.id)
        assert (v1.document_number, v1.version, v1.status, v1.is_production) == ("FORM-00002", "v1", "Draft", True)
        assert v1.promoted_from_version_id == vb.id
        assert v1.title == vb.title
        va_id, vb_id = va.id, vb.id

    with unit() as s:
        assert s.get(DocumentVersion, va_id).status == "Obsolete"
        assert s.get(DocumentVersion, vb_id).status == "Released"
        actions = [e.action for e in events_for_document(s, ids.tenant, "FORM-00001")]
        for expected in ("doc.create", "doc.release", "doc.version_create", "doc.submit", "doc.approve", "doc.obsolete", "doc.promoted_from"):
            assert expected in actions
        assert [e.action for e in events_for_document(s, ids.tenant, "FORM-00002")] == ["doc.promote"]


def test_at_most_one_released_with_several_open_drafts(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)
        va = _create(s, ids)
        service.release_directly(s, admin, va.id)
        vb = service.create_new_version(s, admin, va.document_number)
        vc = service.create_new_version(s, admin, va.document_number)
        assert vc.version == "vC"

        # vC would leave vA Released next to it: vA is not its immediate predecessor.
        with pytest.raises(IllegalTransition):
            service.release_directly(s, admin, vc.id)

        service.release_directly(s, admin, vb.id)
        service.release_directly(s, admin, vc.id)

        statuses = {v.version: v.status for v in service.list_lineage(s, admin, va.document_number)}
        assert statuses == {"vA": "Obsolete", "vB": "Obsolete", "vC": "Released"}


def test_superseded_draft_cannot_be_released(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)
        va = _create(s, ids)
        service.release_directly(s, admin, va.id)
        vb = service.create_new_version(s, admin, va.document_number)
        vc = service.create_new_version(s, admin, va.document_number)
        service.admin_force_status(s, admin, va.id, "Obsolete", reason="retired early")
        service.release_directly(s, admin, vc.id)
        assert vc.status == "Released"

        with pytest.raises(IllegalTransition) as exc:
            service.release_directly(s, admin, vb.id)
        assert "Superseded" in exc.value.message
        assert [v.status for v in service.list_lineage(s, admin, va.document_number)].count("Released") == 1


def test_obsolescence_is_one_hop(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)
        va = _create(s, ids)
        service.release_directly(s, admin, va.id)
        vb = service.create_new_version(s, admin, va.document_number)
        service.release_directly(s, admin, vb.id)
        assert va.status == "Obsolete"

        vc = service.create_new_version(s, admin, va.document_number)
        service.release_directly(s, admin, vc.id)
        assert (va.status, vb.status, vc.status) == ("Obsolete", "Obsolete", "Released")

        obsoleted = (
            s.query(AuditEvent)
            .filter(AuditEvent.action == "doc.obsolete", AuditEvent.document_version_id == va.id)
            .count()
        )
        assert obsoleted == 1


def test_production_draft_cannot_release_without_approval(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)
        v1 = _create(s, ids, production=True)
        assert v1.version == "v1"

        with pytest.raises(IllegalTransition) as exc:
            service.release_directly(s, admin, v1.id)
        assert "approval" in exc.value.message
        with pytest.raises(IllegalTransition):
            service.submit_for_approval(s, admin, v1.id, [])
        assert v1.status == "Draft"

        service.submit_for_approval(s, admin, v1.id, [ids.a1])
        service.record_approval_decision(s, _user(s, ids.a1), v1.id, "Approved")
        assert v1.status == "Released"


def test_prototype_with_approvers_must_go_through_approval(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)
        va = _create(s, ids)
        service.add_approvers(s, admin, va.id, [ids.a1])
        with pytest.raises(IllegalTransition):
            service.release_directly(s, admin, va.id)


def test_in_approval_cannot_be_forced_through_the_table(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)
        va = _create(s, ids)
        service.submit_for_approval(s, admin, va.id, [ids.a1])
        with pytest.raises(IllegalTransition):
            transition(s, va, admin, "Released")
        with pytest.raises(IllegalTransition):
            transition(s, va, admin, "Draft")
        with pytest.raises(ValidationError):
            transition(s, va, admin, "Archived")


def test_rejection_reverts_to_draft_and_requires_resubmission(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)
        a1, a2 = _user(s, ids.a1), _user(s, ids.a2)
        v1 = _create(s, ids, production=True)
        service.submit_for_approval(s, admin, v1.id, [ids.a1, ids.a2])
        service.record_approval_decision(s, a2, v1.id, "Approved")

        with pytest.raises(ValidationError):
            service.record_approval_decision(s, a1, v1.id, "Rejected")

        result = service.record_approval_decision(s, a1, v1.id, "Rejected", "fix X")
        assert result == {"decision": "Rejected", "status": "Draft", "released": False}
        assert v1.status == "Draft"
        assert {a.user_id: a.status for a in v1.approvers} == {ids.a1: "Rejected", ids.a2: "Approved"}

        with pytest.raises(IllegalTransition):
            service.release_directly(s, admin, v1.id)
        with pytest.raises(InvalidState):
            service.record_approval_decision(s, a2, v1.id, "Approved")

        s.flush()
        reject = (
            s.query(AuditEvent)
            .filter(AuditEvent.action == "doc.reject", AuditEvent.document_version_id == v1.id)
            .one()
        )
        assert reject.reason == "fix X"

        # Resubmission starts a fresh cycle for everyone.
        service.submit_for_approval(s, admin, v1.id)
        assert v1.status == "In Approval"
        assert {a.status for a in v1.approvers} == {"Pending"}
        assert all(a.comments is None and a.action_date is None for a in v1.approvers)


def test_only_creator_or_admin_drives_the_lifecycle(unit, ids):
    with unit() as s:
        author = _user(s, ids.author)
        va = _create(s, ids, by=ids.author)
        with pytest.raises(PermissionDenied):
            service.release_directly(s, _user(s, ids.a1), va.id)
        service.release_directly(s, author, va.id)
        assert va.status == "Released"


def test_new_version_needs_a_released_version(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)
        va = _create(s, ids)
        with pytest.raises(InvalidState):
            service.create_new_version(s, admin, va.document_number)
        with pytest.raises(NotFound):
            service.create_new_version(s, admin, "FORM-09999")


def test_drafts_can_be_edited_and_reassigned(unit, ids):
    with unit() as s:
        admin = _user(s, ids.admin)
        author = _user(s, ids.author)
        va = _create(s, ids, by=ids.author)

        service.update_draft(s, author, va.id, {"title": "  Safety Checklist rev 2 ", "project_code": "P-9"})
        assert (va.title, va.project_code, va.description) == ("Safety Checklist rev 2", "P-9", None)
        with pytest.raises(ValidationError):
            service.update_draft(s, author, va.id, {"title": "   "})

        with pytest.raises(PermissionDenied):
            service.change_owner(s, author, va.id, ids.a1)
        with pytest.raises(NotFound):
            service.change_owner(s, admin, va.id, ids.outsider)
        service.change_owner(s, admin, va.id, ids.a1)
        assert va.created_by_user_id == ids.a1
        with pytest.raises(PermissionDenied):
            service.update_draft(s, author, va.id, {"title": "Back to me"})

        service.release_directly(s, admin, va.id)
        with pytest.raises(InvalidState):
            service.update_draft(s, admin, va.id, {"title": "Too late"})
