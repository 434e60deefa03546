import pytest

from app.doclife.errors import DuplicateApprover, InvalidState, NotFound, ValidationError
from app.doclife.models import User
from app.doclife.modules.document_control import service
from app.doclife.modules.document_control.approvals import is_fully_approved
from app.doclife.modules.document_control.models import Approver


def _draft(s, ids):
    return service.create_document(s, s.get(User, ids.admin), ids.form, {"title": "Calibration Log"})


def test_empty_approver_set_is_never_fully_approved():
    assert not is_fully_approved([])
    assert is_fully_approved([Approver(status="Approved"), Approver(status="Approved")])
    assert not is_fully_approved([Approver(status="Approved"), Approver(status="Pending")])
    assert not is_fully_approved([Approver(status="Approved"), Approver(status="Rejected")])


def test_duplicate_approvers_are_refused(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        va = _draft(s, ids)
        service.add_approvers(s, admin, va.id, [ids.a1])
        with pytest.raises(DuplicateApprover):
            service.add_approvers(s, admin, va.id, [ids.a1])
        with pytest.raises(DuplicateApprover):
            service.add_approvers(s, admin, va.id, [ids.a2, ids.a2])
        assert [a.user_id for a in va.approvers] == [ids.a1]


def test_approvers_must_belong_to_the_tenant(unit, ids):
    with unit() as s:
        va = _draft(s, ids)
        with pytest.raises(NotFound) as exc:
            service.add_approvers(s, s.get(User, ids.admin), va.id, [ids.outsider])
        assert exc.value.details == {"user_ids": [ids.outsider]}


def test_approver_list_is_frozen_after_submission(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        va = _draft(s, ids)
        service.submit_for_approval(s, admin, va.id, [ids.a1])
        with pytest.raises(InvalidState):
            service.add_approvers(s, admin, va.id, [ids.a2])
        with pytest.raises(InvalidState):
            service.remove_approver(s, admin, va.id, va.approvers[0].id)


def test_submit_needs_a_draft(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        va = _draft(s, ids)
        service.submit_for_approval(s, admin, va.id, [ids.a1])
        with pytest.raises(InvalidState):
            service.submit_for_approval(s, admin, va.id)


def test_remove_approver(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        va = _draft(s, ids)
        a1, a2 = service.add_approvers(s, admin, va.id, [ids.a1, ids.a2])
        service.remove_approver(s, admin, va.id, a1.id)
        assert [a.user_id for a in va.approvers] == [ids.a2]
        with pytest.raises(NotFound):
            service.remove_approver(s, admin, va.id, a1.id)


def test_decisions_are_checked(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        a1 = s.get(User, ids.a1)
        va = _draft(s, ids)

        with pytest.raises(InvalidState):
            service.record_approval_decision(s, a1, va.id, "Approved")

        service.submit_for_approval(s, admin, va.id, [ids.a1, ids.a2])
        with pytest.raises(ValidationError):
            service.record_approval_decision(s, a1, va.id, "Maybe")
        with pytest.raises(NotFound):
            service.record_approval_decision(s, s.get(User, ids.author), va.id, "Approved")

        service.record_approval_decision(s, a1, va.id, "Approved", "looks good")
        with pytest.raises(InvalidState):
            service.record_approval_decision(s, a1, va.id, "Approved")
        assert va.status == "In Approval"


def test_pending_approvals_for_user(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        a1 = s.get(User, ids.a1)
        va = _draft(s, ids)
        s.commit()
        vb = service.create_document(s, admin, ids.form, {"title": "Second"})
        service.submit_for_approval(s, admin, va.id, [ids.a1])
        service.add_approvers(s, admin, vb.id, [ids.a1])

        # vB is still a Draft, so only vA is waiting on a1.
        assert [a.document_version_id for a in service.my_pending_approvals(s, a1)] == [va.id]

        service.record_approval_decision(s, a1, va.id, "Approved")
        assert service.my_pending_approvals(s, a1) == []
        assert va.status == "Released"
