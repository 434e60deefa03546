import logging

import pytest

from app.doclife.models import User
from app.doclife.modules.document_control import service
from app.doclife.notifications import approver_assigned, document_obsoleted, document_released, pending


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, sender, **payload):
        self.calls.append(payload)


def test_release_is_announced_only_after_commit(unit, ids):
    released = Recorder()
    with document_released.connected_to(released):
        with unit() as s:
            admin = s.get(User, ids.admin)
            va = service.create_document(s, admin, ids.form, {"title": "Torque Spec"})
            service.release_directly(s, admin, va.id)
            assert "document-released" in pending(s)
            assert released.calls == []

    assert len(released.calls) == 1
    assert released.calls[0]["document_number"] == "FORM-00001"


def test_rolled_back_work_sends_nothing(unit, ids, caplog):
    caplog.set_level(logging.INFO, logger="app.doclife.notifications")
    released, assigned = Recorder(), Recorder()
    with document_released.connected_to(released), approver_assigned.connected_to(assigned):
        with pytest.raises(RuntimeError):
            with unit() as s:
                admin = s.get(User, ids.admin)
                va = service.create_document(s, admin, ids.form, {"title": "Torque Spec"})
                service.add_approvers(s, admin, va.id, [ids.a1])
                service.submit_for_approval(s, admin, va.id)
                service.record_approval_decision(s, s.get(User, ids.a1), va.id, "Approved")
                raise RuntimeError("abort")

    assert released.calls == []
    assert assigned.calls == []
    dropped = [r.getMessage() for r in caplog.records if "Rollback dropped" in r.getMessage()]
    assert len(dropped) == 1
    assert "approver-assigned" in dropped[0] and "document-released" in dropped[0]


def test_obsolescence_and_assignment_signals(unit, ids):
    obsoleted, assigned = Recorder(), Recorder()
    with document_obsoleted.connected_to(obsoleted), approver_assigned.connected_to(assigned):
        with unit() as s:
            admin = s.get(User, ids.admin)
            va = service.create_document(s, admin, ids.form, {"title": "Torque Spec"})
            service.release_directly(s, admin, va.id)
            vb = service.create_new_version(s, admin, va.document_number)
            service.submit_for_approval(s, admin, vb.id, [ids.a2])
            service.record_approval_decision(s, s.get(User, ids.a2), vb.id, "Approved")

    assert [c["approver_user_id"] for c in assigned.calls] == [ids.a2]
    assert len(obsoleted.calls) == 1


def test_failing_receiver_does_not_break_the_commit(unit, ids):
    def boom(sender, **payload):
        raise RuntimeError("mail server down")

    with document_released.connected_to(boom):
        with unit() as s:
            admin = s.get(User, ids.admin)
            va = service.create_document(s, admin, ids.form, {"title": "Torque Spec"})
            service.release_directly(s, admin, va.id)
            vid = va.id

    with unit() as s:
        assert service.get_document(s, s.get(User, ids.admin), vid).status == "Released"
