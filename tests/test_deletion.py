import pytest

from app.doclife.errors import DeletionNotAllowed
from app.doclife.models import AuditEvent, User
from app.doclife.modules.document_control import service
from app.doclife.modules.document_control.deletion import can_delete
from app.doclife.modules.document_control.models import DocumentVersion
from app.doclife.storage import LocalStorage


def _draft(s, ids, *, by=None) -> DocumentVersion:
    return service.create_document(s, s.get(User, by or ids.admin), ids.form, {"title": "Work Instruction"})


def _sibling(s, of: DocumentVersion, label: str, status: str) -> DocumentVersion:
    v = DocumentVersion(
        tenant_id=of.tenant_id,
        document_type_id=of.document_type_id,
        document_number=of.document_number,
        version=label,
        status=status,
        is_production=of.is_production,
        title=of.title,
        created_by_user_id=of.created_by_user_id,
    )
    s.add(v)
    s.flush()
    return v


def test_lone_draft_is_deletable_and_its_audit_trail_survives(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        va = _draft(s, ids)
        assert can_delete(s, va, admin)
        vid = va.id
        service.delete_version(s, admin, vid)

    with unit() as s:
        assert s.get(DocumentVersion, vid) is None
        events = s.query(AuditEvent).filter(AuditEvent.document_number == "FORM-00001").all()
        assert {e.action for e in events} >= {"doc.create", "doc.delete"}
        assert all(e.document_version_id is None for e in events)
        assert all(e.entity_id == str(vid) for e in events)


def test_draft_next_to_a_released_version_is_deletable(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        va = _draft(s, ids)
        service.release_directly(s, admin, va.id)
        vb = service.create_new_version(s, admin, va.document_number)
        service.delete_version(s, admin, vb.id)
        assert [v.version for v in service.list_lineage(s, admin, va.document_number)] == ["vA"]


@pytest.mark.parametrize("sibling_status", ["Draft", "In Approval"])
def test_unreleased_siblings_keep_each_other_alive(unit, ids, sibling_status):
    with unit() as s:
        admin = s.get(User, ids.admin)
        va = _draft(s, ids)
        _sibling(s, va, "vB", sibling_status)
        assert not can_delete(s, va, admin)
        with pytest.raises(DeletionNotAllowed) as exc:
            service.delete_version(s, admin, va.id)
        assert "Permanence rule" in exc.value.message


def test_only_drafts_can_be_deleted(unit, ids):
    with unit() as s:
        admin = s.get(User, ids.admin)
        va = _draft(s, ids)
        service.release_directly(s, admin, va.id)
        with pytest.raises(DeletionNotAllowed) as exc:
            service.delete_version(s, admin, va.id)
        assert "Only Draft documents" in exc.value.details["reasons"][0]


def test_only_creator_or_admin_may_delete(unit, ids):
    with unit() as s:
        va = _draft(s, ids, by=ids.author)
        with pytest.raises(DeletionNotAllowed):
            service.delete_version(s, s.get(User, ids.a1), va.id)
        service.delete_version(s, s.get(User, ids.author), va.id)


def test_attachment_files_are_removed_only_after_commit(unit, ids, tmp_path):
    storage = LocalStorage(root=tmp_path / "files")

    with unit() as s:
        admin = s.get(User, ids.admin)
        va = _draft(s, ids)
        att = service.upload_attachment(s, admin, va.id, filename="checklist.pdf", data=b"%PDF-1.4", storage=storage)
        key, vid = att.storage_key, va.id
    assert storage.exists(key)

    with pytest.raises(RuntimeError):
        with unit() as s:
            service.delete_version(s, s.get(User, ids.admin), vid, storage=storage)
            raise RuntimeError("abort")
    assert storage.exists(key)

    with unit() as s:
        service.delete_version(s, s.get(User, ids.admin), vid, storage=storage)
        assert storage.exists(key)
    assert not storage.exists(key)
