from __future__ import annotations

from flask import Blueprint, g, jsonify, request, send_file

from app.doclife.db import db_session
from app.doclife.errors import ValidationError
from app.doclife.models import User
from app.doclife.modules.document_control import service
from app.doclife.rbac import require_permission

bp = Blueprint("documents", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _int_list(value, field: str) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list of user ids.", details={"field": field})
    try:
        return [int(v) for v in value]
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be a list of user ids.", details={"field": field}) from e


def _int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer id.", details={"field": field})
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be an integer id.", details={"field": field}) from e


_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


def _bool(value, field: str) -> bool:
    # Accepts JSON booleans, 0/1 and the usual string spellings.
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
        return value.strip().lower() in _TRUE
    raise ValidationError(f"{field} must be true or false.", details={"field": field})


def _str(value, field: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string.", details={"field": field})
    return value.strip()


def _ok(payload: dict, status: int = 200):
    return jsonify({"ok": True, **payload}), status


@bp.get("/documents")
@require_permission("docs.view")
def list_documents():
    s = db_session()
    u = _current_user()
    type_id = request.args.get("document_type_id", type=int)
    rows = service.list_documents(s, u, status=request.args.get("status") or None, document_type_id=type_id)
    return _ok({"documents": [service.serialize_version(v) for v in rows]})


@bp.post("/documents")
@require_permission("docs.create")
def create_document():
    s = db_session()
    u = _current_user()
    data = _body()
    type_id = data.get("document_type_id")
    if type_id is None:
        raise ValidationError("document_type_id is required.", details={"field": "document_type_id"})
    is_production = _bool(data.get("is_production"), "is_production")
    v = service.create_document(s, u, _int(type_id, "document_type_id"), data, is_production)
    s.commit()
    return _ok({"document": service.serialize_version(v, detail=True)}, 201)


@bp.get("/documents/<int:version_id>")
@require_permission("docs.view")
def document_detail(version_id: int):
    s = db_session()
    v = service.get_document(s, _current_user(), version_id)
    return _ok({"document": service.serialize_version(v, detail=True)})


@bp.get("/documents/<int:version_id>/audit")
@require_permission("docs.view")
def document_audit(version_id: int):
    s = db_session()
    rows = service.document_audit_log(s, _current_user(), version_id)
    return _ok({"events": [service.serialize_audit_event(e) for e in rows]})


@bp.patch("/documents/<int:version_id>")
@require_permission("docs.edit")
def update_document(version_id: int):
    s = db_session()
    v = service.update_draft(s, _current_user(), version_id, _body())
    s.commit()
    return _ok({"document": service.serialize_version(v, detail=True)})


@bp.delete("/documents/<int:version_id>")
@require_permission("docs.delete")
def delete_document(version_id: int):
    s = db_session()
    service.delete_version(s, _current_user(), version_id)
    s.commit()
    return _ok({"deleted": version_id})


@bp.post("/documents/<int:version_id>/approvers")
@require_permission("docs.edit")
def add_approvers(version_id: int):
    s = db_session()
    u = _current_user()
    ids = _int_list(_body().get("approver_ids"), "approver_ids")
    service.add_approvers(s, u, version_id, ids)
    s.commit()
    v = service.get_document(s, u, version_id)
    return _ok({"document": service.serialize_version(v, detail=True)})


@bp.delete("/documents/<int:version_id>/approvers/<int:approver_id>")
@require_permission("docs.edit")
def remove_approver(version_id: int, approver_id: int):
    s = db_session()
    u = _current_user()
    service.remove_approver(s, u, version_id, approver_id)
    s.commit()
    v = service.get_document(s, u, version_id)
    return _ok({"document": service.serialize_version(v, detail=True)})


@bp.post("/documents/<int:version_id>/submit")
@require_permission("docs.edit")
def submit_for_approval(version_id: int):
    s = db_session()
    ids = _int_list(_body().get("approver_ids"), "approver_ids")
    v = service.submit_for_approval(s, _current_user(), version_id, ids)
    s.commit()
    return _ok({"document": service.serialize_version(v, detail=True)})


@bp.post("/documents/<int:version_id>/release")
@require_permission("docs.release")
def release_directly(version_id: int):
    s = db_session()
    v = service.release_directly(s, _current_user(), version_id)
    s.commit()
    return _ok({"document": service.serialize_version(v)})


@bp.post("/documents/<int:version_id>/decision")
@require_permission("docs.approve")
def record_decision(version_id: int):
    s = db_session()
    data = _body()
    result = service.record_approval_decision(
        s,
        _current_user(),
        version_id,
        _str(data.get("decision"), "decision"),
        data.get("comment"),
    )
    s.commit()
    return _ok(result)


@bp.post("/documents/<int:version_id>/promote")
@require_permission("docs.create")
def promote(version_id: int):
    s = db_session()
    strategy = _str(_body().get("strategy"), "strategy") or None
    v = service.promote_to_production(s, _current_user(), version_id, strategy)
    s.commit()
    return _ok({"document": service.serialize_version(v)}, 201)


@bp.post("/documents/<int:version_id>/owner")
@require_permission("docs.edit")
def change_owner(version_id: int):
    s = db_session()
    owner_id = _body().get("user_id")
    if owner_id is None:
        raise ValidationError("user_id is required.", details={"field": "user_id"})
    v = service.change_owner(s, _current_user(), version_id, _int(owner_id, "user_id"))
    s.commit()
    return _ok({"document": service.serialize_version(v)})


@bp.post("/documents/<int:version_id>/attachments")
@require_permission("docs.edit")
def upload_attachment(version_id: int):
    s = db_session()
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Choose a file to upload.", details={"field": "file"})
    att = service.upload_attachment(
        s,
        _current_user(),
        version_id,
        filename=f.filename,
        data=f.read(),
        content_type=f.mimetype,
    )
    s.commit()
    return _ok({"attachment": service.serialize_attachment(att)}, 201)


@bp.get("/attachments/<int:attachment_id>/download")
@require_permission("docs.download")
def download_attachment(attachment_id: int):
    s = db_session()
    att, fobj = service.open_attachment(s, _current_user(), attachment_id)
    s.commit()
    return send_file(
        fobj,
        mimetype=att.content_type,
        as_attachment=True,
        download_name=att.filename,
        max_age=0,
    )


@bp.get("/lineages/<document_number>")
@require_permission("docs.view")
def lineage(document_number: str):
    s = db_session()
    rows = service.list_lineage(s, _current_user(), document_number)
    return _ok({"versions": [service.serialize_version(v) for v in rows]})


@bp.post("/lineages/<document_number>/versions")
@require_permission("docs.create")
def create_new_version(document_number: str):
    s = db_session()
    v = service.create_new_version(s, _current_user(), document_number)
    s.commit()
    return _ok({"document": service.serialize_version(v)}, 201)


@bp.get("/lineages/<document_number>/released")
@require_permission("docs.view")
def latest_released(document_number: str):
    s = db_session()
    v = service.latest_released(s, _current_user(), document_number)
    return _ok({"document": service.serialize_version(v) if v else None})


@bp.get("/lineages/<document_number>/audit")
@require_permission("docs.view")
def lineage_audit(document_number: str):
    s = db_session()
    rows = service.lineage_audit_log(s, _current_user(), document_number)
    return _ok({"events": [service.serialize_audit_event(e) for e in rows]})


@bp.get("/approvals/pending")
@require_permission("docs.approve")
def my_pending_approvals():
    s = db_session()
    rows = service.my_pending_approvals(s, _current_user())
    return _ok(
        {
            "approvals": [
                {**service.serialize_approver(a), "document": service.serialize_version(a.version)} for a in rows
            ]
        }
    )


@bp.post("/admin/documents/<int:version_id>/force-status")
@require_permission("docs.view")
def force_status(version_id: int):
    s = db_session()
    data = _body()
    v = service.admin_force_status(s, _current_user(), version_id, _str(data.get("status"), "status"), reason=data.get("reason"))
    s.commit()
    return _ok({"document": service.serialize_version(v)})


@bp.post("/admin/documents/<int:version_id>/force-version")
@require_permission("docs.view")
def force_version(version_id: int):
    s = db_session()
    data = _body()
    v = service.admin_force_version(s, _current_user(), version_id, _str(data.get("version"), "version"), reason=data.get("reason"))
    s.commit()
    return _ok({"document": service.serialize_version(v)})


@bp.post("/admin/documents/<int:version_id>/force-doc-number")
@require_permission("docs.view")
def force_doc_number(version_id: int):
    s = db_session()
    data = _body()
    v = service.admin_force_doc_number(
        s, _current_user(), version_id, _str(data.get("document_number"), "document_number"), reason=data.get("reason")
    )
    s.commit()
    return _ok({"document": service.serialize_version(v)})


@bp.post("/admin/documents/<int:version_id>/force-production")
@require_permission("docs.view")
def force_production(version_id: int):
    s = db_session()
    data = _body()
    if "is_production" not in data:
        raise ValidationError("is_production is required.", details={"field": "is_production"})
    v = service.admin_force_production(
        s, _current_user(), version_id, _bool(data.get("is_production"), "is_production"), reason=data.get("reason")
    )
    s.commit()
    return _ok({"document": service.serialize_version(v)})
