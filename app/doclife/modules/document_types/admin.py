from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.doclife.db import db_session
from app.doclife.errors import ValidationError
from app.doclife.models import User
from app.doclife.modules.document_types import service
from app.doclife.rbac import require_permission

bp = Blueprint("document_types", __name__)


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


@bp.get("/document-types")
@require_permission("doc_types.view")
def list_types():
    s = db_session()
    active_only = (request.args.get("active") or "").strip() in ("1", "true")
    rows = service.list_document_types(s, _current_user(), active_only=active_only)
    return jsonify({"ok": True, "document_types": [service.serialize_document_type(dt) for dt in rows]})


@bp.post("/document-types")
@require_permission("doc_types.manage")
def create_type():
    s = db_session()
    data = _body()
    dt = service.create_document_type(
        s,
        _current_user(),
        name=data.get("name") or "",
        prefix=data.get("prefix") or "",
        description=data.get("description"),
    )
    s.commit()
    return jsonify({"ok": True, "document_type": service.serialize_document_type(dt)}), 201


@bp.get("/document-types/<int:type_id>")
@require_permission("doc_types.view")
def type_detail(type_id: int):
    s = db_session()
    dt = service.get_document_type(s, _current_user(), type_id)
    return jsonify({"ok": True, "document_type": service.serialize_document_type(dt)})


@bp.patch("/document-types/<int:type_id>")
@require_permission("doc_types.manage")
def update_type(type_id: int):
    s = db_session()
    data = _body()
    dt = service.update_document_type(
        s,
        _current_user(),
        type_id,
        name=data.get("name"),
        prefix=data.get("prefix"),
        description=data.get("description"),
    )
    s.commit()
    return jsonify({"ok": True, "document_type": service.serialize_document_type(dt)})


@bp.post("/document-types/<int:type_id>/toggle")
@require_permission("doc_types.manage")
def toggle_type(type_id: int):
    s = db_session()
    dt = service.toggle_document_type(s, _current_user(), type_id)
    s.commit()
    return jsonify({"ok": True, "document_type": service.serialize_document_type(dt)})


@bp.delete("/document-types/<int:type_id>")
@require_permission("doc_types.manage")
def delete_type(type_id: int):
    s = db_session()
    service.delete_document_type(s, _current_user(), type_id)
    s.commit()
    return jsonify({"ok": True, "deleted": type_id})
