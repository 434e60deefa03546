"""
Typed errors raised by the document lifecycle engine.

Service code raises these; the Flask layer turns them into JSON responses
(see `create_app`). Each error has a stable `code` for API clients.
"""
from __future__ import annotations

from typing import Any


class DocLifeError(Exception):
    code = "error"
    http_status = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(DocLifeError):
    code = "validation_error"
    http_status = 400


class InvalidLabel(ValidationError):
    code = "invalid_label"


class NotFound(DocLifeError):
    code = "not_found"
    http_status = 404


class PermissionDenied(DocLifeError):
    code = "permission_denied"
    http_status = 403


class IllegalTransition(DocLifeError):
    code = "illegal_transition"
    http_status = 409


class InvalidState(DocLifeError):
    code = "invalid_state"
    http_status = 409


class Inactive(DocLifeError):
    code = "inactive"
    http_status = 409


class DuplicateApprover(DocLifeError):
    code = "duplicate_approver"
    http_status = 409


class ConflictRequiresStrategy(DocLifeError):
    """Promotion found a stale Production draft; caller must pick discard or convert."""

    code = "conflict_requires_strategy"
    http_status = 409


class DeletionNotAllowed(DocLifeError):
    code = "deletion_not_allowed"
    http_status = 409


class SequenceExhausted(DocLifeError):
    code = "sequence_exhausted"
    http_status = 409


class ConcurrencyConflict(DocLifeError):
    code = "concurrency_conflict"
    http_status = 409
