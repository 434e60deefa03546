"""
Outbound lifecycle signals for the notification collaborator.

Services call `notify(s, signal, **payload)` while a unit of work is open.
Signals are queued on the session and only sent after it commits, so a
rolled-back release never produces a "document released" notification.
Delivery (email, digests, preferences) lives with whoever connects to the
signals. `defer` uses the same queue for other after-commit side effects
such as removing stored attachment files.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from blinker import Namespace
from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

_signals = Namespace()

approver_assigned = _signals.signal("approver-assigned")
document_rejected = _signals.signal("document-rejected")
approval_completed = _signals.signal("approval-completed")
document_released = _signals.signal("document-released")
document_obsoleted = _signals.signal("document-obsoleted")

_PENDING_KEY = "pending_notifications"


def notify(s: Session, signal, **payload: Any) -> None:
    defer(s, signal.name, signal.send, None, **payload)


def defer(s: Session, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Run `fn` once the session commits; dropped on rollback."""
    s.info.setdefault(_PENDING_KEY, []).append((label, fn, args, kwargs))


def pending(s: Session) -> list[str]:
    return [label for label, *_ in s.info.get(_PENDING_KEY) or []]


def _dispatch(s: Session) -> None:
    queued = s.info.pop(_PENDING_KEY, None) or []
    for label, fn, args, kwargs in queued:
        try:
            fn(*args, **kwargs)
        except Exception:
            # Fire-and-forget: a failing receiver must not undo a committed transition.
            logger.exception("Post-commit callback failed (%s)", label)


def _discard(s: Session, previous_transaction) -> None:
    if previous_transaction.parent is None:
        dropped = pending(s)
        if dropped:
            logger.info("Rollback dropped %d queued callback(s): %s", len(dropped), ", ".join(dropped))
        s.info.pop(_PENDING_KEY, None)


def install_session_hooks(sm: sessionmaker) -> None:
    event.listen(sm, "after_commit", _dispatch)
    event.listen(sm, "after_soft_rollback", _discard)
