"""
Notification Dispatcher.

``notification_targets`` is a pure rule table: (event, resulting document) ->
recipients. It is evaluated once per transition and de-duplicated by user
before anything is enqueued. No rule fans out to a whole department or to a
role beyond what the table names.

    create   -> every approver
    approve  -> the preparer, plus every issuer
    decline  -> the preparer only
    issue    -> the preparer, plus the approver when one is recorded
"""
from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.dcms.errors import AccessDenied
from app.dcms.models import User, UserRole

from .models import Document, Notification
from .store import DocumentStore


class WorkflowEvent(str, enum.Enum):
    CREATE = "create"
    APPROVE = "approve"
    DECLINE = "decline"
    ISSUE = "issue"


@dataclass(frozen=True)
class NotificationTarget:
    user_id: int
    message: str
    type: str


def _label(document: Document) -> str:
    return f'"{document.doc_name}" ({document.doc_number})'


def _dedupe(targets: Iterable[NotificationTarget]) -> list[NotificationTarget]:
    # First rule wins, so the recipient-specific message is listed first.
    seen: set[int] = set()
    out: list[NotificationTarget] = []
    for t in targets:
        if t.user_id in seen:
            continue
        seen.add(t.user_id)
        out.append(t)
    return out


def notification_targets(
    event: WorkflowEvent,
    document: Document,
    *,
    role_members: Mapping[UserRole, Iterable[int]],
    actor_name: str | None = None,
) -> list[NotificationTarget]:
    label = _label(document)
    targets: list[NotificationTarget] = []

    if event is WorkflowEvent.CREATE:
        for uid in role_members.get(UserRole.APPROVER, ()):
            targets.append(
                NotificationTarget(uid, f"New document {label} is ready for your approval", "new_document")
            )
    elif event is WorkflowEvent.APPROVE:
        by = actor_name or "an approver"
        targets.append(
            NotificationTarget(
                document.prepared_by_user_id,
                f"Your document {label} has been approved by {by}",
                "document_status_update",
            )
        )
        for uid in role_members.get(UserRole.ISSUER, ()):
            targets.append(
                NotificationTarget(
                    uid,
                    f'Document {label} has been approved by {by}. Remarks: "{document.approval_remarks or ""}"',
                    "approved_document",
                )
            )
    elif event is WorkflowEvent.DECLINE:
        targets.append(
            NotificationTarget(
                document.prepared_by_user_id,
                f"Your document {label} has been declined. Remarks: {document.decline_remarks or ''}. "
                "Please review and resubmit.",
                "document_declined",
            )
        )
    elif event is WorkflowEvent.ISSUE:
        by = actor_name or document.issuer_name or "an issuer"
        targets.append(
            NotificationTarget(
                document.prepared_by_user_id,
                f"Your document {label} has been issued by {by}",
                "document_issued",
            )
        )
        if document.approved_by_user_id is not None:
            targets.append(
                NotificationTarget(document.approved_by_user_id, f"Document {label} has been issued", "document_issued")
            )
    else:
        raise ValueError(f"Unhandled workflow event: {event!r}")

    return _dedupe(targets)


def role_members(store: DocumentStore, roles: Iterable[UserRole]) -> dict[UserRole, list[int]]:
    return {role: [u.id for u in store.users_by_role(role)] for role in roles}


# Roles each event's rule needs to look up.
EVENT_ROLES: dict[WorkflowEvent, tuple[UserRole, ...]] = {
    WorkflowEvent.CREATE: (UserRole.APPROVER,),
    WorkflowEvent.APPROVE: (UserRole.ISSUER,),
    WorkflowEvent.DECLINE: (),
    WorkflowEvent.ISSUE: (),
}


def enqueue_notifications(
    s: Session,
    targets: Iterable[NotificationTarget],
    *,
    document_id: int | None,
) -> list[Notification]:
    """Adds rows to the caller's transaction; the caller commits."""
    rows = [
        Notification(user_id=t.user_id, document_id=document_id, message=t.message, type=t.type, is_read=False)
        for t in targets
    ]
    s.add_all(rows)
    return rows


def dispatch(
    store: DocumentStore,
    event: WorkflowEvent,
    document: Document,
    *,
    actor_name: str | None = None,
) -> list[Notification]:
    members = role_members(store, EVENT_ROLES[event])
    targets = notification_targets(event, document, role_members=members, actor_name=actor_name)
    return enqueue_notifications(store.s, targets, document_id=document.id)


def list_notifications(s: Session, user_id: int, *, unread_only: bool = False) -> list[Notification]:
    q = s.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return q.order_by(Notification.created_at.desc(), Notification.id.desc()).all()


def mark_notification_read(s: Session, notification_id: int, *, user: User) -> Notification:
    store = DocumentStore(s)
    with store.transaction("Notification", notification_id):
        n = store.get(Notification, notification_id)
        if n.user_id != user.id and user.role is not UserRole.ADMIN:
            raise AccessDenied("notification_owner", "Only the recipient can mark a notification as read.")
        if not n.is_read:
            store.update(n, {"is_read": True})
    return n
