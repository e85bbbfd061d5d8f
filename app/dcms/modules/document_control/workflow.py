"""
Workflow State Machine.

    pending --approve--> approved --issue--> issued
    pending|approved --decline--> declined

Each transition runs under a per-document lock and inside a single store
transaction: field updates, notifications and the audit event commit
together or not at all. The row version on ``Document`` turns a lost race
with another process into ``ConflictError`` instead of interleaved writes.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable

from sqlalchemy.orm import Session

from app.dcms.audit import record_event
from app.dcms.errors import AccessDenied, PreconditionFailed, ValidationError
from app.dcms.locking import document_locks
from app.dcms.models import Department, User, UserRole

from .ledger import ensure_counter
from .models import Document, DocumentDepartment, DocumentStatus
from .notifications import WorkflowEvent, dispatch
from .service import compute_review_due_date, normalize_doc_number
from .store import DocumentStore

logger = logging.getLogger(__name__)


# Allowed source states per transition, and the state each one lands in.
TRANSITIONS: dict[WorkflowEvent, tuple[frozenset[DocumentStatus], DocumentStatus]] = {
    WorkflowEvent.APPROVE: (frozenset({DocumentStatus.PENDING}), DocumentStatus.APPROVED),
    WorkflowEvent.DECLINE: (frozenset({DocumentStatus.PENDING, DocumentStatus.APPROVED}), DocumentStatus.DECLINED),
    WorkflowEvent.ISSUE: (frozenset({DocumentStatus.APPROVED}), DocumentStatus.ISSUED),
}


def can_transition(status: DocumentStatus, event: WorkflowEvent) -> bool:
    sources, _target = TRANSITIONS[event]
    return status in sources


def _require_transition(doc: Document, event: WorkflowEvent) -> DocumentStatus:
    sources, target = TRANSITIONS[event]
    if doc.status not in sources:
        required = "|".join(sorted(s.value for s in sources))
        raise PreconditionFailed(
            required,
            doc.status.value,
            message=f"Cannot {event.value} a document that is {doc.status.value} (requires {required}).",
        )
    return target


def _require_text(field: str, value: str | None) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(field, "is required")
    return text


def _optional_text(value: str | None) -> str | None:
    text = (value or "").strip()
    return text or None


def _require_user(store: DocumentStore, field: str, user_id: int | None) -> User:
    user = store.find(User, user_id)
    if user is None or not user.is_active:
        raise ValidationError(field, "must reference an existing active user")
    return user


def _require_signatory(store: DocumentStore, field: str, user_id: int | None, actor: User | None) -> User:
    """
    Resolve the user a sign-off is recorded for. Only an admin may record a
    sign-off on behalf of someone else.
    """
    if actor is not None and user_id is not None and user_id != actor.id and actor.role is not UserRole.ADMIN:
        raise AccessDenied("own_signature_only", f"{field} must be the signed-in user")
    return _require_user(store, field, user_id if user_id is not None else (actor.id if actor else None))


def create_document(
    s: Session,
    *,
    prepared_by: User,
    doc_name: str,
    doc_number: str,
    revision_no: int | None = None,
    previous_version_id: int | None = None,
    reason_for_revision: str | None = None,
    date_of_issue: date | None = None,
    due_period_years: int | None = None,
    header_info: str | None = None,
    footer_info: str | None = None,
    source_storage_key: str | None = None,
    source_filename: str | None = None,
    source_sha256: str | None = None,
) -> Document:
    """
    Create a new revision row at ``pending``.

    When ``revision_no`` is omitted it becomes one past the highest existing
    revision of ``doc_number`` (0 for a new number). When
    ``previous_version_id`` is omitted the row is chained to the highest
    existing lower revision.
    """
    doc_number = normalize_doc_number(doc_number)
    if not doc_number:
        raise ValidationError("doc_number", "is required")
    doc_name = _require_text("doc_name", doc_name)
    if revision_no is not None and revision_no < 0:
        raise ValidationError("revision_no", "must be a non-negative integer")
    if due_period_years is not None and due_period_years < 0:
        raise ValidationError("due_period_years", "must be a non-negative integer")

    store = DocumentStore(s)
    duplicate = ValidationError("revision_no", f"revision already exists for {doc_number}")
    # Serializes revision-number assignment per doc number; the unique constraint backs it across processes.
    with document_locks.hold(("doc_number", doc_number)):
        with store.transaction("Document", doc_number, integrity_error=duplicate):
            existing = store.list_by_doc_number(doc_number)
            taken = {d.revision_no for d in existing}
            if revision_no is None:
                revision_no = max(taken) + 1 if taken else 0
            if revision_no in taken:
                raise ValidationError("revision_no", f"revision {revision_no} already exists for {doc_number}")

            if previous_version_id is None:
                earlier = [d for d in existing if d.revision_no < revision_no]
                previous = max(earlier, key=lambda d: d.revision_no) if earlier else None
            else:
                previous = store.find(Document, previous_version_id)
                if previous is None:
                    raise ValidationError("previous_version_id", "must reference an existing document")
                if previous.doc_number != doc_number:
                    raise ValidationError("previous_version_id", "must reference a revision of the same doc number")
                if previous.revision_no >= revision_no:
                    raise ValidationError("previous_version_id", "must reference an earlier revision")

            doc = store.create(
                Document(
                    doc_name=doc_name,
                    doc_number=doc_number,
                    revision_no=revision_no,
                    reason_for_revision=_optional_text(reason_for_revision),
                    status=DocumentStatus.PENDING,
                    previous_version_id=previous.id if previous else None,
                    prepared_by_user_id=prepared_by.id,
                    header_info=header_info,
                    footer_info=footer_info,
                    source_storage_key=source_storage_key,
                    source_filename=source_filename,
                    source_sha256=source_sha256,
                    date_of_issue=date_of_issue,
                    due_period_years=due_period_years,
                    review_due_date=compute_review_due_date(date_of_issue, due_period_years),
                )
            )
            dispatch(store, WorkflowEvent.CREATE, doc)
            record_event(
                s,
                actor=prepared_by,
                action="doc.create",
                entity_type="Document",
                entity_id=str(doc.id),
                metadata={
                    "doc_number": doc.doc_number,
                    "revision_no": doc.revision_no,
                    "previous_version_id": doc.previous_version_id,
                },
            )

    logger.info("Document %s created: %s rev %s by user %s", doc.id, doc.doc_number, doc.revision_no, prepared_by.id)
    return doc


def approve_document(
    s: Session,
    document_id: int,
    *,
    approved_by_user_id: int | None,
    remarks: str | None,
    approver_name: str | None = None,
    department_ids: Iterable[int] | None = None,
    actor: User | None = None,
) -> Document:
    """
    ``actor`` is the signed-in caller and is what the audit trail records;
    ``approved_by_user_id`` is the signatory and defaults to the actor.
    """
    store = DocumentStore(s)
    with document_locks.hold(document_id):
        with store.transaction("Document", document_id):
            doc = store.get(Document, document_id)
            remarks = _require_text("approval_remarks", remarks)
            approver = _require_signatory(store, "approved_by", approved_by_user_id, actor)
            target = _require_transition(doc, WorkflowEvent.APPROVE)

            dept_ids = sorted(set(department_ids or ()))
            for dept_id in dept_ids:
                if store.find(Department, dept_id) is None:
                    raise ValidationError("departments", f"unknown department {dept_id}")

            store.update(
                doc,
                {
                    "status": target,
                    "approval_remarks": remarks,
                    "approved_by_user_id": approver.id,
                    "approved_at": datetime.utcnow(),
                },
            )
            # Department association is a side relation, not a status change.
            linked = {d.department_id for d in doc.departments}
            for dept_id in dept_ids:
                if dept_id not in linked:
                    doc.departments.append(DocumentDepartment(document_id=doc.id, department_id=dept_id))

            dispatch(store, WorkflowEvent.APPROVE, doc, actor_name=approver_name or approver.full_name)
            record_event(
                s,
                actor=actor or approver,
                action="doc.approve",
                entity_type="Document",
                entity_id=str(doc.id),
                reason=remarks,
                metadata={
                    "doc_number": doc.doc_number,
                    "revision_no": doc.revision_no,
                    "departments": dept_ids,
                    "approved_by": approver.id,
                },
            )

    logger.info("Document %s approved by user %s", document_id, approver.id)
    return doc


def decline_document(
    s: Session,
    document_id: int,
    *,
    remarks: str | None,
    actor: User | None = None,
) -> Document:
    store = DocumentStore(s)
    with document_locks.hold(document_id):
        with store.transaction("Document", document_id):
            doc = store.get(Document, document_id)
            remarks = _require_text("decline_remarks", remarks)
            target = _require_transition(doc, WorkflowEvent.DECLINE)

            store.update(
                doc,
                {
                    "status": target,
                    "decline_remarks": remarks,
                    "declined_at": datetime.utcnow(),
                    "approved_by_user_id": None,
                    "issued_by_user_id": None,
                },
            )
            dispatch(store, WorkflowEvent.DECLINE, doc)
            record_event(
                s,
                actor=actor,
                action="doc.decline",
                entity_type="Document",
                entity_id=str(doc.id),
                reason=remarks,
                metadata={"doc_number": doc.doc_number, "revision_no": doc.revision_no},
            )

    logger.info("Document %s declined by user %s", document_id, actor.id if actor else None)
    return doc


def issue_document(
    s: Session,
    document_id: int,
    *,
    issued_by_user_id: int | None,
    issuer_name: str | None = None,
    remarks: str | None = None,
    actor: User | None = None,
) -> Document:
    store = DocumentStore(s)
    with document_locks.hold(document_id):
        with store.transaction("Document", document_id):
            doc = store.get(Document, document_id)
            target = _require_transition(doc, WorkflowEvent.ISSUE)
            issuer = _require_signatory(store, "issued_by", issued_by_user_id, actor)
            name = _optional_text(issuer_name) or issuer.full_name

            store.update(
                doc,
                {
                    "status": target,
                    "issued_by_user_id": issuer.id,
                    "issuer_name": name,
                    "issue_remarks": _optional_text(remarks),
                    "issued_at": datetime.utcnow(),
                },
            )
            dispatch(store, WorkflowEvent.ISSUE, doc, actor_name=name)
            ensure_counter(s, doc.id)
            record_event(
                s,
                actor=actor or issuer,
                action="doc.issue",
                entity_type="Document",
                entity_id=str(doc.id),
                reason=doc.issue_remarks,
                metadata={"doc_number": doc.doc_number, "revision_no": doc.revision_no, "issued_by": issuer.id},
            )

    logger.info("Document %s issued by user %s", document_id, issuer.id)
    return doc


def replace_source(
    s: Session,
    document_id: int,
    *,
    actor: User,
    source_storage_key: str,
    source_filename: str,
    source_sha256: str,
    header_info: str | None,
    footer_info: str | None,
) -> Document:
    """Swap the Word source of a revision that has not been issued yet."""
    store = DocumentStore(s)
    with document_locks.hold(document_id):
        with store.transaction("Document", document_id):
            doc = store.get(Document, document_id)
            if doc.status is DocumentStatus.ISSUED:
                raise PreconditionFailed(
                    "pending|approved|declined",
                    doc.status.value,
                    message="Issued revisions are immutable; create a new revision instead.",
                )
            store.update(
                doc,
                {
                    "source_storage_key": source_storage_key,
                    "source_filename": source_filename,
                    "source_sha256": source_sha256,
                    "header_info": header_info,
                    "footer_info": footer_info,
                },
            )
            record_event(
                s,
                actor=actor,
                action="doc.upload",
                entity_type="Document",
                entity_id=str(doc.id),
                metadata={"doc_number": doc.doc_number, "filename": source_filename, "sha256": source_sha256},
            )
    return doc
