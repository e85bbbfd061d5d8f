"""
Audit reporting. Human-readable fields are joined in at query time; the
ledger rows themselves only hold ids.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from app.dcms.errors import ValidationError
from app.dcms.models import User

from .models import ControlCopy, Document, DocumentStatus, PrintLog

UNKNOWN = "Unknown"


def _require_one_filter(document_id: int | None, user_id: int | None) -> None:
    if (document_id is None) == (user_id is None):
        raise ValidationError("document_id|user_id", "exactly one filter is required")


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def print_log_report(s: Session, *, document_id: int | None = None, user_id: int | None = None) -> list[dict[str, Any]]:
    _require_one_filter(document_id, user_id)
    q = (
        s.query(
            PrintLog,
            ControlCopy.copy_number,
            Document.doc_name,
            Document.doc_number,
            Document.revision_no,
            User.full_name,
            User.username,
        )
        .outerjoin(ControlCopy, ControlCopy.id == PrintLog.control_copy_id)
        .outerjoin(Document, Document.id == PrintLog.document_id)
        .outerjoin(User, User.id == PrintLog.user_id)
    )
    if document_id is not None:
        q = q.filter(PrintLog.document_id == document_id)
    else:
        q = q.filter(PrintLog.user_id == user_id)

    rows = []
    for log, copy_number, doc_name, doc_number, revision_no, full_name, username in q.order_by(
        PrintLog.printed_at.asc(), PrintLog.id.asc()
    ):
        rows.append(
            {
                "id": log.id,
                "document_id": log.document_id,
                "user_id": log.user_id,
                "control_copy_id": log.control_copy_id,
                "medium": log.medium,
                "printed_at": _iso(log.printed_at),
                "document_name": doc_name or UNKNOWN,
                "document_number": doc_number or UNKNOWN,
                "revision_no": revision_no,
                "user_name": full_name or UNKNOWN,
                "user_email": username or UNKNOWN,
                "control_copy_number": copy_number or 0,
            }
        )
    return rows


def control_copy_report(
    s: Session, *, document_id: int | None = None, user_id: int | None = None
) -> list[dict[str, Any]]:
    _require_one_filter(document_id, user_id)
    q = (
        s.query(ControlCopy, Document.doc_name, Document.doc_number, Document.revision_no, User.full_name, User.username)
        .outerjoin(Document, Document.id == ControlCopy.document_id)
        .outerjoin(User, User.id == ControlCopy.user_id)
    )
    if document_id is not None:
        q = q.filter(ControlCopy.document_id == document_id)
    else:
        q = q.filter(ControlCopy.user_id == user_id)

    return [
        {
            "id": cc.id,
            "document_id": cc.document_id,
            "user_id": cc.user_id,
            "action_type": cc.action_type.value,
            "copy_number": cc.copy_number,
            "issued_at": _iso(cc.issued_at),
            "document_name": doc_name or UNKNOWN,
            "document_number": doc_number or UNKNOWN,
            "revision_no": revision_no,
            "user_name": full_name or UNKNOWN,
            "user_email": username or UNKNOWN,
        }
        for cc, doc_name, doc_number, revision_no, full_name, username in q.order_by(
            ControlCopy.document_id.asc(), ControlCopy.copy_number.asc()
        )
    ]


def documents_due_for_review(s: Session, *, days_ahead: int, today: date | None = None) -> list[tuple[Document, int]]:
    """Issued documents due within ``days_ahead`` days (overdue included), soonest first."""
    if days_ahead < 0:
        raise ValidationError("days_ahead", "must be a non-negative integer")
    today = today or date.today()
    horizon = date.fromordinal(today.toordinal() + days_ahead)
    docs = (
        s.query(Document)
        .filter(
            Document.status == DocumentStatus.ISSUED,
            Document.review_due_date.is_not(None),
            Document.review_due_date <= horizon,
        )
        .all()
    )
    due = [(d, (d.review_due_date - today).days) for d in docs]
    due.sort(key=lambda pair: (pair[1], pair[0].doc_number, pair[0].revision_no))
    return due
