from datetime import date

import pytest

from app.dcms.db import session_scope
from app.dcms.errors import ValidationError
from app.dcms.models import User
from app.dcms.modules.document_control.ledger import ControlCopyLedger
from app.dcms.modules.document_control.reports import (
    control_copy_report,
    documents_due_for_review,
    print_log_report,
)


def test_reports_require_exactly_one_filter(app, users):
    with session_scope(app) as s:
        for report in (print_log_report, control_copy_report):
            with pytest.raises(ValidationError):
                report(s)
            with pytest.raises(ValidationError):
                report(s, document_id=1, user_id=1)


def test_print_log_report_by_user(app, users, issued_document):
    a = issued_document("QA-001", doc_name="Quality Manual")
    b = issued_document("QA-002", doc_name="Complaint Handling")
    ledger = ControlCopyLedger()
    with session_scope(app) as s:
        ledger.issue(s, document_id=a, user_id=users["recipient"], action_type="print")
        ledger.issue(s, document_id=b, user_id=users["recipient"], action_type="print")
        ledger.issue(s, document_id=b, user_id=users["master"], action_type="print")
        ledger.issue(s, document_id=b, user_id=users["recipient"], action_type="view")

    with session_scope(app) as s:
        rows = print_log_report(s, user_id=users["recipient"])
        copies = control_copy_report(s, document_id=b)

    assert [(r["document_number"], r["control_copy_number"]) for r in rows] == [("QA-001", 1), ("QA-002", 1)]
    assert {r["user_email"] for r in rows} == {"riley"}
    assert [(c["copy_number"], c["user_name"], c["action_type"]) for c in copies] == [
        (1, "Riley Recipient", "print"),
        (2, "Morgan Master", "print"),
        (3, "Riley Recipient", "view"),
    ]


def test_documents_due_for_review(app, users, issued_document):
    # issued_document dates every revision 2024-01-15 with a two-year period
    issued_document("QA-001")
    with session_scope(app) as s:
        assert documents_due_for_review(s, days_ahead=30, today=date(2025, 6, 1)) == []

        due = documents_due_for_review(s, days_ahead=30, today=date(2026, 1, 1))
        assert [(d.doc_number, days) for d, days in due] == [("QA-001", 14)]

        overdue = documents_due_for_review(s, days_ahead=0, today=date(2026, 2, 1))
        assert [days for _d, days in overdue] == [-17]

        with pytest.raises(ValidationError):
            documents_due_for_review(s, days_ahead=-1)


def test_report_falls_back_to_unknown_for_missing_user(app, users, issued_document):
    doc_id = issued_document()
    with session_scope(app) as s:
        ghost = User(username="ghost", full_name="", password_hash="x")
        s.add(ghost)
        s.flush()
        ghost_id = ghost.id
    with session_scope(app) as s:
        ControlCopyLedger().issue(s, document_id=doc_id, user_id=ghost_id, action_type="print")
    with session_scope(app) as s:
        (row,) = print_log_report(s, document_id=doc_id)
    assert row["user_name"] == "Unknown"
    assert row["control_copy_number"] == 1
