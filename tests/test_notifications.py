import pytest

from app.dcms.db import session_scope
from app.dcms.errors import AccessDenied
from app.dcms.models import User, UserRole
from app.dcms.modules.document_control.models import Document, DocumentStatus
from app.dcms.modules.document_control.notifications import (
    NotificationTarget,
    WorkflowEvent,
    list_notifications,
    mark_notification_read,
    notification_targets,
)
from app.dcms.modules.document_control.workflow import create_document


def _doc(**kw) -> Document:
    fields = dict(
        id=1,
        doc_name="Calibration SOP",
        doc_number="SOP-200",
        revision_no=0,
        status=DocumentStatus.PENDING,
        prepared_by_user_id=10,
        approved_by_user_id=None,
    )
    fields.update(kw)
    return Document(**fields)


MEMBERS = {UserRole.APPROVER: [20, 21], UserRole.ISSUER: [30]}


def _ids(targets: list[NotificationTarget]) -> list[tuple[int, str]]:
    return [(t.user_id, t.type) for t in targets]


def test_create_targets_every_approver():
    targets = notification_targets(WorkflowEvent.CREATE, _doc(), role_members=MEMBERS)
    assert _ids(targets) == [(20, "new_document"), (21, "new_document")]
    assert "SOP-200" in targets[0].message


def test_approve_targets_preparer_then_issuers():
    doc = _doc(status=DocumentStatus.APPROVED, approved_by_user_id=20, approval_remarks="fine")
    targets = notification_targets(WorkflowEvent.APPROVE, doc, role_members=MEMBERS, actor_name="Avery")
    assert _ids(targets) == [(10, "document_status_update"), (30, "approved_document")]
    assert "Avery" in targets[0].message
    assert '"fine"' in targets[1].message


def test_approve_dedupes_preparer_who_is_also_an_issuer():
    doc = _doc(status=DocumentStatus.APPROVED, prepared_by_user_id=30)
    targets = notification_targets(WorkflowEvent.APPROVE, doc, role_members=MEMBERS)
    assert _ids(targets) == [(30, "document_status_update")]


def test_decline_targets_only_the_preparer():
    doc = _doc(status=DocumentStatus.DECLINED, decline_remarks="missing signatures")
    targets = notification_targets(WorkflowEvent.DECLINE, doc, role_members=MEMBERS)
    assert _ids(targets) == [(10, "document_declined")]
    assert "missing signatures" in targets[0].message


@pytest.mark.parametrize(
    "approved_by,expected",
    [
        (20, [(10, "document_issued"), (20, "document_issued")]),
        (None, [(10, "document_issued")]),
        (10, [(10, "document_issued")]),
    ],
)
def test_issue_targets_preparer_and_recorded_approver(approved_by, expected):
    doc = _doc(status=DocumentStatus.ISSUED, approved_by_user_id=approved_by, issuer_name="Iris")
    targets = notification_targets(WorkflowEvent.ISSUE, doc, role_members=MEMBERS)
    assert _ids(targets) == expected


def test_mark_read_is_limited_to_the_recipient(app, users):
    with session_scope(app) as s:
        create_document(s, prepared_by=s.get(User, users["creator"]), doc_name="WI", doc_number="WI-5")

    with session_scope(app) as s:
        rows = list_notifications(s, users["approver"], unread_only=True)
        assert len(rows) == 1
        note_id = rows[0].id

    with session_scope(app) as s:
        with pytest.raises(AccessDenied):
            mark_notification_read(s, note_id, user=s.get(User, users["recipient"]))

    with session_scope(app) as s:
        n = mark_notification_read(s, note_id, user=s.get(User, users["approver"]))
        assert n.is_read is True

    with session_scope(app) as s:
        assert list_notifications(s, users["approver"], unread_only=True) == []
        assert len(list_notifications(s, users["approver"])) == 1
