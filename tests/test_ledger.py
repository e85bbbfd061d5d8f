import threading

import pytest

from app.dcms.db import session_scope
from app.dcms.errors import AccessDenied, NotFound, RenderingFailed, ValidationError
from app.dcms.locking import KeyedLocks
from app.dcms.models import AuditEvent, User
from app.dcms.modules.document_control.distribution import distribute
from app.dcms.modules.document_control.ledger import ControlCopyLedger
from app.dcms.modules.document_control.models import (
    ControlCopy,
    ControlCopyCounter,
    DistributionAction,
    Document,
    PrintLog,
)
from app.dcms.modules.document_control.rendering import PdfRenderer, Renderer


class ExplodingRenderer(Renderer):
    def render(self, source, *, header_stamp, footer_stamp, control_copy_stamp=None):
        raise RuntimeError("converter crashed")


def _issue(app, ledger, doc_id, user_id, action=DistributionAction.VIEW):
    with session_scope(app) as s:
        return ledger.issue(s, document_id=doc_id, user_id=user_id, action_type=action).control_copy.copy_number


def _copy_numbers(app, doc_id) -> list[int]:
    with session_scope(app) as s:
        rows = s.query(ControlCopy.copy_number).filter(ControlCopy.document_id == doc_id).all()
    return sorted(n for (n,) in rows)


def test_two_prints_get_consecutive_numbers_and_print_logs(app, users, issued_document):
    doc_id = issued_document()
    ledger = ControlCopyLedger()
    with session_scope(app) as s:
        first = ledger.issue(s, document_id=doc_id, user_id=users["recipient"], action_type="print")
        second = ledger.issue(s, document_id=doc_id, user_id=users["recipient"], action_type="print")

    assert {first.control_copy.copy_number, second.control_copy.copy_number} == {1, 2}
    assert first.print_log.control_copy_id != second.print_log.control_copy_id

    with session_scope(app) as s:
        logs = s.query(PrintLog).filter(PrintLog.document_id == doc_id).all()
        assert len(logs) == 2
        assert {pl.medium for pl in logs} == {"PDF"}
        assert s.query(AuditEvent).filter(AuditEvent.action == "doc.print").count() == 2


def test_view_issues_a_copy_without_a_print_log(app, users, issued_document):
    doc_id = issued_document()
    ledger = ControlCopyLedger()
    with session_scope(app) as s:
        issued = ledger.issue(s, document_id=doc_id, user_id=users["recipient"], action_type=DistributionAction.VIEW)
        assert issued.print_log is None
        assert issued.control_copy.action_type is DistributionAction.VIEW
        assert s.query(PrintLog).count() == 0
        assert ledger.issued_count(s, doc_id) == 1


def test_unknown_action_is_rejected(app, users, issued_document):
    doc_id = issued_document()
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            ControlCopyLedger().issue(s, document_id=doc_id, user_id=users["recipient"], action_type="email")
    assert _copy_numbers(app, doc_id) == []


def test_numbering_is_per_document(app, users, issued_document):
    a = issued_document("QA-001")
    b = issued_document("QA-002")
    ledger = ControlCopyLedger()
    assert [_issue(app, ledger, a, users["recipient"]) for _ in range(3)] == [1, 2, 3]
    assert _issue(app, ledger, b, users["recipient"]) == 1


def test_counter_is_created_when_the_document_is_issued(app, users, issued_document):
    doc_id = issued_document()
    with session_scope(app) as s:
        assert s.get(ControlCopyCounter, doc_id).last_copy_number == 0


def test_missing_counter_starts_after_existing_copies(app, users, issued_document):
    doc_id = issued_document()
    with session_scope(app) as s:
        s.query(ControlCopyCounter).filter(ControlCopyCounter.document_id == doc_id).delete()
        for n in (1, 2, 3):
            s.add(
                ControlCopy(
                    document_id=doc_id, user_id=users["recipient"], action_type=DistributionAction.VIEW, copy_number=n
                )
            )
    assert _issue(app, ControlCopyLedger(), doc_id, users["recipient"]) == 4
    with session_scope(app) as s:
        assert s.get(ControlCopyCounter, doc_id).last_copy_number == 4


@pytest.mark.parametrize("already_issued,concurrent", [(0, 8), (3, 6)])
def test_concurrent_issues_have_no_duplicates_or_gaps(app, users, issued_document, already_issued, concurrent):
    doc_id = issued_document()
    ledger = ControlCopyLedger()
    for _ in range(already_issued):
        _issue(app, ledger, doc_id, users["recipient"])

    start = threading.Barrier(concurrent)
    results: list[int] = []
    errors: list[BaseException] = []
    guard = threading.Lock()

    def worker():
        start.wait()
        try:
            n = _issue(app, ledger, doc_id, users["recipient"], DistributionAction.PRINT)
        except BaseException as e:  # surfaced in the assertion below
            with guard:
                errors.append(e)
            return
        with guard:
            results.append(n)

    threads = [threading.Thread(target=worker) for _ in range(concurrent)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert sorted(results) == list(range(already_issued + 1, already_issued + concurrent + 1))
    assert _copy_numbers(app, doc_id) == list(range(1, already_issued + concurrent + 1))


@pytest.mark.parametrize("counter_present", [True, False])
def test_first_prints_from_separate_workers_get_distinct_numbers(app, users, issued_document, counter_present):
    # Each ledger has its own lock registry, as in separate gunicorn workers.
    doc_id = issued_document()
    if not counter_present:
        with session_scope(app) as s:
            s.query(ControlCopyCounter).filter(ControlCopyCounter.document_id == doc_id).delete()
    ledgers = [ControlCopyLedger(locks=KeyedLocks(f"worker-{i}")) for i in range(2)]

    start = threading.Barrier(len(ledgers))
    outcomes: list[object] = []
    guard = threading.Lock()

    def worker(ledger):
        start.wait()
        try:
            n = _issue(app, ledger, doc_id, users["recipient"], DistributionAction.PRINT)
        except BaseException as e:  # surfaced in the assertion below
            n = e
        with guard:
            outcomes.append(n)

    threads = [threading.Thread(target=worker, args=(ledger,)) for ledger in ledgers]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert [o for o in outcomes if not isinstance(o, int)] == []
    assert sorted(outcomes) == [1, 2]
    assert _copy_numbers(app, doc_id) == [1, 2]
    with session_scope(app) as s:
        assert s.get(ControlCopyCounter, doc_id).last_copy_number == 2


def test_rendering_failure_keeps_the_copy_number(app, users, issued_document, storage):
    doc_id = issued_document()
    ledger = ControlCopyLedger()
    with session_scope(app) as s:
        with pytest.raises(RenderingFailed):
            distribute(
                s,
                document_id=doc_id,
                user_id=users["recipient"],
                action=DistributionAction.PRINT,
                storage=storage,
                renderer=ExplodingRenderer(),
                ledger=ledger,
            )
    assert _copy_numbers(app, doc_id) == [1]

    with session_scope(app) as s:
        result = distribute(
            s,
            document_id=doc_id,
            user_id=users["recipient"],
            action=DistributionAction.PRINT,
            storage=storage,
            renderer=PdfRenderer(),
            ledger=ledger,
        )
        assert result.control_copy.copy_number == 2
        assert result.artifact.startswith(b"%PDF")
        assert result.filename == "QA-001_v0_cc2.pdf"
        assert result.is_latest
        assert s.query(PrintLog).filter(PrintLog.document_id == doc_id).count() == 2


def test_distribution_checks_access_before_numbering(app, users, issued_document, storage):
    old = issued_document("QA-001", 0)
    issued_document("QA-001", 1)
    with session_scope(app) as s:
        with pytest.raises(AccessDenied):
            distribute(
                s,
                document_id=old,
                user_id=users["recipient"],
                action=DistributionAction.VIEW,
                revision_no=0,
                storage=storage,
                renderer=PdfRenderer(),
                ledger=ControlCopyLedger(),
            )
    with session_scope(app) as s:
        assert s.query(ControlCopy).count() == 0


def test_missing_source_file_is_not_found(app, users, issued_document, storage):
    doc_id = issued_document()
    with session_scope(app) as s:
        d = s.get(Document, doc_id)
        key = d.source_storage_key
    (storage.root / key).unlink()

    with session_scope(app) as s:
        with pytest.raises(NotFound) as exc:
            distribute(
                s,
                document_id=doc_id,
                user_id=users["master"],
                action=DistributionAction.VIEW,
                storage=storage,
                renderer=PdfRenderer(),
                ledger=ControlCopyLedger(),
            )
    assert exc.value.entity == "DocumentFile"
    assert _copy_numbers(app, doc_id) == []
