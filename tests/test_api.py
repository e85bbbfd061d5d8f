import io

from app.dcms.db import session_scope
from app.dcms.models import AuditEvent
from app.dcms.modules.document_control.models import ControlCopy


def _upload(client, docx: bytes, doc_number="SOP-100", filename="line-clearance.docx", **fields):
    data = {
        "doc_name": "Line Clearance",
        "doc_number": doc_number,
        "due_period_years": "2",
        "date_of_issue": "2025-01-10",
        "reason_for_revision": "Initial release",
        "file": (io.BytesIO(docx), filename),
    }
    data.update(fields)
    return client.post("/api/documents", data=data, content_type="multipart/form-data")


def test_document_lifecycle_and_controlled_distribution(app, users, login, make_docx):
    creator = login("creator")
    approver = login("approver")
    issuer = login("issuer")
    recipient = login("recipient")
    admin = login("admin")

    r = admin.post("/api/departments", json={"name": "Production"})
    assert r.status_code == 201
    dept_id = r.json["id"]

    # Create (pending) from a Word upload
    r = _upload(creator, make_docx(header="ACME QMS", footer="Company confidential"))
    assert r.status_code == 201, r.json
    doc = r.json
    doc_id = doc["id"]
    assert doc["status"] == "pending"
    assert doc["revision_no"] == 0
    assert doc["header_info"] == "ACME QMS"
    assert doc["footer_info"] == "Company confidential"
    assert doc["review_due_date"] == "2027-01-10"

    # Creator cannot approve; not-yet-issued documents cannot be distributed
    assert creator.post(f"/api/documents/{doc_id}/approve", json={"approval_remarks": "ok"}).status_code == 403
    r = recipient.get(f"/api/documents/{doc_id}/pdf")
    assert r.status_code == 412
    assert r.json["error"] == "precondition_failed"

    # Approval needs remarks
    r = approver.post(f"/api/documents/{doc_id}/approve", json={"approval_remarks": ""})
    assert r.status_code == 400
    assert r.json["context"]["field"] == "approval_remarks"

    r = approver.post(
        f"/api/documents/{doc_id}/approve",
        json={"approval_remarks": "Reviewed against template", "departments": [dept_id]},
    )
    assert r.status_code == 200
    assert r.json["status"] == "approved"
    assert r.json["approved_by"] == users["approver"]
    assert r.json["departments"] == [dept_id]

    r = issuer.post(f"/api/documents/{doc_id}/issue", json={"issuer_name": "Iris I.", "remarks": "Go live"})
    assert r.status_code == 200
    assert r.json["status"] == "issued"
    assert r.json["issuer_name"] == "Iris I."

    # Issuing twice fails the precondition
    assert issuer.post(f"/api/documents/{doc_id}/issue", json={}).status_code == 412

    # View then print: consecutive control copy numbers
    r = recipient.get(f"/api/documents/{doc_id}/pdf")
    assert r.status_code == 200
    assert r.mimetype == "application/pdf"
    assert r.data.startswith(b"%PDF")
    assert r.headers["X-Control-Copy-Number"] == "1"
    assert r.headers["X-Revision-No"] == "0"
    assert "no-store" in r.headers["Cache-Control"]

    r = recipient.post(f"/api/documents/{doc_id}/print", json={})
    assert r.status_code == 200
    assert r.headers["X-Control-Copy-Number"] == "2"

    # Reports join names at query time and require exactly one filter
    r = issuer.get(f"/api/reports/print-logs?document_id={doc_id}")
    assert r.status_code == 200
    (row,) = r.json
    assert row["control_copy_number"] == 2
    assert row["user_name"] == "Riley Recipient"
    assert row["document_number"] == "SOP-100"

    r = issuer.get(f"/api/reports/control-copies?user_id={users['recipient']}")
    assert [(c["copy_number"], c["action_type"]) for c in r.json] == [(1, "view"), (2, "print")]

    assert issuer.get("/api/reports/print-logs").status_code == 400
    assert recipient.get(f"/api/reports/print-logs?document_id={doc_id}").status_code == 403

    # Preparer was told about approval and issue
    r = creator.get("/api/notifications")
    types = sorted(n["type"] for n in r.json)
    assert types == ["document_issued", "document_status_update"]

    note_id = r.json[0]["id"]
    r = creator.post(f"/api/notifications/{note_id}/read")
    assert r.status_code == 200
    assert r.json["read"] is True
    assert len(creator.get("/api/notifications?unread=1").json) == 1

    with session_scope(app) as s:
        actions = {a for (a,) in s.query(AuditEvent.action).all()}
    assert {"doc.create", "doc.approve", "doc.issue", "doc.view", "doc.print"} <= actions


def test_latest_revision_policy_over_http(app, users, login, make_docx):
    creator = login("creator")
    approver = login("approver")
    issuer = login("issuer")
    recipient = login("recipient")
    master = login("master")

    ids = []
    for _ in range(2):
        r = _upload(creator, make_docx(), doc_number="QA-001")
        assert r.status_code == 201
        doc_id = r.json["id"]
        approver.post(f"/api/documents/{doc_id}/approve", json={"approval_remarks": "ok"})
        issuer.post(f"/api/documents/{doc_id}/issue", json={})
        ids.append(doc_id)
    rev0, rev1 = ids

    r = creator.get(f"/api/documents/{rev1}")
    assert r.json["revision_no"] == 1
    assert r.json["previous_version"]["id"] == rev0
    assert r.json["revision_chain"] == [rev1, rev0]
    assert [h["action"] for h in r.json["history"]] == ["doc.create", "doc.approve", "doc.issue"]
    assert r.json["history"][1]["reason"] == "ok"

    # No revision: the latest issued revision, whichever row was addressed
    r = recipient.get(f"/api/documents/{rev0}/pdf")
    assert r.status_code == 200
    assert r.headers["X-Document-Id"] == str(rev1)

    r = recipient.get(f"/api/documents/{rev1}/pdf?revision=0")
    assert r.status_code == 403
    assert r.json["context"]["policy"] == "latest_revision_only"

    r = master.get(f"/api/documents/{rev1}/pdf?revision=0")
    assert r.status_code == 200
    assert r.headers["X-Document-Id"] == str(rev0)

    assert master.get(f"/api/documents/{rev1}/pdf?revision=abc").status_code == 400
    assert master.get(f"/api/documents/{rev1}/pdf?revision=9").status_code == 404

    assert [d["revision_no"] for d in recipient.get("/api/documents/QA-001/versions").json] == [1]
    assert [d["revision_no"] for d in master.get("/api/documents/QA-001/versions").json] == [0, 1]


def test_upload_validation(app, users, login, make_docx):
    creator = login("creator")

    r = _upload(creator, b"plain text", filename="notes.txt")
    assert r.status_code == 400
    assert r.json["context"]["field"] == "file"

    r = _upload(creator, make_docx(), doc_name="")
    assert r.status_code == 400

    r = _upload(creator, make_docx(), revision_no="-1")
    assert r.status_code == 400

    assert _upload(creator, make_docx(), revision_no="4").status_code == 201
    r = _upload(creator, make_docx(), revision_no="4")
    assert r.status_code == 400
    assert r.json["context"]["field"] == "revision_no"


def test_listing_and_unknown_ids(app, users, login, make_docx):
    creator = login("creator")
    _upload(creator, make_docx())

    r = creator.get("/api/documents?status=pending")
    assert [d["doc_number"] for d in r.json] == ["SOP-100"]
    assert r.json[0]["preparer_name"] == "Casey Creator"

    r = creator.get(f"/api/documents?user_id={users['creator']}")
    assert len(r.json) == 1

    assert creator.get("/api/documents?status=archived").status_code == 400
    assert creator.get("/api/documents").status_code == 400

    r = login("approver").post("/api/documents/999/approve", json={"approval_remarks": "ok"})
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_user_administration(app, users, login):
    admin = login("admin")
    r = admin.post(
        "/api/users",
        json={"username": "Quinn", "full_name": "Quinn QA", "password": "long-enough", "role": "approver"},
    )
    assert r.status_code == 201
    assert r.json["username"] == "quinn"

    r = admin.post(
        "/api/users",
        json={"username": "quinn", "full_name": "Dup", "password": "long-enough", "role": "approver"},
    )
    assert r.status_code == 409

    assert admin.post("/api/users", json={"username": "x", "full_name": "X", "password": "short"}).status_code == 400

    r = login("issuer").get("/api/users?role=approver")
    assert sorted(u["username"] for u in r.json) == ["avery", "quinn"]
    assert login("creator").post("/api/users", json={}).status_code == 403


def test_source_replacement_download_and_decline(app, users, login, make_docx):
    creator = login("creator")
    approver = login("approver")

    doc_id = _upload(creator, make_docx(header="Draft header")).json["id"]

    new_source = make_docx(header="Final header", footer=None)
    r = creator.post(
        f"/api/documents/{doc_id}/upload",
        data={"file": (io.BytesIO(new_source), "final.docx")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    assert r.json["header_info"] == "Final header"
    assert r.json["footer_info"] is None
    assert r.json["source_filename"] == "final.docx"

    r = creator.get(f"/api/documents/{doc_id}/download")
    assert r.status_code == 200
    assert r.data == new_source

    r = approver.post(f"/api/documents/{doc_id}/decline", json={"decline_remarks": "Use the 2025 template"})
    assert r.status_code == 200
    assert r.json["status"] == "declined"
    assert r.json["decline_remarks"] == "Use the 2025 template"

    r = creator.get("/api/notifications")
    assert [n["type"] for n in r.json] == ["document_declined"]


def test_due_for_review_listing(app, users, login, issued_document):
    issued_document("QA-001")
    issuer = login("issuer")

    # Issued 2024-01-15 with a two-year period, so it is overdue by now.
    r = issuer.get("/api/documents/due-for-review?days_ahead=0")
    assert r.status_code == 200
    (row,) = r.json
    assert row["doc_number"] == "QA-001"
    assert row["review_due_date"] == "2026-01-15"
    assert row["days_until_due"] < 0

    assert issuer.get("/api/documents/due-for-review?days_ahead=-3").status_code == 400


def test_word_preview_for_reviewers(app, users, login, make_docx):
    creator = login("creator")
    approver = login("approver")
    source = make_docx(paragraphs=("Scope", "Applies to <all> lines & shifts."))
    doc_id = _upload(creator, source).json["id"]

    r = approver.get(f"/api/documents/{doc_id}/view-word")
    assert r.status_code == 200
    assert r.json["doc_number"] == "SOP-100"
    assert r.json["revision_no"] == 0
    assert r.json["doc_name"] == "Line Clearance"
    assert "<p>Scope</p>" in r.json["html"]
    assert "Applies to &lt;all&gt; lines &amp; shifts." in r.json["html"]
    assert r.json["messages"] == []

    # A preview is not a distribution.
    with session_scope(app) as s:
        assert s.query(ControlCopy).count() == 0

    assert approver.get("/api/documents/9999/view-word").status_code == 404


def test_signoff_cannot_be_recorded_for_another_user(app, users, login, make_docx):
    creator = login("creator")
    approver = login("approver")
    admin = login("admin")
    doc_id = _upload(creator, make_docx()).json["id"]

    r = approver.post(
        f"/api/documents/{doc_id}/approve",
        json={"approval_remarks": "ok", "approved_by": users["admin"]},
    )
    assert r.status_code == 403
    assert r.json["context"]["policy"] == "own_signature_only"

    r = admin.post(
        f"/api/documents/{doc_id}/approve",
        json={"approval_remarks": "ok", "approved_by": users["approver"]},
    )
    assert r.status_code == 200
    assert r.json["approved_by"] == users["approver"]

    r = login("issuer").post(f"/api/documents/{doc_id}/issue", json={"issued_by": users["admin"]})
    assert r.status_code == 403

    with session_scope(app) as s:
        (ev,) = s.query(AuditEvent).filter(AuditEvent.action == "doc.approve").all()
        assert ev.actor_user_id == users["admin"]


def test_rejected_upload_does_not_leave_its_source_behind(app, users, login, make_docx, storage):
    creator = login("creator")
    assert _upload(creator, make_docx(), revision_no="0").status_code == 201
    stored = sorted(p.name for p in storage.root.rglob("*.docx"))

    other = make_docx(paragraphs=("Different body",))
    r = _upload(creator, other, revision_no="0", filename="other.docx")
    assert r.status_code == 400
    assert r.json["context"]["field"] == "revision_no"
    assert sorted(p.name for p in storage.root.rglob("*.docx")) == stored
