"""
Document Control HTTP boundary (JSON).

Handlers parse input, call the workflow/resolver/ledger, and serialize.
Errors raised by the core are DomainError subclasses and are turned into
responses by the app-level error handler.
"""
from __future__ import annotations

from datetime import date

from flask import Blueprint, current_app, g, jsonify, request, send_file
from sqlalchemy.orm import Session

from app.dcms.audit import event_to_dict, events_for, record_event
from app.dcms.db import db_session
from app.dcms.errors import DomainError, NotFound, StorageUnavailable, ValidationError
from app.dcms.models import User
from app.dcms.rbac import (
    DOCS_APPROVE,
    DOCS_CREATE,
    DOCS_DECLINE,
    DOCS_DISTRIBUTE,
    DOCS_ISSUE,
    DOCS_VIEW,
    REPORTS_VIEW,
    require_permission,
)
from app.dcms.storage import Storage, StorageError, storage_from_config

from .distribution import distribute
from .models import DistributionAction, Document, DocumentStatus, Notification
from .notifications import list_notifications, mark_notification_read
from .rendering import docx_to_html, extract_header_footer
from .reports import control_copy_report, documents_due_for_review, print_log_report
from .service import (
    build_source_storage_key,
    file_digest_and_bytes,
    is_word_upload,
    parse_date,
    parse_revision_no,
    sanitize_upload_filename,
    to_download_fileobj,
)
from .store import DocumentStore
from .versions import revision_chain, visible_revisions
from .workflow import approve_document, create_document, decline_document, issue_document, replace_source

bp = Blueprint("doc_control", __name__)

DOCX_MIMETYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # RBAC decorator should prevent this.
        raise RuntimeError("No current user")
    return u


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


def _storage() -> Storage:
    return storage_from_config(current_app.config)


def _int_arg(raw, field: str) -> int | None:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(field, "must be an integer") from None


def _revision_arg(raw, field: str = "revision") -> int | None:
    try:
        return parse_revision_no(raw)
    except ValueError:
        raise ValidationError(field, "must be a non-negative integer") from None


def _date_arg(raw, field: str) -> date | None:
    try:
        return parse_date(raw)
    except ValueError:
        raise ValidationError(field, "must be an ISO date (YYYY-MM-DD)") from None


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _user_names(s: Session, *user_ids: int | None) -> dict[int, str]:
    ids = {uid for uid in user_ids if uid is not None}
    if not ids:
        return {}
    return {u.id: u.full_name for u in s.query(User).filter(User.id.in_(ids)).all()}


def document_to_dict(d: Document, names: dict[int, str] | None = None) -> dict:
    names = names or {}
    return {
        "id": d.id,
        "doc_name": d.doc_name,
        "doc_number": d.doc_number,
        "revision_no": d.revision_no,
        "status": d.status.value,
        "previous_version_id": d.previous_version_id,
        "reason_for_revision": d.reason_for_revision,
        "prepared_by": d.prepared_by_user_id,
        "approved_by": d.approved_by_user_id,
        "issued_by": d.issued_by_user_id,
        "preparer_name": names.get(d.prepared_by_user_id, "Unknown"),
        "approver_name": names.get(d.approved_by_user_id) if d.approved_by_user_id else None,
        "issuer_name": d.issuer_name,
        "approval_remarks": d.approval_remarks,
        "decline_remarks": d.decline_remarks,
        "issue_remarks": d.issue_remarks,
        "header_info": d.header_info,
        "footer_info": d.footer_info,
        "source_filename": d.source_filename,
        "date_of_issue": _iso(d.date_of_issue),
        "due_period_years": d.due_period_years,
        "review_due_date": _iso(d.review_due_date),
        "created_at": _iso(d.created_at),
        "approved_at": _iso(d.approved_at),
        "declined_at": _iso(d.declined_at),
        "issued_at": _iso(d.issued_at),
        "departments": sorted(dd.department_id for dd in d.departments),
    }


def _documents_response(s: Session, docs: list[Document]):
    ids: list[int | None] = []
    for d in docs:
        ids.extend([d.prepared_by_user_id, d.approved_by_user_id])
    names = _user_names(s, *ids)
    return jsonify([document_to_dict(d, names) for d in docs])


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "user_id": n.user_id,
        "document_id": n.document_id,
        "message": n.message,
        "type": n.type,
        "read": n.is_read,
        "created_at": _iso(n.created_at),
    }


def _read_word_upload() -> tuple[bytes, str, str]:
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("file", "a Word document is required")
    if not is_word_upload(f.filename, f.mimetype):
        raise ValidationError("file", "only Word documents (.doc, .docx) are allowed")
    data = f.read()
    limit = int(current_app.config.get("MAX_UPLOAD_BYTES") or 0)
    if limit and len(data) > limit:
        raise ValidationError("file", f"must be smaller than {limit // (1024 * 1024)}MB")
    if not data:
        raise ValidationError("file", "is empty")
    return data, sanitize_upload_filename(f.filename), (f.mimetype or DOCX_MIMETYPE)


def _store_source(doc_number: str, data: bytes, filename: str, content_type: str) -> tuple[str, str]:
    sha256, _size = file_digest_and_bytes(data)
    key = build_source_storage_key(doc_number, sha256, filename)
    try:
        _storage().put_bytes(key, data, content_type=content_type)
    except (StorageError, OSError) as e:
        current_app.logger.error("Source upload failed for %s: %s", doc_number, e)
        raise StorageUnavailable("Artifact storage is unavailable") from e
    return key, sha256


def _discard_source(s: Session, key: str) -> None:
    """Remove a just-stored source after its revision was rejected, unless another revision shares the key."""
    if DocumentStore(s).source_key_in_use(key):
        return
    try:
        _storage().delete(key)
    except (StorageError, OSError) as e:
        current_app.logger.warning("Could not remove unreferenced source %s: %s", key, e)


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/documents")
@require_permission(DOCS_VIEW)
def list_documents():
    s = db_session()
    store = DocumentStore(s)
    raw_status = (request.args.get("status") or "").strip()
    user_id = _int_arg(request.args.get("user_id"), "user_id")
    if raw_status:
        try:
            status = DocumentStatus.parse(raw_status)
        except ValueError:
            raise ValidationError("status", f"must be one of: {', '.join(st.value for st in DocumentStatus)}") from None
        docs = store.list_by_status(status)
    elif user_id is not None:
        docs = store.list_by_user(user_id)
    else:
        raise ValidationError("status|user_id", "one query parameter is required")
    return _documents_response(s, docs)


@bp.get("/documents/due-for-review")
@require_permission(DOCS_VIEW)
def due_for_review():
    s = db_session()
    days_ahead = _int_arg(request.args.get("days_ahead"), "days_ahead")
    if days_ahead is None:
        days_ahead = int(current_app.config.get("REVIEW_WINDOW_DAYS") or 30)
    due = documents_due_for_review(s, days_ahead=days_ahead)
    names = _user_names(s, *[d.prepared_by_user_id for d, _days in due])
    out = []
    for d, days in due:
        row = document_to_dict(d, names)
        row["days_until_due"] = days
        out.append(row)
    return jsonify(out)


@bp.get("/documents/<int:doc_id>")
@require_permission(DOCS_VIEW)
def document_detail(doc_id: int):
    s = db_session()
    d = DocumentStore(s).get(Document, doc_id)
    names = _user_names(s, d.prepared_by_user_id, d.approved_by_user_id)
    out = document_to_dict(d, names)
    chain = revision_chain(s, d)
    prev = chain[1] if len(chain) > 1 else None
    out["previous_version"] = (
        {"id": prev.id, "revision_no": prev.revision_no, "status": prev.status.value} if prev else None
    )
    out["revision_chain"] = [c.id for c in chain]
    out["history"] = [event_to_dict(ev) for ev in events_for(s, "Document", d.id)]
    return jsonify(out)


@bp.post("/documents")
@require_permission(DOCS_CREATE)
def create_document_post():
    s = db_session()
    u = _current_user()
    form = request.form

    doc_number = (form.get("doc_number") or "").strip()
    if not doc_number:
        raise ValidationError("doc_number", "is required")
    if not (form.get("doc_name") or "").strip():
        raise ValidationError("doc_name", "is required")
    revision_no = _revision_arg(form.get("revision_no"), "revision_no")
    previous_version_id = _int_arg(form.get("previous_version_id"), "previous_version_id")
    due_period_years = _int_arg(form.get("due_period_years"), "due_period_years")
    date_of_issue = _date_arg(form.get("date_of_issue"), "date_of_issue") or date.today()

    data, filename, content_type = _read_word_upload()
    header_info, footer_info = extract_header_footer(data)
    key, sha256 = _store_source(doc_number, data, filename, content_type)

    try:
        d = create_document(
            s,
            prepared_by=u,
            doc_name=form.get("doc_name") or "",
            doc_number=doc_number,
            revision_no=revision_no,
            previous_version_id=previous_version_id,
            reason_for_revision=form.get("reason_for_revision"),
            date_of_issue=date_of_issue,
            due_period_years=due_period_years,
            header_info=header_info,
            footer_info=footer_info,
            source_storage_key=key,
            source_filename=filename,
            source_sha256=sha256,
        )
    except DomainError:
        _discard_source(s, key)
        raise
    return jsonify(document_to_dict(d, {u.id: u.full_name})), 201


@bp.post("/documents/<int:doc_id>/approve")
@require_permission(DOCS_APPROVE)
def approve_document_post(doc_id: int):
    s = db_session()
    u = _current_user()
    data = _payload()
    departments = data.get("departments") or []
    if isinstance(departments, (str, int)):
        departments = [departments]
    dept_ids = [_int_arg(d, "departments") for d in departments]
    approved_by = _int_arg(data.get("approved_by"), "approved_by")

    d = approve_document(
        s,
        doc_id,
        approved_by_user_id=approved_by,
        remarks=data.get("approval_remarks"),
        approver_name=data.get("approver_name"),
        department_ids=[i for i in dept_ids if i is not None],
        actor=u,
    )
    return jsonify(document_to_dict(d, _user_names(s, d.prepared_by_user_id, d.approved_by_user_id)))


@bp.post("/documents/<int:doc_id>/decline")
@require_permission(DOCS_DECLINE)
def decline_document_post(doc_id: int):
    s = db_session()
    data = _payload()
    d = decline_document(s, doc_id, remarks=data.get("decline_remarks"), actor=_current_user())
    return jsonify(document_to_dict(d, _user_names(s, d.prepared_by_user_id)))


@bp.post("/documents/<int:doc_id>/issue")
@require_permission(DOCS_ISSUE)
def issue_document_post(doc_id: int):
    s = db_session()
    u = _current_user()
    data = _payload()
    issued_by = _int_arg(data.get("issued_by"), "issued_by")
    d = issue_document(
        s,
        doc_id,
        issued_by_user_id=issued_by,
        issuer_name=data.get("issuer_name"),
        remarks=data.get("remarks"),
        actor=u,
    )
    return jsonify(document_to_dict(d, _user_names(s, d.prepared_by_user_id, d.approved_by_user_id)))


@bp.post("/documents/<int:doc_id>/upload")
@require_permission(DOCS_CREATE)
def upload_source(doc_id: int):
    s = db_session()
    u = _current_user()
    d = DocumentStore(s).get(Document, doc_id)
    data, filename, content_type = _read_word_upload()
    header_info, footer_info = extract_header_footer(data)
    key, sha256 = _store_source(d.doc_number, data, filename, content_type)
    try:
        d = replace_source(
            s,
            doc_id,
            actor=u,
            source_storage_key=key,
            source_filename=filename,
            source_sha256=sha256,
            header_info=header_info,
            footer_info=footer_info,
        )
    except DomainError:
        _discard_source(s, key)
        raise
    return jsonify(document_to_dict(d, _user_names(s, d.prepared_by_user_id, d.approved_by_user_id)))


@bp.get("/documents/<int:doc_id>/download")
@require_permission(DOCS_VIEW)
def download_source(doc_id: int):
    s = db_session()
    u = _current_user()
    d = DocumentStore(s).get(Document, doc_id)
    if not d.source_storage_key:
        raise NotFound("DocumentFile", d.id)
    try:
        data = _storage().get_bytes(d.source_storage_key)
    except StorageError as e:
        current_app.logger.error("Source download failed for document %s: %s", d.id, e)
        raise StorageUnavailable("Artifact storage is unavailable") from e

    record_event(
        s,
        actor=u,
        action="doc.download",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"doc_number": d.doc_number, "revision_no": d.revision_no, "filename": d.source_filename},
    )
    s.commit()
    return send_file(
        to_download_fileobj(data),
        mimetype=DOCX_MIMETYPE,
        as_attachment=True,
        download_name=d.source_filename or "document.docx",
        max_age=0,
    )


@bp.get("/documents/<int:doc_id>/view-word")
@require_permission(DOCS_VIEW)
def view_word(doc_id: int):
    """Read-only HTML preview of the Word source, for review before issue. Issues no control copy."""
    s = db_session()
    d = DocumentStore(s).get(Document, doc_id)
    if not d.source_storage_key:
        raise NotFound("DocumentFile", d.id)
    try:
        data = _storage().get_bytes(d.source_storage_key)
    except StorageError as e:
        current_app.logger.error("Source preview failed for document %s: %s", d.id, e)
        raise StorageUnavailable("Artifact storage is unavailable") from e

    html, messages = docx_to_html(data)
    return jsonify(
        {
            "html": html,
            "messages": messages,
            "doc_name": d.doc_name,
            "doc_number": d.doc_number,
            "revision_no": d.revision_no,
        }
    )


def _distribution_response(doc_id: int, action: DistributionAction, revision_raw):
    s = db_session()
    u = _current_user()
    result = distribute(
        s,
        document_id=doc_id,
        user_id=u.id,
        action=action,
        revision_no=_revision_arg(revision_raw),
        storage=_storage(),
        renderer=current_app.extensions["dcms_renderer"],
        ledger=current_app.extensions["dcms_ledger"],
    )
    resp = send_file(
        to_download_fileobj(result.artifact),
        mimetype="application/pdf",
        as_attachment=False,
        download_name=result.filename,
        max_age=0,
    )
    resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    resp.headers["X-Control-Copy-Number"] = str(result.control_copy.copy_number)
    resp.headers["X-Document-Id"] = str(result.document.id)
    resp.headers["X-Revision-No"] = str(result.document.revision_no)
    return resp


@bp.get("/documents/<int:doc_id>/pdf")
@require_permission(DOCS_DISTRIBUTE)
def view_document(doc_id: int):
    return _distribution_response(doc_id, DistributionAction.VIEW, request.args.get("revision"))


@bp.post("/documents/<int:doc_id>/print")
@require_permission(DOCS_DISTRIBUTE)
def print_document(doc_id: int):
    revision = _payload().get("revision")
    return _distribution_response(doc_id, DistributionAction.PRINT, revision)


@bp.get("/documents/<doc_number>/versions")
@require_permission(DOCS_VIEW)
def document_versions(doc_number: str):
    s = db_session()
    revisions = visible_revisions(s, doc_number=doc_number, user=_current_user())
    return _documents_response(s, revisions)


# ─────────────────────────────────────────────────────────────────────────────
# Reports
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/reports/print-logs")
@require_permission(REPORTS_VIEW)
def print_logs():
    s = db_session()
    return jsonify(
        print_log_report(
            s,
            document_id=_int_arg(request.args.get("document_id"), "document_id"),
            user_id=_int_arg(request.args.get("user_id"), "user_id"),
        )
    )


@bp.get("/reports/control-copies")
@require_permission(REPORTS_VIEW)
def control_copies():
    s = db_session()
    return jsonify(
        control_copy_report(
            s,
            document_id=_int_arg(request.args.get("document_id"), "document_id"),
            user_id=_int_arg(request.args.get("user_id"), "user_id"),
        )
    )


# ─────────────────────────────────────────────────────────────────────────────
# Notifications
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/notifications")
@require_permission(DOCS_VIEW)
def notifications():
    s = db_session()
    unread_only = (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes")
    rows = list_notifications(s, _current_user().id, unread_only=unread_only)
    return jsonify([notification_to_dict(n) for n in rows])


@bp.post("/notifications/<int:notification_id>/read")
@require_permission(DOCS_VIEW)
def notification_read(notification_id: int):
    s = db_session()
    n = mark_notification_read(s, notification_id, user=_current_user())
    return jsonify(notification_to_dict(n))
