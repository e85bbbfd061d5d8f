import io
from datetime import date

import pytest
from docx import Document as DocxDocument
from werkzeug.security import generate_password_hash

from app.dcms import auth, create_app
from app.dcms.db import session_scope
from app.dcms.models import Base, User, UserRole
from app.dcms.modules.document_control.workflow import approve_document, create_document, issue_document
from app.dcms.storage import LocalStorage

PASSWORD = "pw-for-tests"

# key -> (username, full name, role, master copy access)
USERS = {
    "creator": ("casey", "Casey Creator", UserRole.CREATOR, False),
    "approver": ("avery", "Avery Approver", UserRole.APPROVER, False),
    "issuer": ("iris", "Iris Issuer", UserRole.ISSUER, False),
    "recipient": ("riley", "Riley Recipient", UserRole.RECIPIENT, False),
    "master": ("morgan", "Morgan Master", UserRole.RECIPIENT, True),
    "admin": ("admin", "Ada Admin", UserRole.ADMIN, True),
}


@pytest.fixture(autouse=True)
def _reset_login_rate_limit():
    auth._login_attempts.clear()
    yield
    auth._login_attempts.clear()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    yield app
    engine.dispose()


@pytest.fixture()
def users(app) -> dict[str, int]:
    ids: dict[str, int] = {}
    with session_scope(app) as s:
        for key, (username, full_name, role, master) in USERS.items():
            u = User(
                username=username,
                full_name=full_name,
                password_hash=generate_password_hash(PASSWORD),
                role=role,
                master_copy_access=master,
                is_active=True,
            )
            s.add(u)
            s.flush()
            ids[key] = u.id
    return ids


@pytest.fixture()
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(root=tmp_path / "storage")


@pytest.fixture()
def make_docx():
    def _make(
        paragraphs=("1. Purpose", "Defines how controlled documents are issued."),
        header: str | None = "ACME Medical - Quality System",
        footer: str | None = "Confidential - uncontrolled when printed",
    ) -> bytes:
        d = DocxDocument()
        section = d.sections[0]
        if header:
            section.header.paragraphs[0].text = header
        if footer:
            section.footer.paragraphs[0].text = footer
        for p in paragraphs:
            d.add_paragraph(p)
        buf = io.BytesIO()
        d.save(buf)
        return buf.getvalue()

    return _make


@pytest.fixture()
def issued_document(app, users, storage, make_docx):
    """Factory: create + approve + issue a revision with a stored Word source; returns its id."""

    def _issue(doc_number: str = "QA-001", revision_no: int | None = None, doc_name: str = "Quality Manual") -> int:
        key = f"documents/{doc_number}/sources/{doc_number}-{revision_no}.docx"
        storage.put_bytes(key, make_docx())
        with session_scope(app) as s:
            creator = s.get(User, users["creator"])
            doc = create_document(
                s,
                prepared_by=creator,
                doc_name=doc_name,
                doc_number=doc_number,
                revision_no=revision_no,
                date_of_issue=date(2024, 1, 15),
                due_period_years=2,
                source_storage_key=key,
                source_filename="manual.docx",
            )
            approve_document(s, doc.id, approved_by_user_id=users["approver"], remarks="Looks good")
            issue_document(s, doc.id, issued_by_user_id=users["issuer"])
            return doc.id

    return _issue


@pytest.fixture()
def login(app, users):
    """Factory: a test client with its own cookie jar, logged in as one of USERS."""

    def _login(key: str):
        client = app.test_client()
        r = client.post("/auth/login", json={"username": USERS[key][0], "password": PASSWORD})
        assert r.status_code == 200, r.json
        return client

    return _login
