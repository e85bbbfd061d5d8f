from __future__ import annotations

import hashlib
import io
from datetime import date

from werkzeug.utils import secure_filename

WORD_MIME_TYPES = frozenset(
    {
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/msword",
    }
)
WORD_EXTENSIONS = (".docx", ".doc")


def normalize_doc_number(doc_number: str) -> str:
    return (doc_number or "").strip()


def parse_revision_no(raw: str | int | None) -> int | None:
    """
    Revision numbers are non-negative integers. Empty input means "not given".
    Raises ValueError on anything else.
    """
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError(f"Invalid revision number: {raw!r}")
    if isinstance(raw, int):
        value = raw
    else:
        text = raw.strip()
        if not text:
            return None
        if not text.isdigit():
            raise ValueError(f"Invalid revision number: {raw!r}")
        value = int(text)
    if value < 0:
        raise ValueError(f"Invalid revision number: {raw!r}")
    return value


def parse_date(s: str | None) -> date | None:
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    # Accept full ISO timestamps from API clients; only the date part matters.
    return date.fromisoformat(s[:10])


def compute_review_due_date(date_of_issue: date | None, due_period_years: int | None) -> date | None:
    """dateOfIssue + N years. Feb 29 lands on Feb 28 in non-leap target years."""
    if date_of_issue is None or not due_period_years or due_period_years <= 0:
        return None
    year = date_of_issue.year + due_period_years
    try:
        return date_of_issue.replace(year=year)
    except ValueError:
        return date_of_issue.replace(year=year, day=28)


def is_word_upload(filename: str, content_type: str | None) -> bool:
    if (content_type or "").strip().lower() in WORD_MIME_TYPES:
        return True
    return (filename or "").lower().endswith(WORD_EXTENSIONS)


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.docx"


def build_source_storage_key(doc_number: str, sha256: str, filename: str) -> str:
    # Content-addressed so the key is known before the revision number is assigned.
    safe_number = secure_filename(doc_number) or "document"
    return f"documents/{safe_number}/sources/{sha256[:16]}-{sanitize_upload_filename(filename)}"


def distribution_filename(doc_number: str, revision_no: int, copy_number: int | None = None) -> str:
    base = f"{secure_filename(doc_number) or 'document'}_v{revision_no}"
    if copy_number is not None:
        base += f"_cc{copy_number}"
    return base + ".pdf"


def to_download_fileobj(file_bytes: bytes) -> io.BytesIO:
    bio = io.BytesIO(file_bytes)
    bio.seek(0)
    return bio
