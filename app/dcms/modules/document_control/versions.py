"""
Version Resolver & Access Policy.

The revision set of a doc number is every *issued* row sharing it. Users with
master-copy access may address any revision in that set; everyone else only
ever gets the latest one.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.dcms.errors import AccessDenied, ConflictError, NotFound, PreconditionFailed
from app.dcms.models import User

from .models import Document, DocumentStatus
from .store import DocumentStore

LATEST_ONLY_POLICY = "latest_revision_only"


@dataclass(frozen=True)
class ResolvedRevision:
    document: Document
    latest: Document
    revisions: tuple[Document, ...]

    @property
    def is_latest(self) -> bool:
        return self.document.id == self.latest.id


def issued_revisions(s: Session, doc_number: str) -> list[Document]:
    return DocumentStore(s).list_by_doc_number(doc_number, status=DocumentStatus.ISSUED)


def latest_revision(revisions: list[Document] | tuple[Document, ...]) -> Document:
    if not revisions:
        raise ValueError("latest_revision() needs at least one revision")
    latest = max(revisions, key=lambda d: d.revision_no)
    clashes = [d for d in revisions if d.revision_no == latest.revision_no]
    if len(clashes) > 1:
        # The unique constraint should make this unreachable; refuse to pick one by traversal order.
        raise ConflictError(
            "Document",
            latest.doc_number,
            message=f"Revision {latest.revision_no} of {latest.doc_number} is issued more than once",
        )
    return latest


def resolve_revision(
    s: Session,
    *,
    doc_number: str,
    user: User,
    revision_no: int | None = None,
) -> ResolvedRevision:
    revisions = tuple(issued_revisions(s, doc_number))
    if not revisions:
        raise NotFound("IssuedDocument", doc_number)
    latest = latest_revision(revisions)

    if revision_no is None:
        return ResolvedRevision(document=latest, latest=latest, revisions=revisions)

    match = next((d for d in revisions if d.revision_no == revision_no), None)
    if match is None:
        row = (
            s.query(Document)
            .filter(Document.doc_number == doc_number, Document.revision_no == revision_no)
            .one_or_none()
        )
        if row is not None:
            raise PreconditionFailed(
                DocumentStatus.ISSUED.value,
                row.status.value,
                message="Only issued documents can be distributed.",
            )

    if not user.master_copy_access and revision_no != latest.revision_no:
        raise AccessDenied(
            LATEST_ONLY_POLICY,
            "Only the latest issued revision can be accessed. Contact an administrator for previous revisions.",
        )

    if match is None:
        raise NotFound("DocumentRevision", f"{doc_number} rev {revision_no}")
    return ResolvedRevision(document=match, latest=latest, revisions=revisions)


def resolve_addressed(
    s: Session,
    document: Document,
    *,
    user: User,
    revision_no: int | None = None,
) -> ResolvedRevision:
    """
    Resolve a request made against a specific document row. The row only
    identifies the doc number; an omitted revision still means the latest one.
    A row that was never issued cannot stand in for its doc number.
    """
    if revision_no is None and document.status is not DocumentStatus.ISSUED:
        raise PreconditionFailed(
            DocumentStatus.ISSUED.value,
            document.status.value,
            message="Only issued documents can be distributed.",
        )
    return resolve_revision(s, doc_number=document.doc_number, user=user, revision_no=revision_no)


def visible_revisions(s: Session, *, doc_number: str, user: User) -> list[Document]:
    revisions = issued_revisions(s, doc_number)
    if not revisions or user.master_copy_access:
        return revisions
    return [latest_revision(revisions)]


def revision_chain(s: Session, document: Document) -> list[Document]:
    """``document`` followed by its predecessors, newest first."""
    store = DocumentStore(s)
    chain = [document]
    seen = {document.id}
    current = document
    while current.previous_version_id is not None:
        prev = store.find(Document, current.previous_version_id)
        if prev is None:
            break
        if prev.id in seen:
            raise ConflictError("Document", document.id, message=f"Revision chain of {document.doc_number} is cyclic")
        chain.append(prev)
        seen.add(prev.id)
        current = prev
    return chain
