"""
View/print distribution: access check -> copy number -> audit -> render.

The ledger commits before rendering starts and is never rolled back if
rendering fails: the ledger records attempted distributions, not confirmed
deliveries.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from app.dcms.errors import DomainError, NotFound, RenderingFailed, StorageUnavailable
from app.dcms.models import User
from app.dcms.storage import Storage, StorageError

from .ledger import ControlCopyLedger
from .models import ControlCopy, DistributionAction, Document, PrintLog
from .rendering import ControlCopyStamp, Renderer, footer_stamp_for, header_stamp_for
from .service import distribution_filename
from .store import DocumentStore
from .versions import resolve_addressed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Distribution:
    document: Document
    control_copy: ControlCopy
    print_log: PrintLog | None
    artifact: bytes
    filename: str
    is_latest: bool


def _source_available(storage: Storage, key: str) -> bool:
    try:
        return storage.exists(key)
    except StorageError as e:
        logger.error("Source lookup failed for %s: %s", key, e)
        raise StorageUnavailable("Artifact storage is unavailable") from e


def distribute(
    s: Session,
    *,
    document_id: int,
    user_id: int,
    action: DistributionAction,
    storage: Storage,
    renderer: Renderer,
    ledger: ControlCopyLedger,
    revision_no: int | None = None,
    medium: str = "PDF",
    today: date | None = None,
) -> Distribution:
    store = DocumentStore(s)
    user = store.get(User, user_id)
    addressed = store.get(Document, document_id)
    resolved = resolve_addressed(s, addressed, user=user, revision_no=revision_no)
    doc = resolved.document

    if not doc.source_storage_key or not _source_available(storage, doc.source_storage_key):
        raise NotFound("DocumentFile", doc.id)

    issued = ledger.issue(
        s,
        document_id=doc.id,
        user_id=user.id,
        action_type=action,
        medium=medium,
        actor=user,
    )
    copy_number = issued.control_copy.copy_number

    # Past this point the copy number stays committed whatever happens.
    try:
        source = storage.get_bytes(doc.source_storage_key)
    except StorageError as e:
        logger.error("Source read failed for document %s (copy %s): %s", doc.id, copy_number, e)
        raise StorageUnavailable("Artifact storage is unavailable") from e

    stamp = ControlCopyStamp(
        user_id=user.id,
        user_full_name=user.full_name,
        copy_number=copy_number,
        date_string=(today or date.today()).isoformat(),
    )
    try:
        artifact = renderer.render(
            source,
            header_stamp=header_stamp_for(doc),
            footer_stamp=footer_stamp_for(doc),
            control_copy_stamp=stamp,
        )
    except DomainError:
        logger.error("Rendering failed for document %s (copy %s)", doc.id, copy_number)
        raise
    except Exception as e:
        logger.exception("Rendering failed for document %s (copy %s)", doc.id, copy_number)
        raise RenderingFailed(document_id=doc.id, copy_number=copy_number) from e

    return Distribution(
        document=doc,
        control_copy=issued.control_copy,
        print_log=issued.print_log,
        artifact=artifact,
        filename=distribution_filename(doc.doc_number, doc.revision_no, copy_number),
        is_latest=resolved.is_latest,
    )
