"""
Control Copy Ledger.

Hands out copy numbers k+1, k+2, ... per document with no duplicates and no
gaps, however many callers race. The counter row is advanced with a
conditional UPDATE (compare-and-swap on the value just read) while holding a
per-document lock; the counter, the ControlCopy row, the PrintLog row (for
prints) and the audit event commit in one transaction.

The counter row is created when the document is issued; a missing row (data
from before that rule) is created on first use with an INSERT that ignores a
concurrent winner, so separate worker processes never trip the primary key.

The lock covers only that transaction. Rendering happens after it returns.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.dcms.audit import record_event
from app.dcms.errors import ConflictError, ValidationError
from app.dcms.locking import KeyedLocks, counter_locks
from app.dcms.models import User

from .models import ControlCopy, ControlCopyCounter, DistributionAction, Document, PrintLog
from .store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedCopy:
    control_copy: ControlCopy
    print_log: PrintLog | None


def _insert_ignoring_conflict(s: Session):
    dialect = s.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for the copy-number ledger: {dialect!r}")
    return insert(ControlCopyCounter)


def ensure_counter(s: Session, document_id: int) -> None:
    """
    Create the counter row for a document unless one exists, starting after
    any copies already recorded. Concurrent callers in other processes may
    race here; the losing INSERT is a no-op instead of a unique violation.
    """
    start = s.execute(
        select(func.coalesce(func.max(ControlCopy.copy_number), 0)).where(ControlCopy.document_id == document_id)
    ).scalar_one()
    stmt = (
        _insert_ignoring_conflict(s)
        .values(document_id=document_id, last_copy_number=start)
        .on_conflict_do_nothing(index_elements=[ControlCopyCounter.document_id])
    )
    s.execute(stmt)


class ControlCopyLedger:
    def __init__(self, *, locks: KeyedLocks | None = None, max_attempts: int = 5) -> None:
        self._locks = locks if locks is not None else counter_locks
        self.max_attempts = max(1, max_attempts)

    def issue(
        self,
        s: Session,
        *,
        document_id: int,
        user_id: int,
        action_type: DistributionAction | str,
        medium: str = "PDF",
        actor: User | None = None,
    ) -> IssuedCopy:
        try:
            action = DistributionAction(action_type)
        except ValueError:
            raise ValidationError("action_type", f"must be one of: {', '.join(a.value for a in DistributionAction)}") from None

        store = DocumentStore(s)
        with self._locks.hold(document_id):
            with store.transaction("ControlCopyCounter", document_id):
                store.get(Document, document_id)
                store.get(User, user_id)
                number = self._advance(s, document_id)
                cc = store.create(
                    ControlCopy(document_id=document_id, user_id=user_id, action_type=action, copy_number=number)
                )
                pl = None
                if action is DistributionAction.PRINT:
                    pl = store.create(
                        PrintLog(document_id=document_id, user_id=user_id, control_copy_id=cc.id, medium=medium)
                    )
                record_event(
                    s,
                    actor=actor,
                    action=f"doc.{action.value}",
                    entity_type="ControlCopy",
                    entity_id=str(cc.id),
                    metadata={"document_id": document_id, "user_id": user_id, "copy_number": number},
                )

        logger.info("Control copy %s (%s) issued for document %s to user %s", number, action.value, document_id, user_id)
        return IssuedCopy(control_copy=cc, print_log=pl)

    def issued_count(self, s: Session, document_id: int) -> int:
        return s.execute(
            select(func.count(ControlCopy.id)).where(ControlCopy.document_id == document_id)
        ).scalar_one()

    def _read(self, s: Session, document_id: int) -> int | None:
        return s.execute(
            select(ControlCopyCounter.last_copy_number).where(ControlCopyCounter.document_id == document_id)
        ).scalar_one_or_none()

    def _advance(self, s: Session, document_id: int) -> int:
        for attempt in range(1, self.max_attempts + 1):
            current = self._read(s, document_id)
            if current is None:
                ensure_counter(s, document_id)
                current = self._read(s, document_id)

            result = s.execute(
                update(ControlCopyCounter)
                .where(
                    ControlCopyCounter.document_id == document_id,
                    ControlCopyCounter.last_copy_number == current,
                )
                .values(last_copy_number=current + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return current + 1
            logger.warning("Copy-number swap lost for document %s (attempt %s/%s)", document_id, attempt, self.max_attempts)

        raise ConflictError(
            "ControlCopyCounter",
            document_id,
            message=f"Could not reserve a control copy number after {self.max_attempts} attempts",
        )
