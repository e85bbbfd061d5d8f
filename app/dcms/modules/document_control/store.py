"""
Document Store: the persistence seam used by the workflow, resolver and ledger.

Wraps a SQLAlchemy session with get/list/create/partial-update helpers and a
``transaction()`` scope that either commits every pending change or none of
them, translating storage failures into the error taxonomy.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any, TypeVar

from sqlalchemy import or_
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.dcms.errors import ConflictError, DomainError, NotFound, StorageUnavailable, ValidationError
from app.dcms.models import User, UserRole

from .models import Document, DocumentStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Columns callers may never set through update(); they are owned by the store.
_PROTECTED_FIELDS = frozenset({"id", "row_version", "created_at"})


class DocumentStore:
    def __init__(self, s: Session) -> None:
        self.s = s

    # ------------------------------------------------------------------ reads

    def find(self, model: type[T], entity_id: Any) -> T | None:
        if entity_id is None:
            return None
        return self.s.get(model, entity_id)

    def get(self, model: type[T], entity_id: Any) -> T:
        obj = self.find(model, entity_id)
        if obj is None:
            raise NotFound(model.__name__, entity_id)
        return obj

    def list_by_status(self, status: DocumentStatus) -> list[Document]:
        return (
            self.s.query(Document)
            .filter(Document.status == status)
            .order_by(Document.doc_number.asc(), Document.revision_no.asc())
            .all()
        )

    def list_by_user(self, user_id: int) -> list[Document]:
        """Documents the user prepared, approved or issued."""
        return (
            self.s.query(Document)
            .filter(
                or_(
                    Document.prepared_by_user_id == user_id,
                    Document.approved_by_user_id == user_id,
                    Document.issued_by_user_id == user_id,
                )
            )
            .order_by(Document.created_at.desc(), Document.id.desc())
            .all()
        )

    def list_by_doc_number(self, doc_number: str, status: DocumentStatus | None = None) -> list[Document]:
        q = self.s.query(Document).filter(Document.doc_number == doc_number)
        if status is not None:
            q = q.filter(Document.status == status)
        return q.order_by(Document.revision_no.asc()).all()

    def source_key_in_use(self, key: str) -> bool:
        return self.s.query(Document.id).filter(Document.source_storage_key == key).first() is not None

    def users_by_role(self, role: UserRole) -> list[User]:
        return (
            self.s.query(User)
            .filter(User.role == role, User.is_active.is_(True))
            .order_by(User.id.asc())
            .all()
        )

    # ----------------------------------------------------------------- writes

    def create(self, entity: T) -> T:
        self.s.add(entity)
        self.s.flush()
        return entity

    def update(self, entity: T, fields: Mapping[str, Any]) -> T:
        """Merge of the supplied fields only; everything else is left untouched."""
        mapper_attrs = entity.__class__.__mapper__.column_attrs.keys()  # type: ignore[attr-defined]
        for key in fields:
            if key in _PROTECTED_FIELDS or key not in mapper_attrs:
                raise ValidationError(key, f"is not an updatable field of {entity.__class__.__name__}")
        for key, value in fields.items():
            setattr(entity, key, value)
        self.s.flush()
        return entity

    @contextmanager
    def transaction(
        self,
        entity: str,
        entity_id: Any,
        *,
        integrity_error: DomainError | None = None,
    ) -> Iterator[DocumentStore]:
        """
        Commit on success, roll back on any failure. Nothing done inside the
        block is observable unless the whole block succeeds.
        """
        try:
            yield self
            self.s.commit()
        except DomainError:
            self.s.rollback()
            raise
        except StaleDataError as e:
            self.s.rollback()
            logger.warning("Stale write on %s %s: %s", entity, entity_id, e)
            raise ConflictError(entity, entity_id) from e
        except IntegrityError as e:
            self.s.rollback()
            logger.warning("Integrity violation on %s %s: %s", entity, entity_id, e.orig)
            raise (integrity_error or ConflictError(entity, entity_id)) from e
        except (DBAPIError, SQLAlchemyError) as e:
            self.s.rollback()
            logger.error("Storage failure on %s %s: %s", entity, entity_id, e)
            raise StorageUnavailable() from e
        except Exception:
            self.s.rollback()
            raise
