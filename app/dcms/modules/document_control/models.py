from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dcms.models import Base


class DocumentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    ISSUED = "issued"

    @classmethod
    def parse(cls, raw: str | None) -> "DocumentStatus":
        value = (raw or "").strip().lower()
        for status in cls:
            if status.value == value:
                return status
        raise ValueError(f"Unknown document status: {raw!r}")


class DistributionAction(str, enum.Enum):
    VIEW = "view"
    PRINT = "print"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [m.value for m in enum_cls]


class Document(Base):
    """
    One row per revision. Rows sharing ``doc_number`` form a revision chain
    linked through ``previous_version_id``; issued rows are never deleted.
    """

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("doc_number", "revision_no", name="uq_document_number_revision"),
        Index("idx_documents_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    doc_name: Mapped[str] = mapped_column(String(255), nullable=False)
    doc_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    revision_no: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reason_for_revision: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # pending -> approved -> issued; pending|approved -> declined
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=DocumentStatus.PENDING,
    )

    previous_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("documents.id", ondelete="RESTRICT"),
        nullable=True,
    )

    prepared_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    issued_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    issuer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    approval_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    decline_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    issue_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Opaque stamps lifted from the Word header/footer at upload time.
    header_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    footer_info: Mapped[str | None] = mapped_column(Text, nullable=True)

    source_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    source_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)

    date_of_issue: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_period_years: Mapped[int | None] = mapped_column(Integer, nullable=True)
    review_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Optimistic concurrency: UPDATEs carry "WHERE row_version = :seen".
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": row_version}

    departments: Mapped[list["DocumentDepartment"]] = relationship(
        "DocumentDepartment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class DocumentDepartment(Base):
    __tablename__ = "document_departments"

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True)
    department_id: Mapped[int] = mapped_column(ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class ControlCopyCounter(Base):
    """Last copy number handed out for a document; advanced by compare-and-swap only."""

    __tablename__ = "control_copy_counters"

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), primary_key=True)
    last_copy_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ControlCopy(Base):
    """Append-only. One row per attempted distribution of a document revision."""

    __tablename__ = "control_copies"
    __table_args__ = (
        UniqueConstraint("document_id", "copy_number", name="uq_control_copy_number"),
        Index("idx_control_copies_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    action_type: Mapped[DistributionAction] = mapped_column(
        Enum(DistributionAction, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
    )
    copy_number: Mapped[int] = mapped_column(Integer, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class PrintLog(Base):
    """Append-only. Exactly one per print ControlCopy."""

    __tablename__ = "print_logs"
    __table_args__ = (
        Index("idx_print_logs_document", "document_id"),
        Index("idx_print_logs_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    control_copy_id: Mapped[int] = mapped_column(
        ForeignKey("control_copies.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    medium: Mapped[str] = mapped_column(String(32), nullable=False, default="PDF")
    printed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (Index("idx_notifications_user", "user_id", "is_read"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    document_id: Mapped[int | None] = mapped_column(ForeignKey("documents.id", ondelete="SET NULL"), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
