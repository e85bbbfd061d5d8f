"""initial document control schema

Revision ID: a0c1d2e3f4a5
Revises:
Create Date: 2026-10-19 09:12:41.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0c1d2e3f4a5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Users, departments, audit trail, documents and the distribution ledger."""
    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False, unique=True),
        sa.Column("description", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(320), nullable=False, unique=True),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="recipient"),
        sa.Column("master_copy_access", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "department_id", sa.Integer(), sa.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("actor_username", sa.String(320), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
    )

    op.create_table(
        "documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("doc_name", sa.String(255), nullable=False),
        sa.Column("doc_number", sa.String(64), nullable=False),
        sa.Column("revision_no", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reason_for_revision", sa.String(512), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column(
            "previous_version_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="RESTRICT"), nullable=True
        ),
        sa.Column(
            "prepared_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("approved_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("issued_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("issuer_name", sa.String(255), nullable=True),
        sa.Column("approval_remarks", sa.Text(), nullable=True),
        sa.Column("decline_remarks", sa.Text(), nullable=True),
        sa.Column("issue_remarks", sa.Text(), nullable=True),
        sa.Column("header_info", sa.Text(), nullable=True),
        sa.Column("footer_info", sa.Text(), nullable=True),
        sa.Column("source_storage_key", sa.String(512), nullable=True),
        sa.Column("source_filename", sa.String(255), nullable=True),
        sa.Column("source_sha256", sa.String(64), nullable=True),
        sa.Column("date_of_issue", sa.Date(), nullable=True),
        sa.Column("due_period_years", sa.Integer(), nullable=True),
        sa.Column("review_due_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("declined_at", sa.DateTime(), nullable=True),
        sa.Column("issued_at", sa.DateTime(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("doc_number", "revision_no", name="uq_document_number_revision"),
    )
    op.create_index("ix_documents_doc_number", "documents", ["doc_number"])
    op.create_index("idx_documents_status", "documents", ["status"])

    op.create_table(
        "document_departments",
        sa.Column(
            "document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column(
            "department_id", sa.Integer(), sa.ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("assigned_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "control_copy_counters",
        sa.Column(
            "document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="RESTRICT"), primary_key=True
        ),
        sa.Column("last_copy_number", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "control_copies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("action_type", sa.String(16), nullable=False),
        sa.Column("copy_number", sa.Integer(), nullable=False),
        sa.Column("issued_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("document_id", "copy_number", name="uq_control_copy_number"),
    )
    op.create_index("idx_control_copies_user", "control_copies", ["user_id"])

    op.create_table(
        "print_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "control_copy_id",
            sa.Integer(),
            sa.ForeignKey("control_copies.id", ondelete="RESTRICT"),
            nullable=False,
            unique=True,
        ),
        sa.Column("medium", sa.String(32), nullable=False, server_default="PDF"),
        sa.Column("printed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_print_logs_document", "print_logs", ["document_id"])
    op.create_index("idx_print_logs_user", "print_logs", ["user_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="SET NULL"), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_notifications_user", "notifications", ["user_id", "is_read"])


def downgrade() -> None:
    op.drop_index("idx_notifications_user", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("idx_print_logs_user", table_name="print_logs")
    op.drop_index("idx_print_logs_document", table_name="print_logs")
    op.drop_table("print_logs")
    op.drop_index("idx_control_copies_user", table_name="control_copies")
    op.drop_table("control_copies")
    op.drop_table("control_copy_counters")
    op.drop_table("document_departments")
    op.drop_index("idx_documents_status", table_name="documents")
    op.drop_index("ix_documents_doc_number", table_name="documents")
    op.drop_table("documents")
    op.drop_table("audit_events")
    op.drop_table("users")
    op.drop_table("departments")
