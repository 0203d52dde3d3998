"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates the ingestion tables:
- document
- document_section, document_chunk
- processing_job
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
active_job_predicate = sa.text("status IN ('queued', 'running')")


def upgrade() -> None:
    """Create all tables."""
    # document table
    op.create_table(
        "document",
        sa.Column("doc_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("filename", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.Text(), nullable=False),
        sa.Column("mime_type", sa.Text(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("storage_path", sa.Text(), nullable=False),
        sa.Column("ingest_status", sa.Text(), nullable=False),
        sa.Column("page_count", sa.Integer(), nullable=True),
        sa.Column("language", sa.Text(), nullable=True),
        sa.Column("text_length", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("user_id", "content_hash", name="uq_document_user_hash"),
    )
    op.create_index("idx_document_user_status", "document", ["user_id", "ingest_status"])
    op.create_index("idx_document_status_created", "document", ["ingest_status", "created_at"])

    # document_section table
    op.create_table(
        "document_section",
        sa.Column("section_id", sa.Uuid(), primary_key=True),
        sa.Column("doc_id", sa.Uuid(), nullable=False),
        sa.Column("parent_section_id", sa.Uuid(), nullable=True),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("section_order", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("start_char", sa.Integer(), nullable=False),
        sa.Column("end_char", sa.Integer(), nullable=False),
        sa.Column("start_page", sa.Integer(), nullable=True),
        sa.Column("end_page", sa.Integer(), nullable=True),
        sa.Column("coordinates", json_type, nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(["doc_id"], ["document.doc_id"], ondelete="CASCADE"),
    )
    op.create_index("idx_section_doc_start", "document_section", ["doc_id", "start_char"])
    op.create_index(
        "idx_section_hierarchy", "document_section", ["doc_id", "level", "section_order"]
    )

    # document_chunk table
    op.create_table(
        "document_chunk",
        sa.Column("chunk_id", sa.Uuid(), primary_key=True),
        sa.Column("doc_id", sa.Uuid(), nullable=False),
        sa.Column("section_id", sa.Uuid(), nullable=True),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("start_char", sa.Integer(), nullable=False),
        sa.Column("end_char", sa.Integer(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=False),
        sa.Column("is_boundary_chunk", sa.Boolean(), nullable=False),
        sa.Column("embedding_status", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["doc_id"], ["document.doc_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["section_id"], ["document_section.section_id"], ondelete="SET NULL"
        ),
        sa.UniqueConstraint("doc_id", "chunk_index", name="uq_chunk_doc_index"),
    )
    op.create_index(
        "idx_chunk_doc_embedding", "document_chunk", ["doc_id", "embedding_status"]
    )

    # processing_job table
    op.create_table(
        "processing_job",
        sa.Column("job_id", sa.Uuid(), primary_key=True),
        sa.Column("doc_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("job_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("available_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.Text(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False),
        sa.Column("progress_current", sa.Integer(), nullable=False),
        sa.Column("progress_total", sa.Integer(), nullable=False),
        sa.Column("progress_message", sa.Text(), nullable=True),
        sa.Column("result", json_type, nullable=True),
    )
    op.create_index(
        "idx_job_claim", "processing_job", ["status", "job_type", "priority", "created_at"]
    )
    op.create_index("idx_job_doc_type", "processing_job", ["doc_id", "job_type"])
    # At most one queued or running job per (doc_id, job_type)
    op.create_index(
        "uq_job_active_doc_type",
        "processing_job",
        ["doc_id", "job_type"],
        unique=True,
        postgresql_where=active_job_predicate,
        sqlite_where=active_job_predicate,
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("uq_job_active_doc_type", table_name="processing_job")
    op.drop_index("idx_job_doc_type", table_name="processing_job")
    op.drop_index("idx_job_claim", table_name="processing_job")
    op.drop_table("processing_job")

    op.drop_index("idx_chunk_doc_embedding", table_name="document_chunk")
    op.drop_table("document_chunk")

    op.drop_index("idx_section_hierarchy", table_name="document_section")
    op.drop_index("idx_section_doc_start", table_name="document_section")
    op.drop_table("document_section")

    op.drop_index("idx_document_status_created", table_name="document")
    op.drop_index("idx_document_user_status", table_name="document")
    op.drop_table("document")
