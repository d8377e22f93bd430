"""Create record store tables and the unified content index.

Revision ID: 20261019_0900
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration:
1. Enables the pgvector and pg_trgm extensions
2. Creates receipts, line_items and claims (read by search and fallback)
3. Creates the legacy receipt_embeddings table
4. Creates unified_embeddings with a unique (source_type, source_id, content_type)
5. Creates vector and trigram indexes for hybrid search
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers, used by Alembic.
revision = "20261019_0900"
down_revision = None
branch_labels = None
depends_on = None

EMBEDDING_DIMENSIONS = 1536


def upgrade() -> None:
    # pgvector for semantic search, pg_trgm for fuzzy text similarity
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    op.create_table(
        "receipts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("team_id", UUID(as_uuid=True), nullable=True),
        sa.Column("merchant", sa.String(255), nullable=True),
        sa.Column("date", sa.Date(), nullable=True),
        sa.Column("total", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(8), nullable=True),
        sa.Column("full_text", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("predicted_category", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_receipts_user_id", "receipts", ["user_id"])
    op.create_index("ix_receipts_team_id", "receipts", ["team_id"])
    op.create_index("ix_receipts_created_at", "receipts", ["created_at"])

    op.create_table(
        "line_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("receipt_id", UUID(as_uuid=True), sa.ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_line_items_receipt_id", "line_items", ["receipt_id"])

    op.create_table(
        "claims",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("team_id", UUID(as_uuid=True), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(8), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_claims_user_id", "claims", ["user_id"])
    op.create_index("ix_claims_team_id", "claims", ["team_id"])

    op.create_table(
        "receipt_embeddings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("receipt_id", UUID(as_uuid=True), sa.ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("content_type", sa.String(50), nullable=False, server_default="full_text"),
        sa.Column("metadata", JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.execute(f"ALTER TABLE receipt_embeddings ADD COLUMN embedding vector({EMBEDDING_DIMENSIONS})")
    op.create_index("ix_receipt_embeddings_receipt_id", "receipt_embeddings", ["receipt_id"])

    op.create_table(
        "unified_embeddings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("source_type", sa.String(50), nullable=False),
        sa.Column("source_id", UUID(as_uuid=True), nullable=False),
        sa.Column("content_type", sa.String(50), nullable=False),
        sa.Column("content_text", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=False, server_default="{}"),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("team_id", UUID(as_uuid=True), nullable=True),
        sa.Column("language", sa.String(10), nullable=False, server_default="en"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint(
            "source_type", "source_id", "content_type", name="uq_unified_embeddings_source_content"
        ),
    )
    op.execute(f"ALTER TABLE unified_embeddings ADD COLUMN embedding vector({EMBEDDING_DIMENSIONS})")

    op.create_index("ix_unified_embeddings_source", "unified_embeddings", ["source_type", "source_id"])
    op.create_index("ix_unified_embeddings_content_type", "unified_embeddings", ["content_type"])
    op.create_index("ix_unified_embeddings_user_id", "unified_embeddings", ["user_id"])
    op.create_index("ix_unified_embeddings_team_id", "unified_embeddings", ["team_id"])

    # HNSW index for cosine similarity on the semantic signal
    op.execute("""
        CREATE INDEX ix_unified_embeddings_embedding ON unified_embeddings
        USING hnsw (embedding vector_cosine_ops)
    """)

    # Trigram index for fuzzy text similarity
    op.execute("""
        CREATE INDEX ix_unified_embeddings_content_trgm ON unified_embeddings
        USING GIN (content_text gin_trgm_ops)
    """)

    # Lower-cased merchant lookups for fallback search
    op.execute("CREATE INDEX ix_receipts_merchant_lower ON receipts (lower(merchant))")


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_receipts_merchant_lower")
    op.execute("DROP INDEX IF EXISTS ix_unified_embeddings_content_trgm")
    op.execute("DROP INDEX IF EXISTS ix_unified_embeddings_embedding")
    op.drop_index("ix_unified_embeddings_team_id", table_name="unified_embeddings")
    op.drop_index("ix_unified_embeddings_user_id", table_name="unified_embeddings")
    op.drop_index("ix_unified_embeddings_content_type", table_name="unified_embeddings")
    op.drop_index("ix_unified_embeddings_source", table_name="unified_embeddings")
    op.drop_table("unified_embeddings")

    op.drop_index("ix_receipt_embeddings_receipt_id", table_name="receipt_embeddings")
    op.drop_table("receipt_embeddings")

    op.drop_index("ix_claims_team_id", table_name="claims")
    op.drop_index("ix_claims_user_id", table_name="claims")
    op.drop_table("claims")

    op.drop_index("ix_line_items_receipt_id", table_name="line_items")
    op.drop_table("line_items")

    op.drop_index("ix_receipts_created_at", table_name="receipts")
    op.drop_index("ix_receipts_team_id", table_name="receipts")
    op.drop_index("ix_receipts_user_id", table_name="receipts")
    op.drop_table("receipts")

    # Note: We don't drop the vector/pg_trgm extensions as they may be used elsewhere
