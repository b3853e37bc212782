"""001: Memory, document, note and extraction job tables

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

Creates the pgvector extension, the owner-scoped tables and HNSW indexes
(cosine distance) on every embedding column.
"""

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector

from readmind.config import settings

# revision identifiers
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

DIM = settings.embedding_dimension

HNSW_INDEXES = (
    ("ix_memory_entities_embedding_hnsw", "memory_entities"),
    ("ix_document_embeddings_embedding_hnsw", "document_embeddings"),
    ("ix_notes_embedding_hnsw", "notes"),
)


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "documents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=False, index=True),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, index=True),
    )

    op.create_table(
        "memory_entities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=False, index=True),
        sa.Column("entity_type", sa.String(20), nullable=False, index=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("normalized_text", sa.Text(), nullable=False),
        sa.Column("embedding", Vector(DIM), nullable=True),
        sa.Column("source_conversation_id", sa.String(64), nullable=True, index=True),
        sa.Column("source_document_id", sa.String(36), nullable=True, index=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("reinforcement_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, index=True),
        sa.Column("last_reinforced_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("owner_id", "entity_type", "normalized_text", name="uq_memory_entity_text"),
    )
    op.create_index("ix_memory_entities_owner_type", "memory_entities", ["owner_id", "entity_type"])
    op.create_index("ix_memory_entities_owner_document", "memory_entities", ["owner_id", "source_document_id"])

    op.create_table(
        "memory_relationships",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=False, index=True),
        sa.Column("from_entity_id", sa.String(36), sa.ForeignKey("memory_entities.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("to_entity_id", sa.String(36), sa.ForeignKey("memory_entities.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("owner_id", "from_entity_id", "to_entity_id", "kind", name="uq_memory_relationship"),
        sa.CheckConstraint("from_entity_id <> to_entity_id", name="ck_memory_relationship_no_self_loop"),
    )

    op.create_table(
        "document_embeddings",
        sa.Column("document_id", sa.String(36), sa.ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=False, index=True),
        sa.Column("embedding", Vector(DIM), nullable=False),
        sa.Column("source_text_hash", sa.String(64), nullable=False),
        sa.Column("generated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "document_relationships",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=False, index=True),
        sa.Column("source_doc_id", sa.String(36), sa.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("target_doc_id", sa.String(36), sa.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("similarity", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("owner_id", "source_doc_id", "target_doc_id", name="uq_document_relationship_pair"),
    )

    op.create_table(
        "notes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=False, index=True),
        sa.Column("document_id", sa.String(36), sa.ForeignKey("documents.id", ondelete="CASCADE"), nullable=True, index=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("page_number", sa.Integer(), nullable=True),
        sa.Column("embedding", Vector(DIM), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, index=True),
    )

    op.create_table(
        "memory_extraction_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=False, index=True),
        sa.Column("conversation_id", sa.String(64), nullable=False, index=True),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("entities_created", sa.Integer(), nullable=False),
        sa.Column("relationships_created", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )

    for index_name, table in HNSW_INDEXES:
        op.execute(f"""
            CREATE INDEX IF NOT EXISTS {index_name}
            ON {table} USING hnsw (embedding vector_cosine_ops)
            WITH (m = 16, ef_construction = 64)
        """)


def downgrade() -> None:
    for index_name, _ in HNSW_INDEXES:
        op.execute(f"DROP INDEX IF EXISTS {index_name}")
    op.drop_table("memory_extraction_jobs")
    op.drop_table("notes")
    op.drop_table("document_relationships")
    op.drop_table("document_embeddings")
    op.drop_table("memory_relationships")
    op.drop_table("memory_entities")
    op.drop_table("documents")
    # The vector extension is left in place; other schemas may use it
