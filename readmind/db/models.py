"""
Database models for the Readmind memory engine

Hybrid storage:
- Vector embeddings (pgvector) for semantic search over memories, documents and notes
- Relational structure for memory relationships and document relationship edges
- Every row is owned by exactly one owner (``owner_id``)
"""

from datetime import datetime
from typing import Optional
from enum import Enum
import uuid

from sqlalchemy import (
    Column, String, Text, DateTime, Float, Integer,
    ForeignKey, Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, declarative_base
from pgvector.sqlalchemy import Vector

from readmind.config import settings

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class MemoryEntityType(str, Enum):
    """Closed set of memory entity types the extractor may persist"""
    CONCEPT = "concept"         # Academic terms, theories, frameworks
    QUESTION = "question"       # Questions the reader asked
    INSIGHT = "insight"         # Conclusions reached in conversation
    REFERENCE = "reference"     # Titles, authors, papers
    ACTION = "action"           # Notes created, sections read
    DOCUMENT = "document"       # The document under discussion
    PERSON = "person"
    EVENT = "event"
    FACT = "fact"
    PREFERENCE = "preference"   # "I prefer dark mode"


class RelationshipKind(str, Enum):
    """Kinds of directed edges between memory entities"""
    RELATES_TO = "relates_to"
    CONTRADICTS = "contradicts"
    SUPPORTS = "supports"
    CITES = "cites"
    EXPLAINS = "explains"


class ExtractionJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MemoryEntity(Base):
    """
    A durable memory extracted from a conversation.
    Deduplicated per (owner, type, normalized text); later extractions
    reinforce the row instead of inserting a copy.
    """
    __tablename__ = "memory_entities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)

    entity_type: Mapped[str] = mapped_column(String(20), index=True)  # MemoryEntityType value
    text: Mapped[str] = mapped_column(Text)
    normalized_text: Mapped[str] = mapped_column(Text)

    # Immutable once set
    embedding = Column(Vector(settings.embedding_dimension), nullable=True)

    source_conversation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    source_document_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    confidence: Mapped[float] = mapped_column(Float, default=0.6)
    reinforcement_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    last_reinforced_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "entity_type", "normalized_text", name="uq_memory_entity_text"),
        Index("ix_memory_entities_owner_type", "owner_id", "entity_type"),
        Index("ix_memory_entities_owner_document", "owner_id", "source_document_id"),
    )


class MemoryRelationship(Base):
    """Directed, weighted edge between two memory entities of the same owner"""
    __tablename__ = "memory_relationships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    from_entity_id: Mapped[str] = mapped_column(String(36), ForeignKey("memory_entities.id", ondelete="CASCADE"), index=True)
    to_entity_id: Mapped[str] = mapped_column(String(36), ForeignKey("memory_entities.id", ondelete="CASCADE"), index=True)
    kind: Mapped[str] = mapped_column(String(20))  # RelationshipKind value
    weight: Mapped[float] = mapped_column(Float, default=0.5)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "from_entity_id", "to_entity_id", "kind", name="uq_memory_relationship"),
        CheckConstraint("from_entity_id <> to_entity_id", name="ck_memory_relationship_no_self_loop"),
    )


class Document(Base):
    """An owner's document. Content and rendering live outside this service."""
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class DocumentEmbedding(Base):
    """The current summary embedding of a document (one per document)"""
    __tablename__ = "document_embeddings"

    document_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    embedding = Column(Vector(settings.embedding_dimension), nullable=False)
    source_text_hash: Mapped[str] = mapped_column(String(64))  # SHA256 of the embedded text
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class DocumentRelationship(Base):
    """
    Similarity edge between two documents.
    Stored once per unordered pair: source_doc_id < target_doc_id.
    """
    __tablename__ = "document_relationships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    source_doc_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), index=True)
    target_doc_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), index=True)
    similarity: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "source_doc_id", "target_doc_id", name="uq_document_relationship_pair"),
    )


class Note(Base):
    """A reader's note on a document page"""
    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    document_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=True, index=True)
    content: Mapped[str] = mapped_column(Text)
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    embedding = Column(Vector(settings.embedding_dimension), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class ExtractionJob(Base):
    """Status of a conversation's memory extraction (at most one success per conversation)"""
    __tablename__ = "memory_extraction_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    conversation_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(20), default=ExtractionJobStatus.PENDING.value, index=True)
    entities_created: Mapped[int] = mapped_column(Integer, default=0)
    relationships_created: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


# Tables wiped by an owner-initiated data deletion, children first
OWNER_SCOPED_MODELS = (
    MemoryRelationship,
    MemoryEntity,
    DocumentRelationship,
    DocumentEmbedding,
    Note,
    ExtractionJob,
    Document,
)
