from readmind.db.models import (
    Base,
    MemoryEntity, MemoryEntityType, MemoryRelationship, RelationshipKind,
    Document, DocumentEmbedding, DocumentRelationship,
    Note,
    ExtractionJob, ExtractionJobStatus,
    OWNER_SCOPED_MODELS,
)
from readmind.db.database import get_db, init_db, drop_db, async_session_maker, engine

__all__ = [
    "Base",
    # Memory
    "MemoryEntity",
    "MemoryEntityType",
    "MemoryRelationship",
    "RelationshipKind",
    # Documents & notes
    "Document",
    "DocumentEmbedding",
    "DocumentRelationship",
    "Note",
    # Background extraction
    "ExtractionJob",
    "ExtractionJobStatus",
    "OWNER_SCOPED_MODELS",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
]
