from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from readmind.db.models import MemoryEntityType


# ============ Memory Schemas ============

class ConversationMessage(BaseModel):
    role: str = Field(min_length=1, max_length=32)
    content: str


class ExtractionRequest(BaseModel):
    conversation_id: str = Field(min_length=1, max_length=64)
    messages: List[ConversationMessage] = Field(min_length=1)
    document_title: Optional[str] = None
    document_id: Optional[str] = None


class NotesExtractionRequest(BaseModel):
    document_id: Optional[str] = None
    note_ids: Optional[List[str]] = None


class ExtractionAccepted(BaseModel):
    job_id: Optional[str]
    queued: bool
    reason: Optional[str] = None


class ExtractionJobResponse(BaseModel):
    id: str
    conversation_id: str
    status: str
    entities_created: int
    relationships_created: int
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MemoryEntityResponse(BaseModel):
    id: str
    entity_type: str
    text: str
    source_conversation_id: Optional[str] = None
    source_document_id: Optional[str] = None
    confidence: float
    reinforcement_count: int
    created_at: datetime
    last_reinforced_at: datetime

    class Config:
        from_attributes = True


class MemoryWithScore(MemoryEntityResponse):
    """Memory with similarity score for search results"""
    similarity_score: float


class MemorySearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=1000)
    limit: int = Field(10, ge=1, le=100)
    entity_types: Optional[List[MemoryEntityType]] = None
    document_id: Optional[str] = None
    similarity_threshold: Optional[float] = Field(None, ge=0, le=1)


class MemorySearchResponse(BaseModel):
    query: str
    results: List[MemoryWithScore]
    total_count: int


class AggregateItem(BaseModel):
    text: str
    count: int


class MemoryAggregateResponse(BaseModel):
    top_concepts: List[AggregateItem] = []
    top_questions: List[AggregateItem] = []
    top_insights: List[AggregateItem] = []


# ============ Context Schemas ============

class ContextRequest(BaseModel):
    query: str = Field(min_length=1, max_length=10000)
    conversation_id: Optional[str] = None
    document_id: Optional[str] = None
    limit: int = Field(15, ge=1, le=100)
    force: bool = False  # Skip the should-use-memory gate


class ContextMemoryResponse(BaseModel):
    type: str
    text: str
    score: float


class ContextNoteResponse(BaseModel):
    note_id: Optional[str] = None
    content: str
    page_number: Optional[int] = None
    score: float


class ContextResponse(BaseModel):
    used_memory: bool
    relevant_memories: List[ContextMemoryResponse] = []
    relevant_notes: List[ContextNoteResponse] = []
    token_estimate: int = 0
    conversation_summary: Optional[str] = None
    rendered: str = ""


# ============ Document Schemas ============

class DocumentCreate(BaseModel):
    id: Optional[str] = Field(None, max_length=36)
    title: Optional[str] = Field(None, max_length=500)


class DocumentResponse(BaseModel):
    id: str
    title: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DocumentEmbeddingRequest(BaseModel):
    text: str = Field(min_length=1)


class DocumentEmbeddingResponse(BaseModel):
    document_id: str
    source_text_hash: str
    generated_at: datetime


class RelatedDocument(BaseModel):
    document_id: str
    similarity: float


class RegenerateRequest(BaseModel):
    similarity_threshold: Optional[float] = Field(None, ge=0, le=1)
    prune: bool = False


class DocumentRelationshipResultResponse(BaseModel):
    document_id: str
    created: int = 0
    updated: int = 0
    error: Optional[str] = None


class RegenerationResponse(BaseModel):
    results: List[DocumentRelationshipResultResponse]
    total_created: int
    total_updated: int
    failed: int
    pruned: int = 0


class NoteCreate(BaseModel):
    content: str = Field(min_length=1, max_length=20000)
    page_number: Optional[int] = Field(None, ge=0)


class NoteResponse(BaseModel):
    id: str
    document_id: Optional[str] = None
    content: str
    page_number: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


# ============ Graph Schemas ============

class GraphNodeResponse(BaseModel):
    id: str
    node_type: str
    label: str
    metadata: Dict[str, Any] = {}


class GraphEdgeResponse(BaseModel):
    source: str
    target: str
    relationship_type: str
    weight: Optional[float] = None
    depth: int = 1


class GraphResponse(BaseModel):
    nodes: List[GraphNodeResponse]
    edges: List[GraphEdgeResponse]
    total_nodes: int
    total_edges: int


class GraphSearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=1000)
    limit: int = Field(20, ge=1, le=100)


class GraphMatchResponse(BaseModel):
    node: GraphNodeResponse
    score: float


class TimelineItemResponse(BaseModel):
    timestamp: datetime
    event: str
    item_id: str
    content: str
    related_items: List[str] = []


class RelatedItemResponse(BaseModel):
    node: GraphNodeResponse
    score: float
    relationship_type: str


class NoteRelationshipsResponse(BaseModel):
    note_id: str
    related_notes: List[RelatedItemResponse]
    related_memories: List[RelatedItemResponse]


class MemoryPathResponse(BaseModel):
    found: bool
    edges: List[GraphEdgeResponse] = []


class MemoryClusterResponse(BaseModel):
    seed_id: str
    member_ids: List[str]
