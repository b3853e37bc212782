from readmind.services.embedding_service import EmbeddingService, get_embedding_service
from readmind.services.llm_service import LLMService, LLMResponse, get_llm_service
from readmind.services.vector_store import VectorStore, ScoredRecord
from readmind.services.memory_extractor import (
    MemoryExtractionService, ExtractionResult,
)
from readmind.services.memory_search import MemorySearchService, MemorySearchHit
from readmind.services.context_builder import (
    ContextBuilder, ContextBundle, ContextMemory, render, should_use_memory_context,
)
from readmind.services.document_relationships import (
    DocumentRelationshipEngine, DocumentRelationshipResult, RegenerationReport,
)
from readmind.services.document_service import DocumentService
from readmind.services.graph_service import UnifiedGraphService, UnifiedGraph
from readmind.services.extraction_queue import (
    ExtractionQueue, ExtractionJobTracker, get_extraction_queue,
)

__all__ = [
    "EmbeddingService",
    "get_embedding_service",
    "LLMService",
    "LLMResponse",
    "get_llm_service",
    "VectorStore",
    "ScoredRecord",
    # Memory
    "MemoryExtractionService",
    "ExtractionResult",
    "MemorySearchService",
    "MemorySearchHit",
    "ContextBuilder",
    "ContextBundle",
    "ContextMemory",
    "render",
    "should_use_memory_context",
    # Documents & graph
    "DocumentService",
    "DocumentRelationshipEngine",
    "DocumentRelationshipResult",
    "RegenerationReport",
    "UnifiedGraphService",
    "UnifiedGraph",
    # Background extraction
    "ExtractionQueue",
    "ExtractionJobTracker",
    "get_extraction_queue",
]
