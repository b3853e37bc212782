"""Memory extraction, search and context endpoints"""

from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.db import get_db, MemoryEntity
from readmind.db.models import MemoryEntityType
from readmind.errors import AuthorizationError
from readmind.schemas import (
    ExtractionRequest, NotesExtractionRequest, ExtractionAccepted, ExtractionJobResponse,
    MemoryEntityResponse, MemoryWithScore, MemorySearchRequest, MemorySearchResponse,
    MemoryAggregateResponse, ContextRequest, ContextResponse, ContextMemoryResponse, ContextNoteResponse,
)
from readmind.api.deps import get_owner_id, get_embedder, get_queue
from readmind.services.context_builder import ContextBuilder, render, should_use_memory_context
from readmind.services.embedding_service import EmbeddingService
from readmind.services.extraction_queue import ExtractionJobTracker, ExtractionQueue
from readmind.services.memory_search import MemorySearchService
from readmind.services.vector_store import VectorStore

router = APIRouter(prefix="/memory", tags=["Memory"])


def memory_to_response(entity: MemoryEntity, score: Optional[float] = None):
    response = MemoryEntityResponse.model_validate(entity)
    if score is None:
        return response
    return MemoryWithScore(**response.model_dump(), similarity_score=score)


@router.post("/extract", response_model=ExtractionAccepted, status_code=status.HTTP_202_ACCEPTED)
async def extract_memories(
    request: ExtractionRequest,
    owner_id: str = Depends(get_owner_id),
    queue: ExtractionQueue = Depends(get_queue),
):
    """
    Queue a conversation for memory extraction.
    Returns immediately; poll the job for the outcome.
    """
    job_id = await queue.submit(
        owner_id=owner_id,
        conversation_id=request.conversation_id,
        messages=[m.model_dump() for m in request.messages],
        document_title=request.document_title,
        document_id=request.document_id,
    )
    if job_id is None:
        return ExtractionAccepted(job_id=None, queued=False, reason="already extracted or in progress")
    return ExtractionAccepted(job_id=job_id, queued=True)


@router.post("/extract/notes", response_model=ExtractionAccepted, status_code=status.HTTP_202_ACCEPTED)
async def extract_from_notes(
    request: NotesExtractionRequest,
    owner_id: str = Depends(get_owner_id),
    queue: ExtractionQueue = Depends(get_queue),
):
    """Queue memory extraction over the owner's notes for a document or a selection."""
    job_id = await queue.submit_notes(owner_id, document_id=request.document_id, note_ids=request.note_ids)
    return ExtractionAccepted(job_id=job_id, queued=job_id is not None)


@router.get("/jobs/{job_id}", response_model=ExtractionJobResponse)
async def get_extraction_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    job = await ExtractionJobTracker(db).get(job_id, owner_id)
    if job is None:
        raise AuthorizationError("extraction job", job_id)
    return ExtractionJobResponse.model_validate(job)


@router.post("/search", response_model=MemorySearchResponse)
async def search_memories(
    request: MemorySearchRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Semantic search over the owner's memories"""
    service = MemorySearchService(db, embedding_service=embedder)
    hits = await service.search(
        owner_id=owner_id,
        query=request.query,
        limit=request.limit,
        entity_types=request.entity_types,
        document_id=request.document_id,
        similarity_threshold=request.similarity_threshold,
    )
    return MemorySearchResponse(
        query=request.query,
        results=[memory_to_response(h.entity, h.score) for h in hits],
        total_count=len(hits),
    )


@router.post("/context", response_model=ContextResponse)
async def build_context(
    request: ContextRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """
    Build the memory block for a chat turn.
    Trivial messages skip the search unless ``force`` is set.
    """
    if not request.force and not should_use_memory_context(request.query):
        return ContextResponse(used_memory=False)

    builder = ContextBuilder(db, embedding_service=embedder)
    bundle = await builder.build_context(
        owner_id=owner_id,
        query=request.query,
        conversation_id=request.conversation_id,
        document_id=request.document_id,
        limit=request.limit,
    )
    return ContextResponse(
        used_memory=bool(bundle.relevant_memories or bundle.relevant_notes),
        relevant_memories=[
            ContextMemoryResponse(type=m.type, text=m.text, score=m.score)
            for m in bundle.relevant_memories
        ],
        relevant_notes=[
            ContextNoteResponse(note_id=n.note_id, content=n.content, page_number=n.page_number, score=n.score)
            for n in bundle.relevant_notes
        ],
        token_estimate=bundle.token_estimate,
        conversation_summary=bundle.conversation_summary,
        rendered=render(bundle),
    )


@router.get("/aggregate", response_model=MemoryAggregateResponse)
async def aggregate_memories(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    entity_types: Optional[List[MemoryEntityType]] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Most frequent concepts, questions and insights across conversations"""
    service = MemorySearchService(db, embedding_service=embedder)
    report = await service.aggregate(owner_id, start=start, end=end, entity_types=entity_types, limit=limit)
    return MemoryAggregateResponse(**report)


@router.get("/conversations/{conversation_id}", response_model=List[MemoryEntityResponse])
async def get_conversation_memories(
    conversation_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    service = MemorySearchService(db, embedding_service=embedder)
    memories = await service.get_conversation_memories(owner_id, conversation_id)
    return [memory_to_response(m) for m in memories]


@router.delete("", response_model=dict)
async def delete_all_owner_data(
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Delete every memory, document, note and relationship of the owner"""
    counts = await VectorStore(db).wipe_owner(owner_id)
    return {"deleted": counts}
