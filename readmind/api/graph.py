"""Knowledge Graph API endpoints: documents, notes and memories as one graph"""

from dataclasses import asdict
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.config import settings
from readmind.db import get_db
from readmind.schemas import (
    GraphResponse, GraphNodeResponse, GraphSearchRequest, GraphMatchResponse,
    TimelineItemResponse, NoteRelationshipsResponse, RelatedItemResponse,
    GraphEdgeResponse, MemoryPathResponse, MemoryClusterResponse,
)
from readmind.api.deps import get_owner_id, get_embedder
from readmind.services.embedding_service import EmbeddingService
from readmind.services.graph_service import UnifiedGraph, UnifiedGraphService

router = APIRouter(prefix="/graph", tags=["Knowledge Graph"])


def graph_to_response(graph: UnifiedGraph) -> GraphResponse:
    data = graph.to_dict()
    return GraphResponse(
        nodes=data["nodes"],
        edges=data["edges"],
        total_nodes=len(graph.nodes),
        total_edges=len(graph.edges),
    )


@router.get("/documents/{document_id}", response_model=GraphResponse)
async def get_document_graph(
    document_id: str,
    depth: int = Query(2, ge=1, le=settings.graph_max_depth),
    include_annotations: bool = Query(False, description="Add the document's notes and memories"),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Documents reachable from a document within ``depth`` relationship hops"""
    service = UnifiedGraphService(db, embedding_service=embedder)
    graph = await service.get_document_centric_graph(
        document_id, owner_id, depth=depth, include_annotations=include_annotations
    )
    return graph_to_response(graph)


@router.get("/memories/path", response_model=MemoryPathResponse)
async def find_memory_path(
    from_id: str = Query(..., alias="from"),
    to_id: str = Query(..., alias="to"),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Shortest relationship chain between two memories"""
    service = UnifiedGraphService(db, embedding_service=embedder)
    path = await service.find_path(from_id, to_id, owner_id)
    if path is None:
        return MemoryPathResponse(found=False)
    return MemoryPathResponse(found=True, edges=[GraphEdgeResponse(**asdict(e)) for e in path])


@router.get("/memories/central", response_model=List[GraphNodeResponse])
async def get_central_memories(
    limit: int = Query(10, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Most connected memories first"""
    service = UnifiedGraphService(db, embedding_service=embedder)
    return [GraphNodeResponse(**asdict(n)) for n in await service.get_central_memories(owner_id, limit=limit)]


@router.get("/memories/clusters", response_model=List[MemoryClusterResponse])
async def get_memory_clusters(
    threshold: Optional[float] = Query(None, ge=0, le=1),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    service = UnifiedGraphService(db, embedding_service=embedder)
    clusters = await service.cluster_memories(owner_id, threshold=threshold)
    return [MemoryClusterResponse(seed_id=seed, member_ids=members) for seed, members in clusters.items()]


@router.get("/memories/{memory_id}", response_model=GraphResponse)
async def get_memory_graph(
    memory_id: str,
    depth: int = Query(1, ge=1, le=settings.graph_max_depth),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Memories linked to a memory within ``depth`` hops"""
    service = UnifiedGraphService(db, embedding_service=embedder)
    return graph_to_response(await service.get_memory_graph(memory_id, owner_id, depth=depth))


@router.post("/search", response_model=List[GraphMatchResponse])
async def search_graph(
    request: GraphSearchRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Search documents, memories and notes at once, ranked by similarity"""
    service = UnifiedGraphService(db, embedding_service=embedder)
    matches = await service.search_across_graphs(owner_id, request.query, limit=request.limit)
    return [
        GraphMatchResponse(node=GraphNodeResponse(**asdict(m.node)), score=m.score)
        for m in matches
    ]


@router.get("/timeline", response_model=List[TimelineItemResponse])
async def get_timeline(
    concept: str = Query(..., min_length=1, max_length=1000),
    limit: int = Query(100, ge=1, le=500),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Chronology of memories about a concept"""
    service = UnifiedGraphService(db, embedding_service=embedder)
    items = await service.get_timeline(concept, owner_id, limit=limit)
    return [TimelineItemResponse(**asdict(i)) for i in items]


@router.get("/notes/{note_id}/relationships", response_model=NoteRelationshipsResponse)
async def get_note_relationships(
    note_id: str,
    limit: int = Query(20, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Notes and memories related to a note"""
    service = UnifiedGraphService(db, embedding_service=embedder)
    related = await service.get_note_relationships(note_id, owner_id, limit=limit)
    return NoteRelationshipsResponse(
        note_id=related.note_id,
        related_notes=[RelatedItemResponse(**asdict(r)) for r in related.related_notes],
        related_memories=[RelatedItemResponse(**asdict(r)) for r in related.related_memories],
    )
