"""Document, note and document-relationship endpoints"""

from typing import List
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.db import get_db
from readmind.schemas import (
    DocumentCreate, DocumentResponse, DocumentEmbeddingRequest, DocumentEmbeddingResponse,
    RelatedDocument, RegenerateRequest, RegenerationResponse,
    NoteCreate, NoteResponse,
)
from readmind.api.deps import get_owner_id, get_embedder
from readmind.services.document_relationships import DocumentRelationshipEngine
from readmind.services.document_service import DocumentService
from readmind.services.embedding_service import EmbeddingService

router = APIRouter(prefix="/documents", tags=["Documents"])


@router.post("", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED)
async def create_document(
    document: DocumentCreate,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Register a document so it can take part in the graph"""
    service = DocumentService(db, embedding_service=embedder)
    created = await service.create_document(owner_id, title=document.title, document_id=document.id)
    return DocumentResponse.model_validate(created)


@router.get("", response_model=List[DocumentResponse])
async def list_documents(
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    service = DocumentService(db, embedding_service=embedder)
    return [DocumentResponse.model_validate(d) for d in await service.list_documents(owner_id)]


@router.put("/{document_id}/embedding", response_model=DocumentEmbeddingResponse)
async def embed_document(
    document_id: str,
    request: DocumentEmbeddingRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """
    (Re)compute a document's embedding and refresh its relationships.
    Unchanged text is a no-op.
    """
    engine = DocumentRelationshipEngine(db, embedding_service=embedder)
    row = await engine.embed_document(document_id, owner_id, request.text)
    return DocumentEmbeddingResponse(
        document_id=row.document_id,
        source_text_hash=row.source_text_hash,
        generated_at=row.generated_at,
    )


@router.get("/{document_id}/relationships", response_model=List[RelatedDocument])
async def get_document_relationships(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    engine = DocumentRelationshipEngine(db, embedding_service=embedder)
    related = await engine.get_relationships(document_id, owner_id)
    return [RelatedDocument(document_id=doc_id, similarity=similarity) for doc_id, similarity in related]


@router.post("/relationships/regenerate", response_model=RegenerationResponse)
async def regenerate_relationships(
    request: RegenerateRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    """Recompute relationship edges for every document of the owner"""
    engine = DocumentRelationshipEngine(db, embedding_service=embedder)
    report = await engine.regenerate_all(
        owner_id,
        similarity_threshold=request.similarity_threshold,
        prune=request.prune,
    )
    return RegenerationResponse(**report.to_dict())


@router.post("/{document_id}/notes", response_model=NoteResponse, status_code=status.HTTP_201_CREATED)
async def add_note(
    document_id: str,
    note: NoteCreate,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    service = DocumentService(db, embedding_service=embedder)
    created = await service.add_note(owner_id, note.content, document_id=document_id, page_number=note.page_number)
    return NoteResponse.model_validate(created)


@router.get("/{document_id}/notes", response_model=List[NoteResponse])
async def list_notes(
    document_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    embedder: EmbeddingService = Depends(get_embedder),
):
    service = DocumentService(db, embedding_service=embedder)
    await service.get_document(document_id, owner_id)
    return [NoteResponse.model_validate(n) for n in await service.list_notes(owner_id, document_id)]
