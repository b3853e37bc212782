"""
Document and note records for the graph.

Document content, rendering and text extraction live in the reading app;
this service only keeps the owner-scoped rows that relationships, notes and
memories hang off.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.db.models import Document, Note
from readmind.errors import AuthorizationError, DuplicateRecord, ProviderUnavailable
from readmind.services.embedding_service import EmbeddingService, get_embedding_service
from readmind.services.vector_store import VectorStore

logger = logging.getLogger(__name__)


class DocumentService:
    def __init__(self, db: AsyncSession, embedding_service: Optional[EmbeddingService] = None):
        self.db = db
        self.store = VectorStore(db)
        self.embedding_service = embedding_service or get_embedding_service()

    async def create_document(
        self,
        owner_id: str,
        title: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> Document:
        """Register a document. Re-registering an owned id updates its title."""
        if document_id:
            existing = await self.store.get(Document, document_id)
            if existing is not None:
                if existing.owner_id != owner_id:
                    raise AuthorizationError("document", document_id)
                if title is not None and existing.title != title:
                    existing.title = title
                    await self.store.commit()
                return existing

        document = Document(owner_id=owner_id, title=title, created_at=datetime.utcnow())
        if document_id:
            document.id = document_id
        try:
            return await self.store.add(document)
        except DuplicateRecord:
            raise AuthorizationError("document", document_id or "")

    async def get_document(self, document_id: str, owner_id: str) -> Document:
        document = await self.store.get(Document, document_id, owner_id)
        if document is None:
            raise AuthorizationError("document", document_id)
        return document

    async def list_documents(self, owner_id: str) -> List[Document]:
        return await self.store.scalars(
            select(Document).where(Document.owner_id == owner_id).order_by(Document.created_at, Document.id)
        )

    async def add_note(
        self,
        owner_id: str,
        content: str,
        document_id: Optional[str] = None,
        page_number: Optional[int] = None,
    ) -> Note:
        """
        Store a note with its embedding.

        If the embedding provider is down the note is still saved, just
        without an embedding; read paths embed it on demand.
        """
        if document_id:
            await self.get_document(document_id, owner_id)

        embedding = None
        try:
            embedding = await self.embedding_service.embed(content)
        except ProviderUnavailable as e:
            logger.warning(f"Saving note for owner {owner_id} without embedding: {e}")

        note = Note(
            owner_id=owner_id,
            document_id=document_id,
            content=content,
            page_number=page_number,
            embedding=embedding,
            created_at=datetime.utcnow(),
        )
        return await self.store.add(note)

    async def list_notes(self, owner_id: str, document_id: Optional[str] = None) -> List[Note]:
        stmt = select(Note).where(Note.owner_id == owner_id)
        if document_id:
            stmt = stmt.where(Note.document_id == document_id)
        return await self.store.scalars(stmt.order_by(Note.page_number, Note.created_at, Note.id))
