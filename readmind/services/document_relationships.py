"""
Document relationship engine.

Maintains similarity edges between an owner's documents from their summary
embeddings. An edge is stored once per unordered pair, with
``source_doc_id < target_doc_id``; re-running materialization refreshes the
stored similarity instead of inserting a second row.
"""

import hashlib
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.config import settings
from readmind.db.models import Document, DocumentEmbedding, DocumentRelationship
from readmind.errors import AuthorizationError, DuplicateRecord, ReadmindError, StoreFailure
from readmind.services.embedding_service import EmbeddingService, get_embedding_service
from readmind.services.vector_store import VectorStore

logger = logging.getLogger(__name__)


def canonical_pair(a: str, b: str) -> Tuple[str, str]:
    return (a, b) if a < b else (b, a)


def text_hash(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


@dataclass
class DocumentRelationshipResult:
    document_id: str
    created: int = 0
    updated: int = 0
    error: Optional[str] = None


@dataclass
class RegenerationReport:
    results: List[DocumentRelationshipResult] = field(default_factory=list)
    total_created: int = 0
    total_updated: int = 0
    failed: int = 0
    pruned: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class DocumentRelationshipEngine:
    """Embeds documents and materializes their similarity edges."""

    def __init__(self, db: AsyncSession, embedding_service: Optional[EmbeddingService] = None):
        self.db = db
        self.store = VectorStore(db)
        self.embedding_service = embedding_service or get_embedding_service()

    async def _owned_document(self, document_id: str, owner_id: str) -> Document:
        document = await self.store.get(Document, document_id, owner_id)
        if document is None:
            raise AuthorizationError("document", document_id)
        return document

    async def embed_document(self, document_id: str, owner_id: str, text: str) -> DocumentEmbedding:
        """
        Embed a document's text and refresh its edges.

        Unchanged text (same SHA-256) is a no-op: the stored embedding is
        returned without calling the provider.
        """
        await self._owned_document(document_id, owner_id)
        digest = text_hash(text)

        existing = await self.store.get(DocumentEmbedding, document_id, owner_id)
        if existing is not None and existing.source_text_hash == digest:
            logger.debug(f"Document {document_id} unchanged, keeping embedding")
            return existing

        vector = await self.embedding_service.embed(text)
        row = await self.store.upsert(DocumentEmbedding(
            document_id=document_id,
            owner_id=owner_id,
            embedding=vector,
            source_text_hash=digest,
            generated_at=datetime.utcnow(),
        ))
        logger.info(f"Embedded document {document_id} for owner {owner_id}")

        await self.on_embedding_ready(document_id, owner_id, vector)
        return row

    async def on_embedding_ready(
        self,
        document_id: str,
        owner_id: str,
        embedding: Sequence[float],
        similarity_threshold: Optional[float] = None,
    ) -> DocumentRelationshipResult:
        """Upsert edges from ``document_id`` to its most similar documents."""
        threshold = (
            similarity_threshold if similarity_threshold is not None
            else settings.document_similarity_threshold
        )
        result = DocumentRelationshipResult(document_id=document_id)

        hits = await self.store.similarity_search(
            DocumentEmbedding,
            embedding,
            owner_id=owner_id,
            k=settings.document_relationship_top_k,
            min_score=threshold,
            exclude_ids=[document_id],
        )
        # A failed write rolls back the session and expires loaded rows
        matches = [(hit.record.document_id, hit.score) for hit in hits]
        for other_id, similarity in matches:
            source_id, target_id = canonical_pair(document_id, other_id)
            created, updated = await self._upsert_edge(owner_id, source_id, target_id, similarity)
            result.created += created
            result.updated += updated

        logger.info(
            f"Document {document_id}: {result.created} relationships created, {result.updated} updated"
        )
        return result

    async def _find_edge(self, owner_id: str, source_id: str, target_id: str) -> Optional[DocumentRelationship]:
        return await self.store.first(
            select(DocumentRelationship).where(
                DocumentRelationship.owner_id == owner_id,
                DocumentRelationship.source_doc_id == source_id,
                DocumentRelationship.target_doc_id == target_id,
            )
        )

    async def _update_edge(self, edge: DocumentRelationship, similarity: float) -> int:
        if edge.similarity == similarity:
            return 0
        edge.similarity = similarity
        edge.updated_at = datetime.utcnow()
        await self.store.commit()
        return 1

    async def _upsert_edge(self, owner_id: str, source_id: str, target_id: str, similarity: float) -> Tuple[int, int]:
        """Returns (created, updated) counts for one pair."""
        edge = await self._find_edge(owner_id, source_id, target_id)
        if edge is not None:
            return 0, await self._update_edge(edge, similarity)

        try:
            await self.store.add(DocumentRelationship(
                owner_id=owner_id,
                source_doc_id=source_id,
                target_doc_id=target_id,
                similarity=similarity,
            ))
        except DuplicateRecord:
            edge = await self._find_edge(owner_id, source_id, target_id)
            if edge is None:
                raise
            return 0, await self._update_edge(edge, similarity)
        return 1, 0

    async def regenerate_all(
        self,
        owner_id: str,
        similarity_threshold: Optional[float] = None,
        prune: bool = False,
    ) -> RegenerationReport:
        """
        Recompute edges for every document of ``owner_id``.

        Additive by default. With ``prune`` the owner's edges below the
        threshold are deleted first. A failing document is recorded in the
        report and the rest still run.
        """
        threshold = (
            similarity_threshold if similarity_threshold is not None
            else settings.document_similarity_threshold
        )
        report = RegenerationReport()

        if prune:
            try:
                deleted = await self.db.execute(
                    delete(DocumentRelationship).where(
                        DocumentRelationship.owner_id == owner_id,
                        DocumentRelationship.similarity < threshold,
                    )
                )
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                raise StoreFailure(str(e)) from e
            report.pruned = deleted.rowcount or 0

        documents = await self.store.scalars(
            select(Document).where(Document.owner_id == owner_id).order_by(Document.created_at, Document.id)
        )
        embeddings = {
            row.document_id: [float(x) for x in row.embedding]
            for row in await self.store.scalars(
                select(DocumentEmbedding).where(DocumentEmbedding.owner_id == owner_id)
            )
        }
        plan = [(document.id, embeddings.get(document.id)) for document in documents]

        for document_id, vector in plan:
            if vector is None:
                report.results.append(DocumentRelationshipResult(document_id=document_id, error="no embedding"))
                report.failed += 1
                continue
            try:
                result = await self.on_embedding_ready(document_id, owner_id, vector, threshold)
            except ReadmindError as e:
                logger.error(f"Relationship regeneration failed for document {document_id}: {e}")
                report.results.append(DocumentRelationshipResult(document_id=document_id, error=str(e)))
                report.failed += 1
                continue
            report.results.append(result)
            report.total_created += result.created
            report.total_updated += result.updated

        logger.info(
            f"Regenerated relationships for owner {owner_id}: {report.total_created} created, "
            f"{report.total_updated} updated, {report.failed} failed, {report.pruned} pruned"
        )
        return report

    async def get_relationships(self, document_id: str, owner_id: str) -> List[Tuple[str, float]]:
        """Related document ids with similarity, strongest first."""
        await self._owned_document(document_id, owner_id)
        edges = await self.store.scalars(
            select(DocumentRelationship).where(
                DocumentRelationship.owner_id == owner_id,
                or_(
                    DocumentRelationship.source_doc_id == document_id,
                    DocumentRelationship.target_doc_id == document_id,
                ),
            )
        )
        related = [
            (e.target_doc_id if e.source_doc_id == document_id else e.source_doc_id, e.similarity)
            for e in edges
        ]
        related.sort(key=lambda r: (-r[1], r[0]))
        return related
