"""Semantic retrieval over an owner's stored memory entities"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.config import settings
from readmind.db.models import MemoryEntity, MemoryEntityType
from readmind.services.embedding_service import EmbeddingService, get_embedding_service
from readmind.services.vector_store import VectorStore

logger = logging.getLogger(__name__)

# Entity types summarized by ``aggregate``
AGGREGATE_TYPES = {
    MemoryEntityType.CONCEPT.value: "top_concepts",
    MemoryEntityType.QUESTION.value: "top_questions",
    MemoryEntityType.INSIGHT.value: "top_insights",
}


@dataclass
class MemorySearchHit:
    entity: MemoryEntity
    score: float


class MemorySearchService:
    """
    Searches memories by embedding similarity.

    Provider and store failures propagate (``ProviderUnavailable`` /
    ``StoreFailure``); callers such as the context builder decide how to degrade.
    """

    def __init__(self, db: AsyncSession, embedding_service: Optional[EmbeddingService] = None):
        self.db = db
        self.store = VectorStore(db)
        self.embedding_service = embedding_service or get_embedding_service()

    async def search(
        self,
        owner_id: str,
        query: str,
        limit: int = 10,
        entity_types: Optional[Sequence[str]] = None,
        document_id: Optional[str] = None,
        similarity_threshold: Optional[float] = None,
    ) -> List[MemorySearchHit]:
        """Memories at or above the threshold, best first, at most ``limit``."""
        if not query or not query.strip() or limit <= 0:
            return []
        embedding = await self.embedding_service.embed(query)
        return await self.search_by_embedding(
            owner_id, embedding, limit, entity_types, document_id, similarity_threshold
        )

    async def search_by_embedding(
        self,
        owner_id: str,
        embedding: Sequence[float],
        limit: int = 10,
        entity_types: Optional[Sequence[str]] = None,
        document_id: Optional[str] = None,
        similarity_threshold: Optional[float] = None,
    ) -> List[MemorySearchHit]:
        threshold = (
            similarity_threshold if similarity_threshold is not None
            else settings.memory_similarity_threshold
        )
        filters = {}
        if entity_types:
            filters["entity_type"] = [str(getattr(t, "value", t)) for t in entity_types]
        if document_id:
            filters["source_document_id"] = document_id

        hits = await self.store.similarity_search(
            MemoryEntity,
            embedding,
            owner_id=owner_id,
            filters=filters,
            k=limit,
            min_score=threshold,
        )
        logger.debug(f"Memory search for owner {owner_id} returned {len(hits)} hits")
        return [MemorySearchHit(entity=h.record, score=h.score) for h in hits]

    async def get_conversation_memories(self, owner_id: str, conversation_id: str) -> List[MemoryEntity]:
        """Memories extracted from one conversation, oldest first."""
        return await self.store.scalars(
            select(MemoryEntity)
            .where(
                MemoryEntity.owner_id == owner_id,
                MemoryEntity.source_conversation_id == conversation_id,
            )
            .order_by(MemoryEntity.created_at, MemoryEntity.id)
        )

    async def aggregate(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        entity_types: Optional[Sequence[str]] = None,
        limit: int = 10,
    ) -> Dict[str, List[dict]]:
        """
        Most frequent concepts, questions and insights across conversations.

        A memory seen once counts 1; every reinforcement adds one occurrence.
        """
        types = [str(getattr(t, "value", t)) for t in entity_types] if entity_types else list(AGGREGATE_TYPES)
        stmt = select(MemoryEntity).where(
            MemoryEntity.owner_id == owner_id,
            MemoryEntity.entity_type.in_(types),
        )
        if start is not None:
            stmt = stmt.where(MemoryEntity.created_at >= start)
        if end is not None:
            stmt = stmt.where(MemoryEntity.created_at <= end)

        counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for entity in await self.store.scalars(stmt):
            counts[entity.entity_type][entity.normalized_text] += 1 + (entity.reinforcement_count or 0)

        report = {key: [] for key in AGGREGATE_TYPES.values()}
        for entity_type, key in AGGREGATE_TYPES.items():
            ranked = sorted(counts[entity_type].items(), key=lambda kv: (-kv[1], kv[0]))
            report[key] = [{"text": text, "count": count} for text, count in ranked[:limit]]
        return report
