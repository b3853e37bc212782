"""
Memory extraction service - turns conversation transcripts into durable memories.

Pipeline per call:
1. Window the transcript (most recent messages, per-message truncation,
   token budget) and ask the extraction LLM for entities and relationships
2. Validate candidates against the closed entity/relationship enums
3. Resolve each entity: exact normalized-text match, else near-duplicate
   by embedding similarity, else insert. Matches are reinforced.
4. Resolve relationships between the resolved entities

Each entity and edge write commits on its own; a failure on one candidate
never aborts the rest of the batch.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.config import settings
from readmind.db.models import Document, MemoryEntity, MemoryRelationship, Note
from readmind.errors import DuplicateRecord, ProviderUnavailable, StoreFailure
from readmind.services.embedding_service import EmbeddingService, get_embedding_service
from readmind.services.extraction_schemas import (
    EntityCandidate,
    build_extraction_prompt,
    normalize_text,
    parse_extraction,
)
from readmind.services.llm_service import LLMService, get_llm_service
from readmind.services.vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """Counts reported back for one extraction run"""
    entities_created: int = 0
    entities_reinforced: int = 0
    relationships_created: int = 0
    relationships_reinforced: int = 0
    success: bool = True
    error: Optional[str] = None
    entity_ids: List[str] = field(default_factory=list)

    @classmethod
    def failed(cls, error: str) -> "ExtractionResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MemoryExtractionService:
    """Extracts, deduplicates and persists memory entities for one owner at a time."""

    def __init__(
        self,
        db: AsyncSession,
        embedding_service: Optional[EmbeddingService] = None,
        llm_service: Optional[LLMService] = None,
    ):
        self.db = db
        self.store = VectorStore(db)
        self.embedding_service = embedding_service or get_embedding_service()
        self.llm_service = llm_service or get_llm_service()

    # ── Prompt ───────────────────────────────────────────────────────

    def build_prompt(
        self,
        messages: Sequence[Mapping[str, str]],
        document_title: Optional[str] = None,
    ) -> Tuple[str, int]:
        """
        Build the extraction prompt from the tail of the transcript.

        Returns the prompt and the number of messages it contains. Oldest
        messages are dropped while the prompt is over the token budget; the
        newest message is always kept.
        """
        max_chars = settings.extraction_message_max_chars
        recent = list(messages)[-settings.extraction_max_messages:]
        lines = [
            f"{m.get('role', 'user')}: {(m.get('content') or '')[:max_chars]}"
            for m in recent
        ]

        prompt = build_extraction_prompt("\n\n".join(lines), document_title)
        while len(lines) > 1 and self.llm_service.count_tokens(prompt) > settings.extraction_prompt_max_tokens:
            lines.pop(0)
            prompt = build_extraction_prompt("\n\n".join(lines), document_title)
        return prompt, len(lines)

    # ── Extraction ───────────────────────────────────────────────────

    async def extract(
        self,
        owner_id: str,
        conversation_id: str,
        messages: Sequence[Mapping[str, str]],
        document_title: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> ExtractionResult:
        """Extract memories from a transcript and persist them for ``owner_id``."""
        if not messages:
            logger.warning(f"Extraction for conversation {conversation_id} called with no messages")
            return ExtractionResult.failed("no messages")

        prompt, used = self.build_prompt(messages, document_title)

        try:
            response = await self.llm_service.complete_with_json(
                messages=[{"role": "user", "content": prompt}],
            )
        except ProviderUnavailable as e:
            logger.warning(f"Extraction LLM unavailable for conversation {conversation_id}: {e}")
            return ExtractionResult.failed(f"provider unavailable: {e}")

        parsed = parse_extraction(response.content)
        if not parsed.ok:
            logger.warning(f"Malformed extraction for conversation {conversation_id}: {parsed.error}")
            return ExtractionResult.failed(str(parsed.error))
        if parsed.skipped:
            logger.info(f"Skipped {parsed.skipped} invalid candidates in conversation {conversation_id}")

        result = ExtractionResult()
        if not parsed.entities:
            logger.info(f"Nothing to extract from conversation {conversation_id} ({used} messages)")
            return result

        resolved = await self._resolve_entities(
            owner_id, parsed.entities, conversation_id, document_id, result
        )

        for rel in parsed.relationships:
            from_id = resolved[rel.from_index]
            to_id = resolved[rel.to_index]
            if from_id is None or to_id is None or from_id == to_id:
                continue
            strength = rel.strength if rel.strength is not None else settings.relationship_default_weight
            try:
                created = await self._resolve_relationship(owner_id, from_id, to_id, rel.type.value, strength)
            except StoreFailure as e:
                logger.error(f"Failed to store relationship {from_id} -> {to_id}: {e}")
                continue
            if created:
                result.relationships_created += 1
            else:
                result.relationships_reinforced += 1

        result.entity_ids = list(dict.fromkeys(i for i in resolved if i is not None))
        logger.info(
            f"Extraction for conversation {conversation_id}: "
            f"{result.entities_created} created, {result.entities_reinforced} reinforced, "
            f"{result.relationships_created} edges created, {result.relationships_reinforced} edges reinforced"
        )
        return result

    async def extract_from_notes(
        self,
        owner_id: str,
        document_id: Optional[str] = None,
        note_ids: Optional[List[str]] = None,
    ) -> ExtractionResult:
        """Run extraction over an owner's notes, selected by id or by document."""
        stmt = select(Note).where(Note.owner_id == owner_id)
        if note_ids:
            stmt = stmt.where(Note.id.in_(note_ids))
        elif document_id:
            stmt = stmt.where(Note.document_id == document_id)
        else:
            return ExtractionResult.failed("no notes selected")

        notes = await self.store.scalars(stmt.order_by(Note.page_number, Note.created_at, Note.id))
        if not notes:
            logger.info(f"No notes to extract for owner {owner_id}")
            return ExtractionResult.failed("no notes found")

        note_texts = "\n\n".join(
            f"Note {i} (Page {note.page_number if note.page_number is not None else '?'}): {note.content}"
            for i, note in enumerate(notes, start=1)
        )
        document_id = document_id or notes[0].document_id

        title = None
        if document_id:
            document = await self.store.get(Document, document_id, owner_id)
            title = document.title if document else None

        return await self.extract(
            owner_id=owner_id,
            conversation_id=f"notes:{document_id or 'selection'}",
            messages=[{"role": "user", "content": f"Extract semantic entities from these notes:\n\n{note_texts}"}],
            document_title=title,
            document_id=document_id,
        )

    # ── Entity resolution ────────────────────────────────────────────

    async def _resolve_entities(
        self,
        owner_id: str,
        candidates: List[EntityCandidate],
        conversation_id: str,
        document_id: Optional[str],
        result: ExtractionResult,
    ) -> List[Optional[str]]:
        """Resolve every candidate to an entity id (``None`` when skipped)."""
        resolved: List[Optional[str]] = [None] * len(candidates)

        # Collapse in-batch duplicates onto their first occurrence
        first_seen: Dict[Tuple[str, str], int] = {}
        unique: List[int] = []
        duplicates: Dict[int, int] = {}
        for i, candidate in enumerate(candidates):
            key = (candidate.type.value, normalize_text(candidate.text))
            if key in first_seen:
                duplicates[i] = first_seen[key]
            else:
                first_seen[key] = i
                unique.append(i)

        embeddings = await asyncio.gather(
            *(self.embedding_service.embed(candidates[i].text) for i in unique),
            return_exceptions=True,
        )

        for i, embedding in zip(unique, embeddings):
            candidate = candidates[i]
            if isinstance(embedding, Exception):
                logger.warning(f"Skipping {candidate.type.value} candidate, embedding failed: {embedding!r}")
                continue
            if isinstance(embedding, BaseException):
                raise embedding
            try:
                entity, created = await self._resolve_entity(
                    owner_id, candidate, embedding, conversation_id, document_id
                )
            except StoreFailure as e:
                logger.error(f"Failed to store {candidate.type.value} candidate: {e}")
                continue
            resolved[i] = entity.id
            if created:
                result.entities_created += 1
            else:
                result.entities_reinforced += 1

        for i, first in duplicates.items():
            resolved[i] = resolved[first]
        return resolved

    async def _find_exact(self, owner_id: str, entity_type: str, normalized: str) -> Optional[MemoryEntity]:
        return await self.store.first(
            select(MemoryEntity).where(
                MemoryEntity.owner_id == owner_id,
                MemoryEntity.entity_type == entity_type,
                MemoryEntity.normalized_text == normalized,
            )
        )

    async def _find_similar(self, owner_id: str, entity_type: str, embedding: List[float]) -> Optional[MemoryEntity]:
        hits = await self.store.similarity_search(
            MemoryEntity,
            embedding,
            owner_id=owner_id,
            filters={"entity_type": entity_type},
            k=1,
            min_score=settings.memory_dedup_threshold,
        )
        return hits[0].record if hits else None

    async def _resolve_entity(
        self,
        owner_id: str,
        candidate: EntityCandidate,
        embedding: List[float],
        conversation_id: str,
        document_id: Optional[str],
    ) -> Tuple[MemoryEntity, bool]:
        """Reinforce a matching entity or insert a new one. Returns (entity, created)."""
        entity_type = candidate.type.value
        normalized = normalize_text(candidate.text)

        existing = await self._find_exact(owner_id, entity_type, normalized)
        if existing is None:
            existing = await self._find_similar(owner_id, entity_type, embedding)
        if existing is not None:
            return await self._reinforce(existing), False

        now = datetime.utcnow()
        entity = MemoryEntity(
            owner_id=owner_id,
            entity_type=entity_type,
            text=candidate.text,
            normalized_text=normalized,
            embedding=embedding,
            source_conversation_id=conversation_id,
            source_document_id=document_id,
            metadata_json=json.dumps(candidate.metadata) if candidate.metadata else None,
            confidence=settings.confidence_initial,
            reinforcement_count=0,
            created_at=now,
            last_reinforced_at=now,
        )
        try:
            await self.store.add(entity)
        except DuplicateRecord:
            # A concurrent extraction inserted the same text first
            existing = await self._find_exact(owner_id, entity_type, normalized)
            if existing is None:
                raise
            return await self._reinforce(existing), False
        return entity, True

    async def _reinforce(self, entity: MemoryEntity) -> MemoryEntity:
        """Bump recency and confidence. The embedding is never rewritten."""
        entity.last_reinforced_at = datetime.utcnow()
        entity.confidence = min(
            settings.confidence_ceiling,
            (entity.confidence or settings.confidence_initial) + settings.confidence_increment,
        )
        entity.reinforcement_count = (entity.reinforcement_count or 0) + 1
        await self.store.commit()
        return entity

    # ── Relationship resolution ──────────────────────────────────────

    async def _find_relationship(self, owner_id: str, from_id: str, to_id: str, kind: str) -> Optional[MemoryRelationship]:
        return await self.store.first(
            select(MemoryRelationship).where(
                MemoryRelationship.owner_id == owner_id,
                MemoryRelationship.from_entity_id == from_id,
                MemoryRelationship.to_entity_id == to_id,
                MemoryRelationship.kind == kind,
            )
        )

    async def _strengthen(self, edge: MemoryRelationship) -> None:
        edge.weight = min(1.0, (edge.weight or 0.0) + settings.relationship_reinforcement)
        edge.updated_at = datetime.utcnow()
        await self.store.commit()

    async def _resolve_relationship(
        self,
        owner_id: str,
        from_id: str,
        to_id: str,
        kind: str,
        strength: float,
    ) -> bool:
        """Strengthen an existing edge or insert a new one. Returns True when inserted."""
        existing = await self._find_relationship(owner_id, from_id, to_id, kind)
        if existing is not None:
            await self._strengthen(existing)
            return False

        edge = MemoryRelationship(
            owner_id=owner_id,
            from_entity_id=from_id,
            to_entity_id=to_id,
            kind=kind,
            weight=strength,
        )
        try:
            await self.store.add(edge)
        except DuplicateRecord:
            existing = await self._find_relationship(owner_id, from_id, to_id, kind)
            if existing is None:
                raise
            await self._strengthen(existing)
            return False
        return True
