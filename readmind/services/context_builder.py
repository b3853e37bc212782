"""
Context builder - assembles a token-budgeted memory block for a chat turn.

Token cost is a cheap length proxy (one token per four characters, rounded
up per rendered line), not a real tokenizer. Packing is greedy: memories in
descending score, then the document's relevant notes, stopping at the first
line that would overflow the budget. Nothing is truncated to fit.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from readmind.config import settings
from readmind.db.models import MemoryEntityType, Note
from readmind.errors import BudgetExceeded, ReadmindError
from readmind.services.embedding_service import EmbeddingService, get_embedding_service
from readmind.services.memory_search import MemorySearchHit, MemorySearchService
from readmind.services.vector_store import ScoredRecord, VectorStore

logger = logging.getLogger(__name__)

MEMORY_HEADER = "## Previous Conversation Memory"
NOTES_HEADER = "## Relevant Notes"
CHARS_PER_TOKEN = 4

MEMORY_INDICATORS = (
    "before",
    "previous",
    "earlier",
    "what did",
    "remember",
    "mentioned",
    "discussed",
    "compare",
    "related",
    "similar",
    "last time",
)


@dataclass
class ContextMemory:
    type: str
    text: str
    score: float
    entity_id: Optional[str] = None

    def render(self) -> str:
        return f"- {self.type}: {self.text}"


@dataclass
class ContextNote:
    content: str
    score: float
    page_number: Optional[int] = None
    note_id: Optional[str] = None

    def render(self) -> str:
        excerpt = self.content[:settings.context_note_max_chars]
        if self.page_number is None:
            return f"- {excerpt}"
        return f"- Page {self.page_number}: {excerpt}"


@dataclass
class ContextBundle:
    relevant_memories: List[ContextMemory] = field(default_factory=list)
    relevant_notes: List[ContextNote] = field(default_factory=list)
    token_estimate: int = 0
    conversation_summary: Optional[str] = None


def estimate_tokens(line: str) -> int:
    return math.ceil(len(line) / CHARS_PER_TOKEN)


def render(bundle: ContextBundle) -> str:
    """The context sections handed to the chat model; empty when nothing was packed."""
    sections = []
    if bundle.relevant_memories:
        sections.append("\n".join([MEMORY_HEADER] + [m.render() for m in bundle.relevant_memories]))
    if bundle.relevant_notes:
        sections.append("\n".join([NOTES_HEADER] + [n.render() for n in bundle.relevant_notes]))
    return "\n\n".join(sections)


def should_use_memory_context(message: str) -> bool:
    """Cheap gate: is a search + packing pass worth it for this message?"""
    if not message or not message.strip():
        return False
    if len(message.split()) < settings.context_min_words:
        return False
    lowered = message.lower()
    if any(indicator in lowered for indicator in MEMORY_INDICATORS):
        return True
    return len(message) >= settings.context_long_message_chars


class ContextBuilder:
    """Builds ``ContextBundle`` values from memory and note search results."""

    def __init__(
        self,
        db: AsyncSession,
        embedding_service: Optional[EmbeddingService] = None,
        token_budget: Optional[int] = None,
    ):
        self.embedding_service = embedding_service or get_embedding_service()
        self.search_service = MemorySearchService(db, embedding_service=self.embedding_service)
        self.store = VectorStore(db)
        self.token_budget = token_budget if token_budget is not None else settings.context_token_budget

    should_use_memory_context = staticmethod(should_use_memory_context)
    render = staticmethod(render)

    async def build_context(
        self,
        owner_id: str,
        query: str,
        conversation_id: Optional[str] = None,
        document_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ContextBundle:
        limit = limit if limit is not None else settings.context_default_limit
        hits: List[MemorySearchHit] = []
        note_hits: List[ScoredRecord] = []
        if query and query.strip():
            try:
                embedding = await self.embedding_service.embed(query)
                hits = await self.search_service.search_by_embedding(
                    owner_id, embedding, limit=limit, document_id=document_id
                )
                if document_id:
                    note_hits = await self.relevant_notes(owner_id, document_id, embedding, limit)
            except Exception as e:
                logger.warning(f"Context search failed for owner {owner_id}, building empty context: {e!r}")
                hits, note_hits = [], []

        bundle = self.pack(hits, note_hits)
        if conversation_id:
            bundle.conversation_summary = await self.conversation_summary(owner_id, conversation_id)
        return bundle

    async def relevant_notes(self, owner_id: str, document_id: str, embedding, limit: int) -> List[ScoredRecord]:
        """The owner's notes on ``document_id`` most similar to the query."""
        return await self.store.similarity_search(
            Note,
            embedding,
            owner_id=owner_id,
            filters={"document_id": document_id},
            k=math.ceil(limit * settings.context_note_share),
            min_score=settings.context_note_threshold,
        )

    def pack(self, hits: List[MemorySearchHit], note_hits: Optional[List[ScoredRecord]] = None) -> ContextBundle:
        """
        Greedy packing under the token budget. Memories go first in descending
        score (ties broken by entity id), then notes the same way; each
        section header is charged with its first line.
        """
        bundle = ContextBundle()
        memories = [
            ContextMemory(type=h.entity.entity_type, text=h.entity.text, score=h.score, entity_id=h.entity.id)
            for h in sorted(hits, key=lambda h: (-h.score, h.entity.id))
        ]
        notes = [
            ContextNote(content=h.record.content, score=h.score, page_number=h.record.page_number, note_id=h.record.id)
            for h in sorted(note_hits or [], key=lambda h: (-h.score, h.record.id))
        ]

        used = 0
        try:
            for items, packed, header in (
                (memories, bundle.relevant_memories, MEMORY_HEADER),
                (notes, bundle.relevant_notes, NOTES_HEADER),
            ):
                for item in items:
                    cost = estimate_tokens(item.render())
                    if not packed:
                        cost += estimate_tokens(header)
                    if used + cost > self.token_budget:
                        raise BudgetExceeded(self.token_budget, used)
                    packed.append(item)
                    used += cost
        except BudgetExceeded as e:
            logger.debug(f"Context packing stopped: {e}")

        bundle.token_estimate = used
        return bundle

    async def conversation_summary(self, owner_id: str, conversation_id: str) -> Optional[str]:
        """Insights extracted from one conversation, one per line."""
        try:
            memories = await self.search_service.get_conversation_memories(owner_id, conversation_id)
        except ReadmindError as e:
            logger.warning(f"Could not load memories of conversation {conversation_id}: {e}")
            return None
        insights = [m.text for m in memories if m.entity_type == MemoryEntityType.INSIGHT.value]
        return "\n".join(insights) if insights else None
