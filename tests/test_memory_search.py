"""
Tests for semantic memory search and aggregation
"""

from datetime import datetime, timedelta

import pytest

from readmind.db import MemoryEntity
from readmind.services.memory_search import MemorySearchService

from fakes import FakeEmbeddingService, at_similarity, vec


def memory(owner_id, entity_type, text, embedding, **kwargs) -> MemoryEntity:
    return MemoryEntity(
        owner_id=owner_id,
        entity_type=entity_type,
        text=text,
        normalized_text=text.lower(),
        embedding=embedding,
        **kwargs,
    )


@pytest.fixture
def search_embedder():
    return FakeEmbeddingService({"thermodynamics": vec(1)})


@pytest.mark.asyncio
async def test_search_respects_threshold_and_order(db_session, search_embedder):
    db_session.add_all([
        memory("owner-a", "concept", "Entropy", at_similarity(0.95)),
        memory("owner-a", "concept", "Heat engines", at_similarity(0.80)),
        memory("owner-a", "concept", "Poetry", at_similarity(0.30)),
    ])
    await db_session.commit()

    service = MemorySearchService(db_session, embedding_service=search_embedder)
    hits = await service.search("owner-a", "thermodynamics", similarity_threshold=0.7)

    assert [h.entity.text for h in hits] == ["Entropy", "Heat engines"]
    assert hits[0].score == pytest.approx(0.95)
    assert hits[1].score == pytest.approx(0.80)


@pytest.mark.asyncio
async def test_threshold_is_inclusive(db_session, search_embedder):
    db_session.add(memory("owner-a", "concept", "Entropy", at_similarity(0.7)))
    await db_session.commit()

    service = MemorySearchService(db_session, embedding_service=search_embedder)
    hits = await service.search("owner-a", "thermodynamics", similarity_threshold=0.7)

    assert len(hits) == 1
    assert hits[0].score == 0.7


@pytest.mark.asyncio
async def test_search_is_owner_scoped(db_session, search_embedder):
    db_session.add_all([
        memory("owner-a", "concept", "Entropy", vec(1)),
        memory("owner-b", "concept", "Entropy", vec(1)),
        memory("owner-b", "concept", "Thermodynamics", vec(1)),
    ])
    await db_session.commit()

    service = MemorySearchService(db_session, embedding_service=search_embedder)
    hits = await service.search("owner-a", "thermodynamics", limit=10)

    assert len(hits) == 1
    assert all(h.entity.owner_id == "owner-a" for h in hits)


@pytest.mark.asyncio
async def test_search_filters_type_and_document(db_session, search_embedder):
    db_session.add_all([
        memory("owner-a", "concept", "Entropy", vec(1), source_document_id="doc-1"),
        memory("owner-a", "question", "What is entropy?", vec(1), source_document_id="doc-1"),
        memory("owner-a", "concept", "Enthalpy", vec(1), source_document_id="doc-2"),
    ])
    await db_session.commit()

    service = MemorySearchService(db_session, embedding_service=search_embedder)

    by_type = await service.search("owner-a", "thermodynamics", entity_types=["question"])
    assert [h.entity.text for h in by_type] == ["What is entropy?"]

    by_document = await service.search("owner-a", "thermodynamics", document_id="doc-2")
    assert [h.entity.text for h in by_document] == ["Enthalpy"]


@pytest.mark.asyncio
async def test_search_limit_and_tie_break(db_session, search_embedder):
    db_session.add_all([
        memory("owner-a", "concept", f"Concept {i}", vec(1), id=f"id-{i}")
        for i in range(5)
    ])
    await db_session.commit()

    service = MemorySearchService(db_session, embedding_service=search_embedder)
    hits = await service.search("owner-a", "thermodynamics", limit=3)

    assert [h.entity.id for h in hits] == ["id-0", "id-1", "id-2"]


@pytest.mark.asyncio
async def test_empty_query_returns_nothing(db_session, search_embedder):
    service = MemorySearchService(db_session, embedding_service=search_embedder)
    assert await service.search("owner-a", "   ") == []
    assert search_embedder.calls == []


@pytest.mark.asyncio
async def test_conversation_memories(db_session, search_embedder):
    db_session.add_all([
        memory("owner-a", "insight", "A", vec(1), source_conversation_id="conv-1"),
        memory("owner-a", "insight", "B", vec(1), source_conversation_id="conv-2"),
        memory("owner-b", "insight", "C", vec(1), source_conversation_id="conv-1"),
    ])
    await db_session.commit()

    service = MemorySearchService(db_session, embedding_service=search_embedder)
    memories = await service.get_conversation_memories("owner-a", "conv-1")

    assert [m.text for m in memories] == ["A"]


@pytest.mark.asyncio
async def test_aggregate_counts_reinforcements(db_session, search_embedder):
    now = datetime.utcnow()
    db_session.add_all([
        memory("owner-a", "concept", "Entropy", vec(1), reinforcement_count=3, created_at=now),
        memory("owner-a", "concept", "Enthalpy", vec(1), reinforcement_count=0, created_at=now),
        memory("owner-a", "question", "Why?", vec(1), reinforcement_count=1, created_at=now),
        memory("owner-a", "preference", "Dark mode", vec(1), reinforcement_count=9, created_at=now),
        memory("owner-a", "insight", "Old insight", vec(1), created_at=now - timedelta(days=30)),
    ])
    await db_session.commit()

    service = MemorySearchService(db_session, embedding_service=search_embedder)
    report = await service.aggregate("owner-a", start=now - timedelta(days=1))

    assert report["top_concepts"] == [
        {"text": "entropy", "count": 4},
        {"text": "enthalpy", "count": 1},
    ]
    assert report["top_questions"] == [{"text": "why?", "count": 2}]
    assert report["top_insights"] == []
